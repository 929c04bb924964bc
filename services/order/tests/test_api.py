"""HTTP-level tests: routing, headers, status codes and error bodies."""

import pytest
from httpx import ASGITransport, AsyncClient

from order_service.main import app, get_redis, get_session

from conftest import BILLING, SHIPPING

CUSTOMER = {"X-User-Id": "1", "X-User-Role": "customer"}
OTHER_CUSTOMER = {"X-User-Id": "2", "X-User-Role": "customer"}
ADMIN = {"X-User-Id": "900", "X-User-Role": "admin"}
SUPPLIER = {"X-User-Id": "100", "X-User-Role": "supplier"}
SUPPLIER_AS_ONE = {"X-User-Id": "1", "X-User-Role": "supplier"}

ORDER = {
    "items": [{"product_id": 1, "quantity": 2}],
    "shipping_address": SHIPPING,
    "billing_address": BILLING,
    "shipping_method": "standard",
}


@pytest.fixture
async def client(session_factory, redis, seed):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_redis] = lambda: redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def create(client, body=ORDER, headers=CUSTOMER):
    resp = await client.post("/api/orders", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok", "service": "order-service"}


class TestAuthentication:
    async def test_missing_headers(self, client):
        resp = await client.post("/api/orders", json=ORDER)
        assert resp.status_code == 401
        assert resp.json()["kind"] == "AuthenticationRequired"

    async def test_unknown_role(self, client):
        resp = await client.post("/api/orders", json=ORDER, headers={"X-User-Id": "1", "X-User-Role": "wizard"})
        assert resp.status_code == 401


class TestOrders:
    async def test_create_and_fetch(self, client, stock, redis):
        order = await create(client)

        assert order["order_number"].startswith("ORD-")
        assert order["status"] == "pending"
        assert order["total_amount"] == 115.0
        assert order["items"][0]["name"] == "Keyboard"
        assert await stock(1) == 8
        assert redis.event_types == ["OrderCreated"]

        resp = await client.get(f"/api/orders/{order['id']}", headers=CUSTOMER)
        assert resp.status_code == 200
        assert resp.json()["customer"]["email"] == "hanako@example.com"

    @pytest.mark.parametrize("items, status, kind", [
        ([], 400, "EmptyOrder"),
        ([{"product_id": 4, "quantity": 1}], 400, "ProductUnavailable"),
        ([{"product_id": 999, "quantity": 1}], 404, "ProductNotFound"),
        ([{"product_id": 2, "quantity": 10}], 409, "InsufficientStock"),
    ])
    async def test_rejections(self, client, stock, items, status, kind):
        resp = await client.post("/api/orders", json={**ORDER, "items": items}, headers=CUSTOMER)

        assert resp.status_code == status
        assert resp.json()["kind"] == kind
        assert resp.json()["detail"]
        assert await stock(2) == 3

    async def test_missing_shipping_address(self, client):
        body = {key: value for key, value in ORDER.items() if key != "shipping_address"}
        resp = await client.post("/api/orders", json=body, headers=CUSTOMER)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Shipping address is required"

    async def test_other_customer_cannot_read(self, client):
        order = await create(client)
        resp = await client.get(f"/api/orders/{order['id']}", headers=OTHER_CUSTOMER)
        assert resp.status_code == 403

    async def test_only_customers_can_order(self, client, stock):
        for headers in (SUPPLIER, SUPPLIER_AS_ONE, ADMIN):
            resp = await client.post("/api/orders", json=ORDER, headers=headers)
            assert resp.status_code == 403
            assert resp.json()["kind"] == "Forbidden"
        assert await stock(1) == 10

    async def test_supplier_sharing_customer_id_cannot_read_or_cancel(self, client, stock):
        order = await create(client)

        assert (await client.get(f"/api/orders/{order['id']}", headers=SUPPLIER_AS_ONE)).status_code == 403
        resp = await client.patch(f"/api/orders/{order['id']}/cancel", json={}, headers=SUPPLIER_AS_ONE)
        assert resp.status_code == 403
        assert await stock(1) == 8

    async def test_missing_order(self, client):
        resp = await client.get("/api/orders/12345", headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Order not found", "kind": "OrderNotFound"}

    async def test_cancel(self, client, stock):
        order = await create(client)

        resp = await client.patch(
            f"/api/orders/{order['id']}/cancel", json={"reason": "too slow"}, headers=CUSTOMER
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["metadata"]["cancellation"]["reason"] == "too slow"
        assert await stock(1) == 10

        again = await client.put(f"/api/orders/{order['id']}/cancel", headers=CUSTOMER)
        assert again.status_code == 409
        assert again.json()["kind"] == "AlreadyCancelled"

    async def test_status_and_payment_require_admin(self, client):
        order = await create(client)

        denied = await client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=CUSTOMER
        )
        assert denied.status_code == 403

        shipped = await client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=ADMIN
        )
        assert shipped.json()["status"] == "shipped"

        paid = await client.patch(
            f"/api/orders/{order['id']}/payment",
            json={"payment_status": "paid", "payment_details": {"transaction_id": "tx-9"}},
            headers=ADMIN,
        )
        assert paid.json()["payment_status"] == "paid"
        assert paid.json()["payment_details"] == {"transaction_id": "tx-9"}

    async def test_invalid_status(self, client):
        order = await create(client)
        resp = await client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "lost"}, headers=ADMIN
        )
        assert resp.status_code == 400
        assert resp.json()["kind"] == "InvalidOrderStatus"


class TestListing:
    async def test_admin_listing(self, client):
        await create(client)
        await create(client, headers=OTHER_CUSTOMER)

        denied = await client.get("/api/orders", headers=CUSTOMER)
        assert denied.status_code == 403

        resp = await client.get("/api/orders", params={"customer": 2}, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["results"] == 1
        assert resp.json()["orders"][0]["customer"]["username"] == "taro"

    async def test_invalid_sort(self, client):
        resp = await client.get("/api/orders", params={"sort_by": "password"}, headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["kind"] == "InvalidQuery"

    async def test_my_orders(self, client):
        await create(client)
        await create(client, headers=OTHER_CUSTOMER)

        resp = await client.get("/api/orders/my-orders", headers=CUSTOMER)
        assert resp.json()["pagination"]["total"] == 1

    async def test_supplier_orders(self, client):
        await create(client)

        assert (await client.get("/api/orders/supplier-orders", headers=CUSTOMER)).status_code == 403

        resp = await client.get("/api/orders/supplier-orders", headers=SUPPLIER)
        assert resp.status_code == 200
        assert resp.json()["results"] == 1


class TestDrafts:
    async def test_draft_lifecycle(self, client, stock, redis):
        resp = await client.post("/api/orders/draft", json={}, headers=CUSTOMER)
        assert resp.status_code == 201
        draft = resp.json()
        assert draft["status"] == "draft"
        assert draft["order_number"].startswith("DFT-")

        resp = await client.put(f"/api/orders/draft/{draft['id']}", json=ORDER, headers=CUSTOMER)
        assert resp.status_code == 200
        assert resp.json()["total_amount"] == 115.0
        assert await stock(1) == 10

        resp = await client.get(f"/api/orders/drafts/{draft['id']}", headers=CUSTOMER)
        assert resp.json()["items"][0]["quantity"] == 2

        resp = await client.get("/api/orders/drafts", headers=CUSTOMER)
        assert [d["id"] for d in resp.json()["orders"]] == [draft["id"]]

        resp = await client.post(f"/api/orders/draft/{draft['id']}/convert", headers=CUSTOMER)
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"
        assert resp.json()["metadata"]["draft_order_number"] == draft["order_number"]
        assert await stock(1) == 8
        assert redis.event_types == ["DraftSaved", "DraftSaved", "DraftConverted"]

    async def test_delete(self, client):
        draft = (await client.post("/api/orders/draft", json={}, headers=CUSTOMER)).json()

        denied = await client.delete(f"/api/orders/draft/{draft['id']}", headers=OTHER_CUSTOMER)
        assert denied.status_code == 403

        resp = await client.delete(f"/api/orders/draft/{draft['id']}", headers=CUSTOMER)
        assert resp.json() == {"message": "Draft order deleted successfully"}

        missing = await client.get(f"/api/orders/drafts/{draft['id']}", headers=CUSTOMER)
        assert missing.status_code == 404
        assert missing.json()["kind"] == "DraftNotFound"

    async def test_only_customers_have_drafts(self, client):
        denied = await client.post("/api/orders/draft", json={}, headers=SUPPLIER_AS_ONE)
        assert denied.status_code == 403

        draft = (await client.post("/api/orders/draft", json={}, headers=CUSTOMER)).json()
        for path in ("/api/orders/drafts", f"/api/orders/drafts/{draft['id']}", "/api/orders/my-orders"):
            assert (await client.get(path, headers=SUPPLIER_AS_ONE)).status_code == 403

    async def test_convert_without_address(self, client, stock):
        draft = (await client.post(
            "/api/orders/draft", json={"items": [{"product_id": 1, "quantity": 1}]}, headers=CUSTOMER
        )).json()

        resp = await client.post(f"/api/orders/draft/{draft['id']}/convert", headers=CUSTOMER)

        assert resp.status_code == 400
        assert resp.json()["kind"] == "MissingAddress"
        assert await stock(1) == 10
