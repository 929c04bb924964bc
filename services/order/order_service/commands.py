"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文ライフサイクルの状態を変更する操作。各コマンドは:

    1. 入力を検証する（不正ならトランザクションを開かずに拒否）
    2. 1 つの DB トランザクション内で
       注文/商品の行をロック → 前提条件を確認 → 在庫を増減 → 注文を書き込み
    3. コミット後、Redis Pub/Sub でイベントを発行（他サービスへ通知）

トランザクション内の例外はすべてロールバックされ、そのまま呼び出し元に
再送出される。拒否された操作の後に在庫の減算や中途半端な注文が
残ることはない。

注文番号の衝突を除いてリトライは行わない。同じ入力で create_order を 2 回呼ぶと
注文は 2 件できる。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

import redis.asyncio as aioredis
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import aggregate, events, inventory
from .auth import Principal
from .database import transaction
from .errors import (
    AddressNotFound,
    DraftNotFound,
    EmptyOrder,
    Forbidden,
    InvalidOrderItem,
    MissingAddress,
    NotADraft,
    OrderNotFound,
    OrderNumberExhausted,
)
from .models import Address, Customer, Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5
DEFAULT_PAYMENT_METHOD = "credit_card"


# ── 内部ヘルパー ─────────────────────────────────


def _normalize_items(items: Iterable[Any] | None, allow_empty: bool = False) -> list[tuple[int, int]]:
    """
    [{product_id, quantity}, ...] を [(product_id, quantity), ...] に正規化する。

    product_id の代わりに id も受け付ける。
    """
    if items is None:
        items = []
    if not isinstance(items, (list, tuple)):
        raise InvalidOrderItem("Items must be an array")
    if not items and not allow_empty:
        raise EmptyOrder()

    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise InvalidOrderItem()
        product_id = item.get("product_id") or item.get("id")
        quantity = item.get("quantity")
        if not product_id or not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidOrderItem()
        try:
            product_id = int(product_id)
        except (TypeError, ValueError):
            raise InvalidOrderItem(f"Invalid product id: {product_id!r}") from None
        lines.append((product_id, quantity))
    return lines


async def _resolve_address(
    session: AsyncSession,
    customer_id: int,
    value: dict | None,
) -> tuple[int | None, dict | None]:
    """
    住所のスナップショットを作る。

    {"address_id": n} なら顧客の住所レコードを読んでコピーし、
    それ以外の dict はそのままスナップショットとして扱う。
    """
    if not value:
        return None, None
    address_id = value.get("address_id")
    if address_id is None:
        return None, dict(value)

    address = await session.scalar(
        select(Address).where(Address.id == address_id, Address.customer_id == customer_id)
    )
    if address is None:
        raise AddressNotFound(address_id)
    return address.id, address.snapshot()


async def _require_customer(session: AsyncSession, customer_id: int) -> None:
    """注文・下書きを作れるのは customers に登録された顧客だけ。"""
    exists = await session.scalar(select(Customer.id).where(Customer.id == customer_id))
    if exists is None:
        raise Forbidden("Only customers can place orders")


async def _order_number_taken(session: AsyncSession, number: str) -> bool:
    taken = await session.scalar(
        text("SELECT 1 FROM orders WHERE order_number = :number"),
        {"number": number},
    )
    return taken is not None


def _is_order_number_conflict(exc: IntegrityError) -> bool:
    return "order_number" in str(exc.orig)


async def _write_with_order_number(session: AsyncSession, order: Order, prefix: str) -> None:
    """
    注文番号を採番して注文を書き込む（orders.order_number は UNIQUE）。

    事前の重複確認をすり抜けた同時採番は UNIQUE 制約違反として検出し、
    SAVEPOINT まで戻して別の番号で再試行する。
    """
    for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
        number = aggregate.generate_order_number(prefix)
        if await _order_number_taken(session, number):
            logger.warning("Order number collision: %s", number)
            continue
        try:
            async with session.begin_nested():
                order.order_number = number
                session.add(order)
        except IntegrityError as exc:
            if not _is_order_number_conflict(exc):
                raise
            logger.warning("Order number conflict on write: %s", number)
            # 新規の注文は SAVEPOINT のロールバックで切り離される。
            # 既存の注文 (下書き変換) は失効した属性を読み直す
            if order in session:
                await session.refresh(order)
            continue
        return
    raise OrderNumberExhausted(MAX_ORDER_NUMBER_ATTEMPTS)


async def _load_order(session: AsyncSession, order_id: int, lock: bool = True) -> Order | None:
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _load_draft(session: AsyncSession, draft_id: int, actor: Principal, action: str) -> Order:
    """下書きを行ロック付きで取得する。存在 → 下書きか → 所有者 の順に確認。"""
    order = await _load_order(session, draft_id)
    if order is None:
        raise DraftNotFound(draft_id)
    if order.status != OrderStatus.DRAFT.value:
        raise NotADraft()
    if not actor.owns(order.customer_id):
        raise Forbidden(f"You do not have permission to {action} this draft")
    return order


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── 注文 ─────────────────────────────────────────


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customer_id: int,
    items: list[dict],
    shipping_address: dict | None,
    billing_address: dict | None,
    payment_method: str | None = None,
    shipping_method: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    注文作成コマンド

    1. 商品の行ロックを取り、公開状態と在庫を確認
    2. 明細のスナップショットを作り、物理商品の在庫を減算
    3. 合計金額を計算して注文と明細を挿入
    4. コミット後に OrderCreated を発行
    """
    lines = _normalize_items(items)
    if not shipping_address:
        raise MissingAddress("shipping")
    if not billing_address:
        raise MissingAddress("billing")

    async with transaction(session):
        await _require_customer(session, customer_id)
        shipping_address_id, shipping_snapshot = await _resolve_address(
            session, customer_id, shipping_address
        )
        billing_address_id, billing_snapshot = await _resolve_address(
            session, customer_id, billing_address
        )

        products = await inventory.load_products(session, [pid for pid, _ in lines])
        order_items = []
        for product_id, quantity in lines:
            product = inventory.require_product(products, product_id)
            inventory.ensure_orderable(product, quantity)
            order_items.append(aggregate.price_item(product, quantity))
            await inventory.decrement_stock(session, product, quantity)

        order = Order(
            customer_id=customer_id,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            discount_amount=aggregate.ZERO,
            payment_method=payment_method or DEFAULT_PAYMENT_METHOD,
            payment_details={},
            shipping_method=shipping_method,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            shipping_address=shipping_snapshot,
            billing_address=billing_snapshot,
            notes=notes,
            meta={},
            items=order_items,
        )
        aggregate.recompute_totals(order, aggregate.shipping_for(shipping_method))
        await _write_with_order_number(session, order, aggregate.ORDER_PREFIX)

    logger.info(
        "Order created: id=%s number=%s customer=%s total=%s",
        order.id, order.order_number, customer_id, order.total_amount,
    )
    await events.publish(redis, events.OrderCreated(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        total_amount=float(order.total_amount),
        items=[
            {"product_id": item.product_id, "quantity": item.quantity}
            for item in order.items
        ],
    ))
    return order


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    actor: Principal,
    reason: str | None = None,
) -> Order:
    """
    注文キャンセルコマンド

    前提条件 (この順で確認):
        注文が存在する → キャンセル済みでない → delivered/refunded でない
        → 顧客なら自分の注文である

    物理商品の在庫を明細の数量だけ戻し (作成時の減算の逆)、
    status → cancelled、支払い済みなら payment_status → refunded。
    """
    async with transaction(session):
        order = await _load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        aggregate.ensure_cancellable(order)
        if not actor.can_access(order.customer_id):
            raise Forbidden("You do not have permission to cancel this order")

        # 下書きは在庫を減算していないので戻さない
        if order.status != OrderStatus.DRAFT.value:
            products = await inventory.load_products(
                session, [item.product_id for item in order.items]
            )
            for item in order.items:
                product = products.get(item.product_id)
                if product is None:
                    logger.warning(
                        "Product %s of order %s no longer exists; stock not restored",
                        item.product_id, order.id,
                    )
                    continue
                await inventory.increment_stock(session, product, item.quantity)

        aggregate.apply_cancellation(order, actor, reason)
        await session.flush()

    logger.info("Order cancelled: id=%s by=%s:%s", order.id, actor.role.value, actor.id)
    await events.publish(redis, events.OrderCancelled(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        reason=order.meta["cancellation"]["reason"],
        cancelled_by=actor.role.value,
        payment_status=order.payment_status,
    ))
    return order


async def update_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    new_status: str,
    actor: Principal,
) -> Order:
    """注文状態の変更（管理者のみ）。在庫には触れない。"""
    if not actor.has_permission("order:update"):
        raise Forbidden()
    target = aggregate.parse_order_status(new_status)

    async with transaction(session):
        order = await _load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        previous = order.status
        aggregate.apply_status(order, target)
        await session.flush()

    logger.info("Order status changed: id=%s %s -> %s", order.id, previous, order.status)
    await events.publish(redis, events.OrderStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        previous_status=previous,
        status=order.status,
    ))
    return order


async def update_payment_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    new_status: str,
    actor: Principal,
    details: dict | None = None,
) -> Order:
    """支払い状態の変更（管理者のみ）。"""
    if not actor.has_permission("order:update"):
        raise Forbidden()
    target = aggregate.parse_payment_status(new_status)

    async with transaction(session):
        order = await _load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        previous = order.payment_status
        aggregate.apply_payment_status(order, target, details)
        await session.flush()

    logger.info("Payment status changed: id=%s %s -> %s", order.id, previous, order.payment_status)
    await events.publish(redis, events.PaymentStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        previous_payment_status=previous,
        payment_status=order.payment_status,
    ))
    return order


# ── 下書き ───────────────────────────────────────


async def save_draft(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customer_id: int,
    items: list[dict] | None = None,
    shipping_address: dict | None = None,
    billing_address: dict | None = None,
    payment_method: str | None = None,
    shipping_method: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    下書き保存コマンド

    明細は空でもよい。商品の存在だけを確認し、公開状態・在庫は
    変換時まで確認しない。在庫にも触れない。
    """
    lines = _normalize_items(items, allow_empty=True)

    async with transaction(session):
        await _require_customer(session, customer_id)
        shipping_address_id, shipping_snapshot = await _resolve_address(
            session, customer_id, shipping_address
        )
        billing_address_id, billing_snapshot = await _resolve_address(
            session, customer_id, billing_address
        )

        products = await inventory.load_products(
            session, [pid for pid, _ in lines], lock=False
        )
        order_items = [
            aggregate.price_item(inventory.require_product(products, pid), quantity)
            for pid, quantity in lines
        ]

        order = Order(
            customer_id=customer_id,
            status=OrderStatus.DRAFT.value,
            payment_status=PaymentStatus.PENDING.value,
            discount_amount=aggregate.ZERO,
            payment_method=payment_method,
            payment_details={},
            shipping_method=shipping_method,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            shipping_address=shipping_snapshot,
            billing_address=billing_snapshot,
            notes=notes,
            meta={"is_draft": True, "draft_saved_at": _now().isoformat()},
            items=order_items,
        )
        aggregate.recompute_totals(
            order,
            aggregate.shipping_for(shipping_method, draft=True, has_items=bool(order_items)),
        )
        await _write_with_order_number(session, order, aggregate.DRAFT_PREFIX)

    logger.info("Draft saved: id=%s number=%s customer=%s", order.id, order.order_number, customer_id)
    await events.publish(redis, events.DraftSaved(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        total_amount=float(order.total_amount),
    ))
    return order


DRAFT_PATCH_FIELDS = ("payment_method", "payment_details", "shipping_method", "notes")


async def update_draft(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    draft_id: int,
    actor: Principal,
    patch: dict,
) -> Order:
    """
    下書き更新コマンド

    patch に含まれるキーだけを書き換える。items があれば既存の明細を
    すべて削除してから作り直す。合計は明細から再計算するが、
    total が指定されていればその値を優先する。
    """
    lines = None
    if patch.get("items") is not None:
        lines = _normalize_items(patch["items"], allow_empty=True)

    async with transaction(session):
        order = await _load_draft(session, draft_id, actor, "update")

        for field in DRAFT_PATCH_FIELDS:
            if field in patch:
                setattr(order, field, patch[field])
        if "shipping_address" in patch:
            order.shipping_address_id, order.shipping_address = await _resolve_address(
                session, order.customer_id, patch["shipping_address"]
            )
        if "billing_address" in patch:
            order.billing_address_id, order.billing_address = await _resolve_address(
                session, order.customer_id, patch["billing_address"]
            )

        if lines is not None:
            products = await inventory.load_products(
                session, [pid for pid, _ in lines], lock=False
            )
            new_items = [
                aggregate.price_item(inventory.require_product(products, pid), quantity)
                for pid, quantity in lines
            ]
            order.items.clear()
            await session.flush()
            order.items.extend(new_items)

        shipping = aggregate.shipping_for(
            order.shipping_method, draft=True, has_items=bool(order.items)
        )
        aggregate.recompute_totals(order, shipping)
        if patch.get("total") is not None:
            order.total_amount = aggregate.money(patch["total"])

        order.meta = {
            **(order.meta or {}),
            "is_draft": True,
            "draft_last_updated_at": patch.get("last_updated") or _now().isoformat(),
            "total_amount": float(order.total_amount),
            "shipping": patch.get("shipping") or float(shipping),
        }
        await session.flush()

    logger.info("Draft updated: id=%s items=%s", order.id, order.total_items)
    await events.publish(redis, events.DraftSaved(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        total_amount=float(order.total_amount),
    ))
    return order


async def convert_draft(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    draft_id: int,
    actor: Principal,
) -> Order:
    """
    下書き → 注文の変換コマンド

    注文作成と同じ前提条件 (明細あり・住所あり・公開済み・在庫あり) を
    再検証し、在庫を減算して status を draft → pending にする。
    1 件でも検証に失敗すれば在庫は一切減らず、下書きのまま残る。
    """
    async with transaction(session):
        order = await _load_draft(session, draft_id, actor, "convert")
        if not order.items:
            raise EmptyOrder("Draft order must contain at least one item to be converted")
        if not order.shipping_address:
            raise MissingAddress("shipping")
        if not order.billing_address:
            raise MissingAddress("billing")

        products = await inventory.load_products(
            session, [item.product_id for item in order.items]
        )
        for item in order.items:
            product = inventory.require_product(products, item.product_id)
            inventory.ensure_orderable(product, item.quantity)
            aggregate.reprice_item(item, product)
            await inventory.decrement_stock(session, product, item.quantity)

        aggregate.recompute_totals(order, aggregate.shipping_for(order.shipping_method))
        draft_number = order.order_number
        aggregate.apply_draft_conversion(order)
        await _write_with_order_number(session, order, aggregate.ORDER_PREFIX)

    logger.info("Draft converted: id=%s %s -> %s", order.id, draft_number, order.order_number)
    await events.publish(redis, events.DraftConverted(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        timestamp=_now(),
        draft_order_number=draft_number,
        total_amount=float(order.total_amount),
    ))
    return order


async def delete_draft(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    draft_id: int,
    actor: Principal,
) -> None:
    """下書き削除コマンド。明細 → 注文の順に削除する。"""
    async with transaction(session):
        order = await _load_draft(session, draft_id, actor, "delete")
        order_number = order.order_number
        customer_id = order.customer_id

        order.items.clear()
        await session.flush()
        await session.delete(order)
        await session.flush()

    logger.info("Draft deleted: id=%s number=%s", draft_id, order_number)
    await events.publish(redis, events.DraftDeleted(
        order_id=draft_id,
        order_number=order_number,
        customer_id=customer_id,
        timestamp=_now(),
    ))
