"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取りは生 SQL でテーブルに直接問い合わせ、JSON にそのまま返せる
dict に変換する。状態は変更しないのでロックもトランザクション管理もしない。

一覧系はすべて同じページネーション形式を返す:

    {
        "results": 件数,
        "pagination": {total, total_pages, current_page, limit,
                       has_prev_page, has_next_page},
        "orders": [...]
    }
"""

import json
import math
from datetime import date, datetime, time

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import parse_order_status, parse_payment_status
from .auth import Principal
from .errors import DraftNotFound, Forbidden, InvalidQuery, OrderNotFound
from .models import OrderStatus

SORTABLE_COLUMNS = frozenset({
    "created_at",
    "updated_at",
    "total_amount",
    "order_number",
    "status",
    "payment_status",
})

ORDER_COLUMNS = """
    o.id, o.order_number, o.customer_id, o.status, o.payment_status,
    o.subtotal, o.tax_amount, o.shipping_amount, o.discount_amount,
    o.total_amount, o.total_items, o.payment_method, o.payment_details,
    o.shipping_method, o.shipping_address_id, o.billing_address_id,
    o.shipping_address, o.billing_address, o.notes, o.metadata,
    o.created_at, o.updated_at
"""

CUSTOMER_COLUMNS = """
    c.username AS customer_username, c.email AS customer_email,
    c.first_name AS customer_first_name, c.last_name AS customer_last_name,
    c.phone AS customer_phone
"""


# ── 行 → dict 変換 ───────────────────────────────


def _json(value):
    return json.loads(value) if isinstance(value, str) else value


def _iso(value):
    return value.isoformat() if isinstance(value, (datetime, date)) else value


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def _item_to_dict(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "product_id": row.product_id,
        "name": row.name,
        "sku": row.sku,
        "quantity": row.quantity,
        "unit_price": _money(row.unit_price),
        "subtotal": _money(row.subtotal),
        "tax": _money(row.tax),
        "discount": _money(row.discount),
        "total": _money(row.total),
        "metadata": _json(row.metadata),
    }


def _order_to_dict(row, items: list[dict], with_customer: bool = False) -> dict:
    order = {
        "id": row.id,
        "order_number": row.order_number,
        "customer_id": row.customer_id,
        "status": row.status,
        "payment_status": row.payment_status,
        "subtotal": _money(row.subtotal),
        "tax_amount": _money(row.tax_amount),
        "shipping_amount": _money(row.shipping_amount),
        "discount_amount": _money(row.discount_amount),
        "total_amount": _money(row.total_amount),
        "total_items": row.total_items,
        "payment_method": row.payment_method,
        "payment_details": _json(row.payment_details),
        "shipping_method": row.shipping_method,
        "shipping_address_id": row.shipping_address_id,
        "billing_address_id": row.billing_address_id,
        "shipping_address": _json(row.shipping_address),
        "billing_address": _json(row.billing_address),
        "notes": row.notes,
        "metadata": _json(row.metadata),
        "items": items,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }
    if with_customer:
        order["customer"] = {
            "id": row.customer_id,
            "username": row.customer_username,
            "email": row.customer_email,
            "first_name": row.customer_first_name,
            "last_name": row.customer_last_name,
            "phone": row.customer_phone,
        }
    return order


async def _load_items(
    session: AsyncSession,
    order_ids: list[int],
    supplier_id: int | None = None,
) -> dict[int, list[dict]]:
    """注文 id ごとの明細。supplier_id があればその仕入先の商品だけに絞る。"""
    if not order_ids:
        return {}
    sql = """
        SELECT oi.id, oi.order_id, oi.product_id, oi.name, oi.sku, oi.quantity,
               oi.unit_price, oi.subtotal, oi.tax, oi.discount, oi.total, oi.metadata
        FROM order_items oi
    """
    params: dict = {"order_ids": order_ids}
    if supplier_id is not None:
        sql += " JOIN products p ON p.id = oi.product_id AND p.supplier_id = :supplier_id"
        params["supplier_id"] = supplier_id
    sql += " WHERE oi.order_id IN :order_ids ORDER BY oi.id"

    result = await session.execute(
        text(sql).bindparams(bindparam("order_ids", expanding=True)),
        params,
    )
    items: dict[int, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        items[row.order_id].append(_item_to_dict(row))
    return items


# ── フィルタとページネーション ───────────────────


class _Filter:
    """WHERE 句と bind パラメータを組み立てる。"""

    def __init__(self) -> None:
        self.clauses: list[str] = []
        self.params: dict = {}
        self.datetime_params: list[str] = []

    def add(self, clause: str, **params) -> None:
        self.clauses.append(clause)
        self.params.update(params)

    def add_datetime(self, clause: str, name: str, value: datetime) -> None:
        self.add(clause, **{name: value})
        self.datetime_params.append(name)

    def where(self) -> str:
        return ("WHERE " + " AND ".join(self.clauses)) if self.clauses else ""

    def statement(self, sql: str):
        stmt = text(sql)
        if self.datetime_params:
            stmt = stmt.bindparams(
                *(bindparam(name, type_=DateTime(timezone=True)) for name in self.datetime_params)
            )
        return stmt


def _order_by(sort_by: str, sort_order: str) -> str:
    if sort_by not in SORTABLE_COLUMNS:
        raise InvalidQuery(f"Cannot sort by {sort_by}")
    direction = "ASC" if sort_order == "asc" else "DESC"
    return f"ORDER BY o.{sort_by} {direction}, o.id {direction}"


def _pagination(total: int, page: int, limit: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "total_pages": total_pages,
        "current_page": page,
        "limit": limit,
        "has_prev_page": page > 1,
        "has_next_page": page < total_pages,
    }


def _start_of(value: date) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _end_of(value: date) -> datetime:
    """終了日はその日の終わりまでを含める。"""
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max)


async def _paginate(
    session: AsyncSession,
    flt: _Filter,
    page: int,
    limit: int,
    sort_by: str,
    sort_order: str,
    with_customer: bool = False,
    item_supplier_id: int | None = None,
) -> dict:
    if page < 1 or limit < 1:
        raise InvalidQuery("page and limit must be positive")
    order_by = _order_by(sort_by, sort_order)

    total = await session.scalar(
        flt.statement(f"SELECT COUNT(*) FROM orders o {flt.where()}"),
        flt.params,
    )

    columns = ORDER_COLUMNS
    join = ""
    if with_customer:
        columns += ", " + CUSTOMER_COLUMNS
        join = "LEFT JOIN customers c ON c.id = o.customer_id"
    result = await session.execute(
        flt.statement(f"""
            SELECT {columns}
            FROM orders o {join}
            {flt.where()}
            {order_by}
            LIMIT :limit OFFSET :offset
        """),
        {**flt.params, "limit": limit, "offset": (page - 1) * limit},
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows], item_supplier_id)
    orders = [_order_to_dict(row, items[row.id], with_customer) for row in rows]

    return {
        "results": len(orders),
        "pagination": _pagination(total or 0, page, limit),
        "orders": orders,
    }


# ── 公開クエリ ───────────────────────────────────


async def get_order(session: AsyncSession, order_id: int, principal: Principal) -> dict:
    """注文を 1 件取得する。顧客は自分の注文しか見られない。"""
    result = await session.execute(
        text(f"""
            SELECT {ORDER_COLUMNS}, {CUSTOMER_COLUMNS}
            FROM orders o
            LEFT JOIN customers c ON c.id = o.customer_id
            WHERE o.id = :id
        """),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        raise OrderNotFound(order_id)
    if not principal.can_access(row.customer_id):
        raise Forbidden("You do not have permission to access this order")

    items = await _load_items(session, [row.id])
    return _order_to_dict(row, items[row.id], with_customer=True)


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    payment_status: str | None = None,
    customer_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    min_amount: float | None = None,
    max_amount: float | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> dict:
    """全注文の一覧（管理者用）。"""
    flt = _Filter()
    if status is not None:
        flt.add("o.status = :status", status=parse_order_status(status).value)
    if payment_status is not None:
        flt.add(
            "o.payment_status = :payment_status",
            payment_status=parse_payment_status(payment_status).value,
        )
    if customer_id is not None:
        flt.add("o.customer_id = :customer_id", customer_id=customer_id)
    if start_date is not None:
        flt.add_datetime("o.created_at >= :start_date", "start_date", _start_of(start_date))
    if end_date is not None:
        flt.add_datetime("o.created_at <= :end_date", "end_date", _end_of(end_date))
    if min_amount is not None:
        flt.add("o.total_amount >= :min_amount", min_amount=min_amount)
    if max_amount is not None:
        flt.add("o.total_amount <= :max_amount", max_amount=max_amount)

    return await _paginate(session, flt, page, limit, sort_by, sort_order, with_customer=True)


async def list_my_orders(
    session: AsyncSession,
    customer_id: int,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> dict:
    """顧客自身の注文一覧。"""
    flt = _Filter()
    flt.add("o.customer_id = :customer_id", customer_id=customer_id)
    if status is not None:
        flt.add("o.status = :status", status=parse_order_status(status).value)
    return await _paginate(session, flt, page, limit, sort_by, sort_order)


async def list_my_drafts(
    session: AsyncSession,
    customer_id: int,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "updated_at",
    sort_order: str = "desc",
) -> dict:
    flt = _Filter()
    flt.add("o.customer_id = :customer_id", customer_id=customer_id)
    flt.add("o.status = :status", status=OrderStatus.DRAFT.value)
    return await _paginate(session, flt, page, limit, sort_by, sort_order)


async def get_my_draft(session: AsyncSession, customer_id: int, draft_id: int) -> dict:
    result = await session.execute(
        text(f"""
            SELECT {ORDER_COLUMNS}
            FROM orders o
            WHERE o.id = :id AND o.customer_id = :customer_id AND o.status = :status
        """),
        {"id": draft_id, "customer_id": customer_id, "status": OrderStatus.DRAFT.value},
    )
    row = result.fetchone()
    if not row:
        raise DraftNotFound(draft_id)
    items = await _load_items(session, [row.id])
    return _order_to_dict(row, items[row.id])


async def list_supplier_orders(
    session: AsyncSession,
    supplier_id: int,
    status: str | None = None,
    payment_status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> dict:
    """
    仕入先の商品を含む注文の一覧。

    明細はその仕入先の商品だけに絞って返す。
    """
    flt = _Filter()
    flt.add(
        """o.id IN (
            SELECT oi.order_id FROM order_items oi
            JOIN products p ON p.id = oi.product_id
            WHERE p.supplier_id = :supplier_id
        )""",
        supplier_id=supplier_id,
    )
    if status is not None:
        flt.add("o.status = :status", status=parse_order_status(status).value)
    if payment_status is not None:
        flt.add(
            "o.payment_status = :payment_status",
            payment_status=parse_payment_status(payment_status).value,
        )
    if start_date is not None:
        flt.add_datetime("o.created_at >= :start_date", "start_date", _start_of(start_date))
    if end_date is not None:
        flt.add_datetime("o.created_at <= :end_date", "end_date", _end_of(end_date))

    return await _paginate(
        session, flt, page, limit, sort_by, sort_order,
        with_customer=True, item_supplier_id=supplier_id,
    )
