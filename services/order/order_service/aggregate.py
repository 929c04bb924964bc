"""
Order Service — 注文集約 (Order Aggregate)

注文の状態遷移と金額計算をまとめたモジュール。
ORM のフック (保存前の合計再計算・注文番号の自動採番) に頼らず、
コマンドハンドラが以下の関数を明示的に呼び出す:

    price_item / recompute_totals   明細と合計の計算
    generate_order_number           注文番号の生成
    apply_status                    管理者による状態変更
    apply_payment_status            管理者による支払い状態変更
    ensure_cancellable / apply_cancellation
    apply_draft_conversion          draft → pending

状態遷移:
    draft ──(convert)──▶ pending
    pending ─▶ processing ─▶ shipped ─▶ delivered  [終端]
    終端以外 ──(cancel)──▶ cancelled [終端]
    refunded [終端]

金額の不変条件:
    total_amount = subtotal + tax_amount + shipping_amount - discount_amount
"""

import random
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from .auth import Principal
from .errors import (
    AlreadyCancelled,
    InvalidOrderStatus,
    InvalidPaymentStatus,
    InvalidTransition,
    OrderFinalized,
)
from .models import Order, OrderItem, OrderStatus, PaymentStatus, Product

TAX_RATE = Decimal("0.10")
EXPRESS_SHIPPING = Decimal("15")
STANDARD_SHIPPING = Decimal("5")
CENT = Decimal("0.01")
ZERO = Decimal("0")

ORDER_PREFIX = "ORD"
DRAFT_PREFIX = "DFT"

TERMINAL_STATUSES = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.DELIVERED, OrderStatus.REFUNDED}
)
FINALIZED_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED})


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── 入力値の検証 ─────────────────────────────────


def parse_order_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidOrderStatus(value) from None


def parse_payment_status(value) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise InvalidPaymentStatus(value) from None


# ── 金額計算 ─────────────────────────────────────


def price_item(product: Product, quantity: int) -> OrderItem:
    """商品の現在値から明細のスナップショットを作る（税 10%）。"""
    unit_price = money(product.price)
    subtotal = money(unit_price * quantity)
    tax = money(subtotal * TAX_RATE)
    discount = ZERO
    return OrderItem(
        product_id=product.id,
        name=product.name,
        sku=product.sku,
        quantity=quantity,
        unit_price=unit_price,
        subtotal=subtotal,
        tax=tax,
        discount=discount,
        total=subtotal + tax - discount,
        meta={},
    )


def reprice_item(item: OrderItem, product: Product) -> None:
    """
    既存の明細を商品の現在値で取り直す（下書き → 注文の変換時）。

    単価が変わった場合は下書き時点の単価を明細の metadata に残す。
    """
    fresh = price_item(product, item.quantity)
    if item.unit_price is not None and money(item.unit_price) != fresh.unit_price:
        item.meta = {**(item.meta or {}), "repriced_from": float(item.unit_price)}
    item.name = fresh.name
    item.sku = fresh.sku
    item.unit_price = fresh.unit_price
    item.subtotal = fresh.subtotal
    item.tax = fresh.tax
    item.discount = fresh.discount
    item.total = fresh.total


def shipping_for(method: str | None, draft: bool = False, has_items: bool = True) -> Decimal:
    """
    配送料。express は 15、それ以外は 5。

    下書きでは配送方法が未指定、または明細が空なら 0。
    """
    if draft and (not method or not has_items):
        return ZERO
    if method == "express":
        return EXPRESS_SHIPPING
    return STANDARD_SHIPPING


def recompute_totals(order: Order, shipping: Decimal) -> None:
    """明細から注文の合計金額を再計算する。"""
    subtotal = sum((item.subtotal for item in order.items), ZERO)
    tax = sum((item.tax for item in order.items), ZERO)
    discount = order.discount_amount if order.discount_amount is not None else ZERO

    order.subtotal = money(subtotal)
    order.tax_amount = money(tax)
    order.shipping_amount = money(shipping)
    order.discount_amount = money(discount)
    order.total_amount = money(subtotal + tax + shipping - discount)
    order.total_items = len(order.items)


# ── 注文番号 ─────────────────────────────────────


def generate_order_number(prefix: str = ORDER_PREFIX, now_ms: int | None = None) -> str:
    """
    "<prefix>-" + ミリ秒タイムスタンプの下 6 桁 + 3 桁の乱数。

    衝突は確率的にしか避けられないため、呼び出し側で一意性を確認する。
    """
    timestamp = str(now_ms if now_ms is not None else int(time.time() * 1000))
    suffix = random.randint(0, 999)
    return f"{prefix}-{timestamp[-6:]}{suffix:03d}"


# ── 状態遷移 ─────────────────────────────────────


def apply_status(order: Order, target: OrderStatus) -> None:
    """管理者による状態変更。在庫には触れない。"""
    current = OrderStatus(order.status)
    if current in TERMINAL_STATUSES:
        raise OrderFinalized(current.value)
    if current is OrderStatus.DRAFT:
        raise InvalidTransition(current.value, target.value, "convert the draft first")
    if target is OrderStatus.CANCELLED:
        raise InvalidTransition(current.value, target.value, "use the cancel operation")
    if target is OrderStatus.DRAFT:
        raise InvalidTransition(current.value, target.value)
    order.status = target.value


def apply_payment_status(order: Order, target: PaymentStatus, details: dict | None = None) -> None:
    order.payment_status = target.value
    if details is not None:
        order.payment_details = details


def ensure_cancellable(order: Order) -> None:
    current = OrderStatus(order.status)
    if current is OrderStatus.CANCELLED:
        raise AlreadyCancelled()
    if current in FINALIZED_STATUSES:
        raise OrderFinalized(current.value)


def apply_cancellation(order: Order, actor: Principal, reason: str | None = None) -> None:
    """status → cancelled。支払い済みなら payment_status → refunded。"""
    order.status = OrderStatus.CANCELLED.value
    if order.payment_status == PaymentStatus.PAID.value:
        order.payment_status = PaymentStatus.REFUNDED.value

    order.meta = {
        **(order.meta or {}),
        "cancellation": {
            "cancelled_at": _now_iso(),
            "cancelled_by": actor.role.value,
            "cancelled_by_id": actor.id,
            "reason": reason or "No reason provided",
        },
    }


def apply_draft_conversion(order: Order) -> None:
    """draft → pending。新しい注文番号は呼び出し側が採番して設定する。"""
    order.meta = {
        **(order.meta or {}),
        "is_draft": False,
        "converted_from_draft": True,
        "draft_order_number": order.order_number,
        "converted_at": _now_iso(),
    }
    order.status = OrderStatus.PENDING.value
    order.payment_status = PaymentStatus.PENDING.value
