"""
Order Service — ドメインエラー

注文ライフサイクルで発生する拒否理由をすべて例外として定義する。
各エラーは kind (機械判定用) / message (人間向け) / status_code
(HTTP 相当) を持ち、HTTP 層はそれをそのままレスポンスに変換する。

分類:
    ValidationError        400  入力不正 (トランザクション開始前に拒否)
    AuthenticationRequired 401  プリンシパルなし
    Forbidden              403  管理者でも所有者でもない
    NotFound               404  注文・商品・下書きが存在しない
    StateConflict          409  状態の競合 (キャンセル済み・在庫不足など)
"""


class OrderServiceError(Exception):
    """Order Service のすべてのドメインエラーの基底クラス。"""

    status_code = 500
    kind = "OrderServiceError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ── 400 ──────────────────────────────────────────


class ValidationError(OrderServiceError):
    status_code = 400
    kind = "ValidationError"


class EmptyOrder(ValidationError):
    kind = "EmptyOrder"

    def __init__(self, message: str = "Order must contain at least one item"):
        super().__init__(message)


class MissingAddress(ValidationError):
    kind = "MissingAddress"

    def __init__(self, which: str):
        self.which = which
        super().__init__(f"{which.capitalize()} address is required")


class InvalidOrderItem(ValidationError):
    kind = "InvalidOrderItem"

    def __init__(self, message: str = "Invalid order item"):
        super().__init__(message)


class InvalidOrderStatus(ValidationError):
    kind = "InvalidOrderStatus"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid order status: {value}")


class InvalidPaymentStatus(ValidationError):
    kind = "InvalidPaymentStatus"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid payment status: {value}")


class InvalidQuery(ValidationError):
    kind = "InvalidQuery"


class ProductUnavailable(ValidationError):
    """非公開の商品を注文しようとした"""

    kind = "ProductUnavailable"

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f"Product {product_name} is not available for purchase")


# ── 401 / 403 ────────────────────────────────────


class AuthenticationRequired(OrderServiceError):
    status_code = 401
    kind = "AuthenticationRequired"

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class Forbidden(OrderServiceError):
    status_code = 403
    kind = "Forbidden"

    def __init__(self, message: str = "You do not have permission to perform this action"):
        super().__init__(message)


# ── 404 ──────────────────────────────────────────


class NotFound(OrderServiceError):
    status_code = 404
    kind = "NotFound"


class OrderNotFound(NotFound):
    kind = "OrderNotFound"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__("Order not found")


class DraftNotFound(NotFound):
    kind = "DraftNotFound"

    def __init__(self, draft_id: int):
        self.draft_id = draft_id
        super().__init__("Draft order not found")


class ProductNotFound(NotFound):
    kind = "ProductNotFound"

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product with ID {product_id} not found")


class AddressNotFound(NotFound):
    kind = "AddressNotFound"

    def __init__(self, address_id: int):
        self.address_id = address_id
        super().__init__(f"Address with ID {address_id} not found")


# ── 409 ──────────────────────────────────────────


class StateConflict(OrderServiceError):
    status_code = 409
    kind = "StateConflict"


class AlreadyCancelled(StateConflict):
    kind = "AlreadyCancelled"

    def __init__(self):
        super().__init__("Order is already cancelled")


class OrderFinalized(StateConflict):
    """delivered / refunded の注文は状態を変えられない"""

    kind = "OrderFinalized"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Order is already {status} and can no longer change status")


class InsufficientStock(StateConflict):
    kind = "InsufficientStock"

    def __init__(self, product_name: str, requested: int, available: int):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_name}: "
            f"requested={requested}, available={available}"
        )


class NotADraft(StateConflict):
    kind = "NotADraft"

    def __init__(self):
        super().__init__("This order is not a draft")


class InvalidTransition(StateConflict):
    kind = "InvalidTransition"

    def __init__(self, current: str, target: str, hint: str | None = None):
        self.current = current
        self.target = target
        msg = f"Cannot change order status from {current} to {target}"
        if hint:
            msg = f"{msg} ({hint})"
        super().__init__(msg)


class OrderNumberExhausted(StateConflict):
    kind = "OrderNumberExhausted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not allocate a unique order number after {attempts} attempts")
