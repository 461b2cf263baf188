"""
orderflow — エラー定義

ドメインの失敗はすべて OrderflowError のサブクラスとして送出する。
API 層はこれを HTTP ステータス付きの JSON に変換する。
"""


class OrderflowError(Exception):
    code = "orderflow_error"
    status_code = 400

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.code, **self.context}


# ── 在庫 ─────────────────────────────────────────


class InsufficientStock(OrderflowError):
    """在庫不足 — 数量を減らすか別商品を選べば回復できる"""
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {product_id}: "
            f"requested={requested}, available={available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ProductNotFound(OrderflowError):
    code = "product_not_found"
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Inventory not found for {product_id}", product_id=product_id)
        self.product_id = product_id


class InventoryAlreadyExists(OrderflowError):
    code = "inventory_already_exists"
    status_code = 409

    def __init__(self, product_id: str) -> None:
        super().__init__(
            f"Inventory already exists for {product_id}", product_id=product_id
        )


class InvalidStockLevel(OrderflowError):
    code = "invalid_stock_level"
    status_code = 422


# ── 注文 ─────────────────────────────────────────


class OrderNotFound(OrderflowError):
    code = "order_not_found"
    status_code = 404

    def __init__(self, order_id) -> None:
        super().__init__(f"Order {order_id} not found", order_id=str(order_id))


class InvalidCart(OrderflowError):
    code = "invalid_cart"
    status_code = 422


class InvalidQuery(OrderflowError):
    """一覧取得の並び順・期間などの指定が不正"""
    code = "invalid_query"
    status_code = 422


class InvalidTransition(OrderflowError):
    """許可されていない状態遷移。自動リトライはしない。"""
    code = "invalid_transition"
    status_code = 409

    def __init__(self, from_status, to_status, message: str | None = None) -> None:
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(
            message or f"Cannot transition order from {from_value} to {to_value}",
            from_status=from_value,
            to_status=to_value,
        )
        self.from_status = from_status
        self.to_status = to_status


class CannotCancelShippedOrder(InvalidTransition):
    code = "cannot_cancel_shipped_order"

    def __init__(self, from_status) -> None:
        super().__init__(
            from_status,
            "cancelled",
            "Order has already been handed to the carrier and cannot be cancelled",
        )


class ConcurrencyConflict(OrderflowError):
    """同じ集約への同時書き込みを検知した (楽観的ロック)"""
    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, aggregate_id, expected_version: int) -> None:
        super().__init__(
            f"Aggregate {aggregate_id} was modified concurrently "
            f"(expected version {expected_version})",
            aggregate_id=str(aggregate_id),
            expected_version=expected_version,
        )


# ── 配送 ─────────────────────────────────────────


class InvalidShipmentDetails(OrderflowError):
    code = "invalid_shipment_details"
    status_code = 422


class OrderNotShippable(OrderflowError):
    code = "order_not_shippable"
    status_code = 409

    def __init__(self, order_id, status) -> None:
        status_value = getattr(status, "value", status)
        super().__init__(
            f"Order {order_id} is {status_value}; only paid orders can be shipped",
            order_id=str(order_id),
            status=status_value,
        )


class ShipmentAlreadyExists(OrderflowError):
    code = "shipment_already_exists"
    status_code = 409

    def __init__(self, order_id) -> None:
        super().__init__(
            f"Shipment already exists for order {order_id}", order_id=str(order_id)
        )


class ShipmentNotFound(OrderflowError):
    code = "shipment_not_found"
    status_code = 404

    def __init__(self, order_id) -> None:
        super().__init__(
            f"No shipment recorded for order {order_id}", order_id=str(order_id)
        )


class TrackingNumberNotFound(OrderflowError):
    code = "tracking_number_not_found"
    status_code = 404

    def __init__(self, tracking_number: str) -> None:
        super().__init__(
            f"No shipment found for tracking number {tracking_number}",
            tracking_number=tracking_number,
        )


class CarrierUnavailable(OrderflowError):
    code = "carrier_unavailable"
    status_code = 502


# ── 認可 ─────────────────────────────────────────


class Forbidden(OrderflowError):
    code = "forbidden"
    status_code = 403

    def __init__(self, actor_id: str, action: str) -> None:
        super().__init__(
            f"Actor {actor_id} is not allowed to {action} this order",
            actor_id=actor_id,
            action=action,
        )
