"""
orderflow — イベント定義

注文と在庫で発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
イベントストアと Redis には model_dump(mode="json") の形で保存・発行する。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from .models import Dimensions, OrderLine, PaymentMethod, ShipmentStatus, StepLog


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_data(self) -> dict:
        return self.model_dump(mode="json")


# ── 注文イベント ─────────────────────────────────


class OrderCreated(Event):
    """注文が作成された (在庫は引き当て済み)"""
    order_id: UUID
    order_number: str
    buyer_id: str
    items: list[OrderLine]
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    payment_method: PaymentMethod
    shipping_address_id: str
    coupon_code: str | None = None
    notes: str | None = None


class OrderPaid(Event):
    """決済が確認された"""
    order_id: UUID
    transaction_id: str | None = None


class ShipmentCreated(Event):
    """出荷レコードが作成された (注文はまだ PAID)"""
    order_id: UUID
    shipment_id: str
    carrier: str
    tracking_number: str
    weight_kg: float | None = None
    dimensions: Dimensions | None = None
    shipping_cost: Decimal = Decimal("0")
    estimated_delivery_date: datetime | None = None


class ShippingLabelGenerated(Event):
    order_id: UUID
    shipment_id: str
    label_url: str


class ShipmentTrackingUpdated(Event):
    """配送業者から配送状況が届いた (注文の状態は変えない)"""
    order_id: UUID
    shipment_id: str
    status: ShipmentStatus
    location: str | None = None
    description: str = ""


class OrderShipped(Event):
    """配送業者に引き渡された"""
    order_id: UUID
    shipment_id: str
    carrier: str
    tracking_number: str


class OrderDelivered(Event):
    """配達が完了した (在庫が実際に減る)"""
    order_id: UUID


class OrderCancelled(Event):
    """注文がキャンセルされた (引き当て在庫は解放される)"""
    order_id: UUID
    reason: str = ""


class PaymentFailed(Event):
    """決済ゲートウェイが失敗を通知した (状態は変えない)"""
    order_id: UUID
    transaction_id: str | None = None


class SagaEvent(Event):
    order_id: UUID
    saga_log: list[StepLog]


class SagaCompleted(SagaEvent):
    """注文作成 Saga が完了した"""


class SagaCompensated(SagaEvent):
    """途中で失敗し、補償トランザクションを実行した"""


ORDER_EVENTS: dict[str, type[Event]] = {
    cls.__name__: cls
    for cls in (
        OrderCreated,
        OrderPaid,
        ShipmentCreated,
        ShippingLabelGenerated,
        ShipmentTrackingUpdated,
        OrderShipped,
        OrderDelivered,
        OrderCancelled,
    )
}


# ── 在庫イベント ─────────────────────────────────


class InventoryCreated(Event):
    product_id: str
    quantity: int
    location: str = ""
    sku: str | None = None


class InventoryUpdated(Event):
    product_id: str
    quantity: int
    reserved_quantity: int


class InventoryReserved(Event):
    """在庫が引き当てられた"""
    product_id: str
    quantity: int
    order_id: UUID | None = None


class InventoryReservationFailed(Event):
    """在庫引き当てが失敗した（在庫不足）"""
    product_id: str
    quantity_requested: int
    quantity_available: int
    order_id: UUID | None = None


class InventoryReleased(Event):
    """在庫の引き当てが解放された（補償トランザクション）"""
    product_id: str
    quantity: int
    order_id: UUID | None = None


class InventoryCommitted(Event):
    """配達完了により在庫が出庫された"""
    product_id: str
    quantity: int
    order_id: UUID | None = None


class InventorySyncFailed(Event):
    """
    注文の遷移は保存済みだが、在庫の出庫 / 解放に失敗した。
    在庫の照合 (reconciliation) で処理する。
    """
    order_id: UUID
    product_id: str
    quantity: int
    operation: str
    error: str

