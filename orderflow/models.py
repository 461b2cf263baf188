"""
orderflow — 値オブジェクト

カートのスナップショット、注文明細、出荷、在庫レコードなど。
いずれも作成後に変更しない (frozen)。
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .errors import InsufficientStock, InvalidStockLevel

CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    COD = "cod"  # cash on delivery


# ── カート ───────────────────────────────────────


class CartLine(BaseModel):
    """チェックアウト時点のカート行。価格はここで固定される。"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    seller_id: str
    quantity: int
    unit_price: Decimal
    product_name: str = ""
    product_image: str = ""
    variant: dict[str, str] | None = None


class CartSnapshot(BaseModel):
    """
    チェックアウト時のカートのコピー。

    割引額と送料は外部サービス (クーポン・配送料計算) が算出済みの値を受け取る。
    """
    model_config = ConfigDict(frozen=True)

    buyer_id: str
    lines: tuple[CartLine, ...] = ()
    discount: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    coupon_code: str | None = None
    notes: str | None = None


# ── 注文 ─────────────────────────────────────────


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    seller_id: str
    quantity: int
    unit_price: Decimal
    product_name: str = ""
    product_image: str = ""
    variant: dict[str, str] | None = None

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)

    @classmethod
    def from_cart_line(cls, line: CartLine) -> "OrderLine":
        return cls(**line.model_dump())


class Dimensions(BaseModel):
    model_config = ConfigDict(frozen=True)

    length: float
    width: float
    height: float
    unit: str = "cm"


class ShipmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETURNED = "returned"


class TrackingEntry(BaseModel):
    """配送状況の履歴 1 件"""
    model_config = ConfigDict(frozen=True)

    status: ShipmentStatus
    timestamp: datetime
    location: str | None = None
    description: str = ""


class Shipment(BaseModel):
    """
    1 注文につき 1 件。
    作成後に変わるのは status / tracking_history / shipped_at / label_url だけ。
    """
    model_config = ConfigDict(frozen=True)

    shipment_id: str
    order_id: str
    carrier: str
    tracking_number: str
    weight_kg: float | None = None
    dimensions: Dimensions | None = None
    shipping_cost: Decimal = Decimal("0")
    estimated_delivery_date: datetime | None = None
    shipped_at: datetime | None = None
    label_url: str | None = None
    status: ShipmentStatus = ShipmentStatus.PENDING
    tracking_history: tuple[TrackingEntry, ...] = ()
    created_at: datetime

    def with_tracking(self, entry: TrackingEntry, **changes) -> "Shipment":
        return self.model_copy(
            update={
                **changes,
                "status": entry.status,
                "tracking_history": (*self.tracking_history, entry),
            }
        )


# ── 在庫 ─────────────────────────────────────────


class StockRecord(BaseModel):
    """商品ごとの在庫。available = quantity - reserved_quantity"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = 0
    reserved_quantity: int = 0
    location: str = ""
    sku: str | None = None
    last_restock_date: datetime | None = None
    updated_at: datetime | None = None

    @property
    def available(self) -> int:
        return self.quantity - self.reserved_quantity

    # 以下の plan_xxx は新しい列の値を計算するだけで、保存はストアが行う。

    def plan_release(self, quantity: int) -> tuple[dict, int]:
        """引き当て解放。予約数を超える分は 0 で止める。"""
        released = min(quantity, self.reserved_quantity)
        return {"reserved_quantity": self.reserved_quantity - released}, released

    def plan_commit(self, quantity: int) -> tuple[dict, int]:
        """出庫。quantity と reserved_quantity を同じだけ減らす。"""
        if self.quantity < quantity:
            raise InsufficientStock(self.product_id, quantity, self.quantity)
        from_reserved = min(quantity, self.reserved_quantity)
        return {
            "quantity": self.quantity - quantity,
            "reserved_quantity": self.reserved_quantity - from_reserved,
        }, from_reserved

    def plan_update(
        self,
        now: datetime,
        quantity: int | None = None,
        location: str | None = None,
        sku: str | None = None,
    ) -> dict:
        values: dict = {}
        if quantity is not None:
            if quantity < self.reserved_quantity:
                raise InvalidStockLevel(
                    f"quantity {quantity} is below the {self.reserved_quantity} "
                    "reserved units",
                    product_id=self.product_id,
                )
            values["quantity"] = quantity
            values["last_restock_date"] = now
        if location is not None:
            values["location"] = location
        if sku is not None:
            values["sku"] = sku
        return values

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available": self.available,
            "location": self.location,
            "sku": self.sku,
            "last_restock_date": self.last_restock_date.isoformat()
            if self.last_restock_date
            else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class StepLog(BaseModel):
    """オーケストレーションの 1 ステップ"""
    step: int
    action: str
    status: str = "EXECUTING"
    timestamp: datetime
    error: str | None = None
    detail: dict = Field(default_factory=dict)
