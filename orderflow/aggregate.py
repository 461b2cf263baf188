"""
orderflow — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

  apply_xxx メソッド: 各イベントを適用して状態を変更する
  コマンドメソッド:   ガードを検証し、イベントを生成して自身に適用する
                      (生成したイベントは pending_events に積まれ、
                       リポジトリが expected_version 付きで保存する)

状態遷移:
    PENDING → PAID → SHIPPED → DELIVERED
    PENDING → CANCELLED
    PAID    → CANCELLED   (出荷レコードが無い場合のみ)

DELIVERED と CANCELLED は終端状態で、以降の遷移はすべて拒否する。
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from .errors import (
    CannotCancelShippedOrder,
    InvalidShipmentDetails,
    InvalidTransition,
    OrderNotShippable,
    ShipmentAlreadyExists,
    ShipmentNotFound,
)
from .events import (
    ORDER_EVENTS,
    Event,
    OrderCancelled,
    OrderCreated,
    OrderDelivered,
    OrderPaid,
    OrderShipped,
    ShipmentCreated,
    ShipmentTrackingUpdated,
    ShippingLabelGenerated,
)
from .models import (
    CartSnapshot,
    Dimensions,
    OrderLine,
    OrderStatus,
    PaymentMethod,
    Shipment,
    ShipmentStatus,
    TrackingEntry,
    quantize,
)

ZERO = Decimal("0")

# 配送ラベルを発行できる状態
LABEL_STATUSES = (OrderStatus.PAID, OrderStatus.SHIPPED)

# ship / deliver コマンドを経由すべき配送状況 (在庫の副作用を伴う)
TRANSITION_SHIPMENT_STATUSES = (ShipmentStatus.SHIPPED, ShipmentStatus.DELIVERED)


def quantities_by_product(lines: Iterable) -> list[tuple[str, int]]:
    """
    引き当て計画: 商品ごとの合計数量を product_id 昇順で返す。

    複数注文が重なる商品集合をロックするとき、常に同じ順序で
    取得することでデッドロックを避ける。
    """
    totals: dict[str, int] = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return sorted(totals.items())


def validate_shipment_details(
    carrier: str | None,
    tracking_number: str | None,
    carriers: Iterable[str],
) -> tuple[str, str]:
    tracking = (tracking_number or "").strip()
    if not tracking:
        raise InvalidShipmentDetails("tracking_number is required")
    name = (carrier or "").strip().lower()
    if name not in carriers:
        raise InvalidShipmentDetails(
            f"Unrecognized carrier: {carrier!r}", carrier=carrier
        )
    return name, tracking


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    合計金額は作成時に固定され、その後の商品価格の変更は影響しない。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.order_number: str = ""
        self.buyer_id: str = ""
        self.items: list[OrderLine] = []
        self.subtotal: Decimal = ZERO
        self.discount: Decimal = ZERO
        self.shipping: Decimal = ZERO
        self.tax: Decimal = ZERO
        self.total: Decimal = ZERO
        self.payment_method: PaymentMethod | None = None
        self.payment_status: bool = False
        self.transaction_id: str | None = None
        self.shipping_address_id: str = ""
        self.coupon_code: str | None = None
        self.notes: str | None = None
        self.status: OrderStatus | None = None
        self.shipment: Shipment | None = None
        self.tracking_number: str | None = None
        self.cancel_reason: str | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.paid_at: datetime | None = None
        self.delivered_at: datetime | None = None
        self.cancelled_at: datetime | None = None
        self.version: int = 0
        self.pending_events: list[Event] = []

    # ── 派生値 ───────────────────────────────────────

    @property
    def seller_ids(self) -> list[str]:
        return sorted({line.seller_id for line in self.items})

    @property
    def seller_id(self) -> str | None:
        """単一出品者の注文ならその ID、複数出品者なら None"""
        sellers = self.seller_ids
        return sellers[0] if len(sellers) == 1 else None

    @property
    def reservation_plan(self) -> list[tuple[str, int]]:
        return quantities_by_product(self.items)

    # ── コマンド ─────────────────────────────────────

    @classmethod
    def create(
        cls,
        order_id: UUID,
        snapshot: CartSnapshot,
        shipping_address_id: str,
        payment_method: PaymentMethod,
        tax_rate: Decimal,
        now: datetime,
    ) -> "OrderAggregate":
        """カートのスナップショットから PENDING の注文を作る。"""
        items = [OrderLine.from_cart_line(line) for line in snapshot.lines]
        subtotal = quantize(sum((item.line_total for item in items), ZERO))
        # 割引で合計がマイナスにならないようにする
        discount = quantize(min(snapshot.discount, subtotal))
        shipping = quantize(snapshot.shipping)
        tax = quantize((subtotal - discount) * tax_rate)
        total = quantize(subtotal - discount + shipping + tax)

        agg = cls()
        agg._raise(
            OrderCreated(
                order_id=order_id,
                order_number=f"ORD-{now:%Y%m%d}-{order_id.hex[:8].upper()}",
                buyer_id=snapshot.buyer_id,
                items=items,
                subtotal=subtotal,
                discount=discount,
                shipping=shipping,
                tax=tax,
                total=total,
                payment_method=payment_method,
                shipping_address_id=shipping_address_id,
                coupon_code=snapshot.coupon_code,
                notes=snapshot.notes,
                timestamp=now,
            )
        )
        return agg

    def confirm_payment(self, transaction_id: str | None, now: datetime) -> bool:
        """
        決済確定。既に支払い済みなら何もせず False を返す
        (ゲートウェイは webhook をリトライするため)。
        """
        if self.payment_status and self.status in (
            OrderStatus.PAID,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        ):
            return False
        if self.status is not OrderStatus.PENDING:
            raise InvalidTransition(self.status, OrderStatus.PAID)
        self._raise(
            OrderPaid(order_id=self.id, transaction_id=transaction_id, timestamp=now)
        )
        return True

    def create_shipment(
        self,
        shipment_id: str,
        carrier: str,
        tracking_number: str,
        carriers: Iterable[str],
        now: datetime,
        weight_kg: float | None = None,
        dimensions: Dimensions | None = None,
        shipping_cost: Decimal = ZERO,
        estimated_delivery_date: datetime | None = None,
    ) -> Shipment:
        if self.status is not OrderStatus.PAID:
            raise OrderNotShippable(self.id, self.status)
        if self.shipment is not None:
            raise ShipmentAlreadyExists(self.id)
        carrier, tracking_number = validate_shipment_details(
            carrier, tracking_number, carriers
        )
        self._raise(
            ShipmentCreated(
                order_id=self.id,
                shipment_id=shipment_id,
                carrier=carrier,
                tracking_number=tracking_number,
                weight_kg=weight_kg,
                dimensions=dimensions,
                shipping_cost=quantize(shipping_cost),
                estimated_delivery_date=estimated_delivery_date,
                timestamp=now,
            )
        )
        return self.shipment

    def ship(
        self,
        shipment_id: str,
        tracking_number: str | None,
        carrier: str | None,
        carriers: Iterable[str],
        now: datetime,
        estimated_delivery_date: datetime | None = None,
    ) -> None:
        """
        PAID → SHIPPED

        出荷レコードが無ければここで作る。既にあれば渡された値は
        既存レコードと一致しなければならない (出荷レコードは不変)。
        """
        if self.status is not OrderStatus.PAID:
            raise InvalidTransition(self.status, OrderStatus.SHIPPED)

        if self.shipment is None:
            self.create_shipment(
                shipment_id,
                carrier,
                tracking_number,
                carriers,
                now,
                estimated_delivery_date=estimated_delivery_date,
            )
        else:
            if tracking_number and tracking_number.strip() != self.shipment.tracking_number:
                raise InvalidShipmentDetails(
                    "tracking_number does not match the existing shipment",
                    tracking_number=tracking_number,
                )
            if carrier and carrier.strip().lower() != self.shipment.carrier:
                raise InvalidShipmentDetails(
                    "carrier does not match the existing shipment", carrier=carrier
                )

        self._raise(
            OrderShipped(
                order_id=self.id,
                shipment_id=self.shipment.shipment_id,
                carrier=self.shipment.carrier,
                tracking_number=self.shipment.tracking_number,
                timestamp=now,
            )
        )

    def require_labelable(self) -> Shipment:
        """ラベルは PAID / SHIPPED の注文の出荷レコードにだけ発行できる。"""
        if self.status not in LABEL_STATUSES:
            raise InvalidTransition(
                self.status,
                "labelled",
                "Shipping labels can only be generated for paid or shipped orders",
            )
        if self.shipment is None:
            raise ShipmentNotFound(self.id)
        return self.shipment

    def record_label(self, label_url: str, now: datetime) -> None:
        self.require_labelable()
        self._raise(
            ShippingLabelGenerated(
                order_id=self.id,
                shipment_id=self.shipment.shipment_id,
                label_url=label_url,
                timestamp=now,
            )
        )

    def update_tracking(
        self,
        status: ShipmentStatus,
        now: datetime,
        location: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        配送業者からの配送状況を記録する。

        注文の状態は変えない。shipped / delivered は在庫の出庫を伴うため
        ship / deliver コマンドで扱う。
        """
        if self.status.is_terminal:
            raise InvalidTransition(self.status, status)
        if self.shipment is None:
            raise ShipmentNotFound(self.id)
        if status in TRANSITION_SHIPMENT_STATUSES:
            raise InvalidTransition(
                self.status,
                status,
                f"Use the {status.value} command to move the order forward",
            )
        self._raise(
            ShipmentTrackingUpdated(
                order_id=self.id,
                shipment_id=self.shipment.shipment_id,
                status=status,
                location=location,
                description=description or f"Status updated to {status.value}",
                timestamp=now,
            )
        )

    def deliver(self, now: datetime) -> None:
        """SHIPPED → DELIVERED"""
        if self.status is not OrderStatus.SHIPPED:
            raise InvalidTransition(self.status, OrderStatus.DELIVERED)
        self._raise(OrderDelivered(order_id=self.id, timestamp=now))

    def cancel(self, reason: str, now: datetime) -> None:
        """
        PENDING / PAID → CANCELLED

        出荷済み、または出荷レコードが既にある注文は取り消せない。
        物理的に発送済みの在庫を解放してしまうのを防ぐ。
        """
        if self.status is OrderStatus.SHIPPED or (
            self.status is OrderStatus.PAID and self.shipment is not None
        ):
            raise CannotCancelShippedOrder(self.status)
        if self.status not in (OrderStatus.PENDING, OrderStatus.PAID):
            raise InvalidTransition(self.status, OrderStatus.CANCELLED)
        self._raise(OrderCancelled(order_id=self.id, reason=reason, timestamp=now))

    def _raise(self, event: Event) -> None:
        self.apply(event)
        self.pending_events.append(event)

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, event: OrderCreated) -> None:
        self.id = event.order_id
        self.order_number = event.order_number
        self.buyer_id = event.buyer_id
        self.items = list(event.items)
        self.subtotal = event.subtotal
        self.discount = event.discount
        self.shipping = event.shipping
        self.tax = event.tax
        self.total = event.total
        self.payment_method = event.payment_method
        self.shipping_address_id = event.shipping_address_id
        self.coupon_code = event.coupon_code
        self.notes = event.notes
        self.status = OrderStatus.PENDING
        self.created_at = event.timestamp

    def apply_order_paid(self, event: OrderPaid) -> None:
        self.status = OrderStatus.PAID
        self.payment_status = True
        self.transaction_id = event.transaction_id
        self.paid_at = event.timestamp

    def apply_shipment_created(self, event: ShipmentCreated) -> None:
        self.shipment = Shipment(
            shipment_id=event.shipment_id,
            order_id=str(event.order_id),
            carrier=event.carrier,
            tracking_number=event.tracking_number,
            weight_kg=event.weight_kg,
            dimensions=event.dimensions,
            shipping_cost=event.shipping_cost,
            estimated_delivery_date=event.estimated_delivery_date,
            tracking_history=(
                TrackingEntry(
                    status=ShipmentStatus.PENDING,
                    timestamp=event.timestamp,
                    description="Shipment created",
                ),
            ),
            created_at=event.timestamp,
        )
        self.tracking_number = event.tracking_number

    def apply_shipment_tracking_updated(self, event: ShipmentTrackingUpdated) -> None:
        self.shipment = self.shipment.with_tracking(
            TrackingEntry(
                status=event.status,
                timestamp=event.timestamp,
                location=event.location,
                description=event.description,
            )
        )

    def apply_shipping_label_generated(self, event: ShippingLabelGenerated) -> None:
        self.shipment = self.shipment.model_copy(update={"label_url": event.label_url})

    def apply_order_shipped(self, event: OrderShipped) -> None:
        self.status = OrderStatus.SHIPPED
        self.tracking_number = event.tracking_number
        self.shipment = self.shipment.with_tracking(
            TrackingEntry(
                status=ShipmentStatus.SHIPPED,
                timestamp=event.timestamp,
                description=f"Handed over to {event.carrier}",
            ),
            shipped_at=event.timestamp,
        )

    def apply_order_delivered(self, event: OrderDelivered) -> None:
        self.status = OrderStatus.DELIVERED
        self.delivered_at = event.timestamp
        self.shipment = self.shipment.with_tracking(
            TrackingEntry(
                status=ShipmentStatus.DELIVERED,
                timestamp=event.timestamp,
                description="Delivered",
            )
        )

    def apply_order_cancelled(self, event: OrderCancelled) -> None:
        self.status = OrderStatus.CANCELLED
        self.cancel_reason = event.reason
        self.cancelled_at = event.timestamp

    # ── イベントリプレイ ─────────────────────────────

    def apply(self, event: Event) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderPaid": self.apply_order_paid,
            "ShipmentCreated": self.apply_shipment_created,
            "ShipmentTrackingUpdated": self.apply_shipment_tracking_updated,
            "ShippingLabelGenerated": self.apply_shipping_label_generated,
            "OrderShipped": self.apply_order_shipped,
            "OrderDelivered": self.apply_order_delivered,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event.event_type)
        if handler:
            handler(event)
            self.updated_at = event.timestamp

    def apply_event(self, event_type: str, event_data: dict) -> None:
        event_cls = ORDER_EVENTS.get(event_type)
        if event_cls:
            self.apply(event_cls.model_validate(event_data))

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    # ── 表現 ─────────────────────────────────────────

    def summary(self) -> dict:
        """リードモデル (一覧用) の 1 行"""
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "buyer_id": self.buyer_id,
            "seller_ids": self.seller_ids,
            "status": self.status.value,
            "total": self.total,
            "payment_status": self.payment_status,
            "tracking_number": self.tracking_number,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "seller_ids": self.seller_ids,
            "items": [
                {
                    "product_id": item.product_id,
                    "seller_id": item.seller_id,
                    "product_name": item.product_name,
                    "product_image": item.product_image,
                    "variant": item.variant,
                    "quantity": item.quantity,
                    "unit_price": float(item.unit_price),
                    "line_total": float(item.line_total),
                }
                for item in self.items
            ],
            "subtotal": float(self.subtotal),
            "discount": float(self.discount),
            "shipping": float(self.shipping),
            "tax": float(self.tax),
            "total": float(self.total),
            "coupon_code": self.coupon_code,
            "notes": self.notes,
            "shipping_address_id": self.shipping_address_id,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_status": self.payment_status,
            "status": self.status.value if self.status else None,
            "tracking_number": self.tracking_number,
            "shipment": self.shipment.model_dump(mode="json") if self.shipment else None,
            "cancel_reason": self.cancel_reason,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "paid_at": _isoformat(self.paid_at),
            "delivered_at": _isoformat(self.delivered_at),
            "cancelled_at": _isoformat(self.cancelled_at),
            "version": self.version,
        }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
