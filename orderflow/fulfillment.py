"""
orderflow — フルフィルメントコーディネーター (FulfillmentCoordinator)

出荷レコードの作成、発送、配達完了、キャンセルを担当する。

在庫への副作用 (出庫・解放) は、注文イベントを expected_version 付きで
保存できた後にだけ実行する。同時に ship と cancel が来ても保存に
成功するのは片方だけなので、負けた側が在庫に触れることはない。

注文の遷移は既に確定しているため、在庫操作が失敗しても呼び出し元には
エラーを返さない。失敗した明細は InventorySyncFailed として
inventory_events に発行し、在庫の照合 (reconciliation) に回す。
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from .aggregate import OrderAggregate
from .carriers import CarrierClient
from .errors import OrderflowError
from .events import InventorySyncFailed
from .inventory import InventoryLedger
from .models import Dimensions, Shipment, ShipmentStatus
from .repository import OrderRepository

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FulfillmentCoordinator:
    def __init__(
        self,
        repository: OrderRepository,
        ledger: InventoryLedger,
        carrier_client: CarrierClient,
        carriers: frozenset[str],
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.carrier_client = carrier_client
        self.carriers = carriers

    async def create_shipment(
        self,
        order_id: UUID,
        carrier: str,
        tracking_number: str,
        weight_kg: float | None = None,
        dimensions: Dimensions | None = None,
        shipping_cost: Decimal = Decimal("0"),
        estimated_delivery_date: datetime | None = None,
    ) -> Shipment:
        """PAID の注文に出荷レコードを作る。注文の状態は PAID のまま。"""
        shipment_id = uuid4().hex
        agg, _ = await self.repository.mutate(
            order_id,
            lambda agg: agg.create_shipment(
                shipment_id,
                carrier,
                tracking_number,
                self.carriers,
                _now(),
                weight_kg=weight_kg,
                dimensions=dimensions,
                shipping_cost=shipping_cost,
                estimated_delivery_date=estimated_delivery_date,
            ),
        )
        logger.info(
            "Shipment %s created for order %s (%s %s)",
            agg.shipment.shipment_id,
            order_id,
            agg.shipment.carrier,
            agg.shipment.tracking_number,
        )
        return agg.shipment

    async def mark_shipped(
        self,
        order_id: UUID,
        tracking_number: str | None = None,
        carrier: str | None = None,
        estimated_delivery_date: datetime | None = None,
    ) -> OrderAggregate:
        """PAID → SHIPPED"""
        shipment_id = uuid4().hex
        agg, _ = await self.repository.mutate(
            order_id,
            lambda agg: agg.ship(
                shipment_id,
                tracking_number,
                carrier,
                self.carriers,
                _now(),
                estimated_delivery_date=estimated_delivery_date,
            ),
        )
        logger.info("Order %s shipped (%s)", order_id, agg.tracking_number)
        return agg

    async def mark_delivered(self, order_id: UUID) -> OrderAggregate:
        """SHIPPED → DELIVERED。全明細の在庫を出庫する。"""
        agg, _ = await self.repository.mutate(order_id, lambda agg: agg.deliver(_now()))
        logger.info("Order %s delivered", order_id)
        await self._for_each_line(agg, self.ledger.commit, "commit")
        return agg

    async def cancel(self, order_id: UUID, reason: str = "") -> OrderAggregate:
        """
        PENDING / PAID → CANCELLED (補償トランザクション)

        出荷レコードが既にあれば CannotCancelShippedOrder で失敗し、
        在庫は解放しない。
        """
        agg, _ = await self.repository.mutate(
            order_id, lambda agg: agg.cancel(reason, _now())
        )
        logger.info("Order %s cancelled: %s", order_id, reason or "-")
        await self._for_each_line(agg, self.ledger.release, "release")
        return agg

    async def update_tracking(
        self,
        order_id: UUID,
        status: ShipmentStatus,
        location: str | None = None,
        description: str | None = None,
    ) -> OrderAggregate:
        """
        配送業者からの配送状況を記録する。

        shipped / delivered は注文の遷移として mark_shipped / mark_delivered に回す。
        """
        if status is ShipmentStatus.SHIPPED:
            return await self.mark_shipped(order_id)
        if status is ShipmentStatus.DELIVERED:
            return await self.mark_delivered(order_id)
        agg, _ = await self.repository.mutate(
            order_id,
            lambda agg: agg.update_tracking(
                status, _now(), location=location, description=description
            ),
        )
        logger.info("Shipment for order %s is %s", order_id, status.value)
        return agg

    async def generate_label(self, order_id: UUID) -> str:
        """配送業者にラベルを発行させ、label_url を出荷レコードに記録する。"""
        agg = await self.repository.get(order_id)
        shipment = agg.require_labelable()
        # 外部 API 呼び出しはロックの外で行う
        label_url = await self.carrier_client.create_label(shipment)
        await self.repository.mutate(
            order_id, lambda agg: agg.record_label(label_url, _now())
        )
        logger.info("Label generated for order %s: %s", order_id, label_url)
        return label_url

    async def _for_each_line(
        self,
        agg: OrderAggregate,
        operation: Callable[..., Awaitable[object]],
        name: str,
    ) -> None:
        """全商品に在庫操作を適用する。失敗した明細は照合用に発行して先へ進む。"""
        for product_id, quantity in agg.reservation_plan:
            try:
                await operation(product_id, quantity, order_id=agg.id)
            except OrderflowError as e:
                logger.exception(
                    "Inventory %s failed for %s on order %s", name, product_id, agg.id
                )
                await self.ledger.publisher.publish_inventory_event(
                    InventorySyncFailed(
                        order_id=agg.id,
                        product_id=product_id,
                        quantity=quantity,
                        operation=name,
                        error=e.message,
                        timestamp=_now(),
                    )
                )
