"""
orderflow — 決済コーディネーター (PaymentCoordinator)

決済ゲートウェイからの確定通知を注文の状態に反映する。
ゲートウェイは webhook をリトライするので、同じ通知が何度届いても
PAID のまま副作用なしで成功させる (冪等)。
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from .aggregate import OrderAggregate
from .events import PaymentFailed
from .publisher import ORDER_CHANNEL
from .repository import OrderRepository

logger = logging.getLogger(__name__)


class PaymentCoordinator:
    def __init__(self, repository: OrderRepository) -> None:
        self.repository = repository

    async def confirm_payment(
        self, order_id: UUID, transaction_id: str | None = None
    ) -> OrderAggregate:
        """PENDING → PAID。既に支払い済みなら何もしない。"""
        agg, events = await self.repository.mutate(
            order_id,
            lambda agg: agg.confirm_payment(transaction_id, datetime.now(timezone.utc)),
        )
        if events:
            logger.info("Payment confirmed for order %s (txn=%s)", order_id, transaction_id)
        else:
            logger.info(
                "Duplicate payment confirmation for order %s ignored (status=%s)",
                order_id,
                agg.status.value,
            )
        return agg

    async def handle_gateway_callback(
        self,
        order_id: UUID,
        success: bool,
        transaction_id: str | None = None,
    ) -> OrderAggregate:
        """決済ゲートウェイの webhook。失敗通知は記録するだけで状態は変えない。"""
        if success:
            return await self.confirm_payment(order_id, transaction_id)

        agg = await self.repository.get(order_id)
        logger.warning(
            "Payment gateway reported failure for order %s (txn=%s)",
            order_id,
            transaction_id,
        )
        await self.repository.publisher.publish(
            ORDER_CHANNEL,
            PaymentFailed(
                order_id=order_id,
                transaction_id=transaction_id,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        return agg
