"""
orderflow — 注文リポジトリ

イベントストアから集約を読み出し(リプレイ)、コマンドが生成したイベントを
expected_version 付きで保存する。保存後に Redis へ発行する。

同じ注文に対する同時更新は ConcurrencyConflict になる。
mutate() は集約を読み直してコマンドをやり直すので、競合に負けた側は
新しい状態に対してガードを再評価し、InvalidTransition で失敗する
(冪等なコマンドならそのまま何もしないで成功する)。
"""

import logging
from collections.abc import Callable
from uuid import UUID

from .aggregate import OrderAggregate
from .errors import ConcurrencyConflict, OrderNotFound
from .events import Event
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


class OrderRepository:
    def __init__(self, store, publisher: EventPublisher, max_retries: int = 3) -> None:
        self.store = store
        self.publisher = publisher
        self.max_retries = max_retries

    async def get(self, order_id: UUID) -> OrderAggregate:
        events = await self.store.load_events(order_id)
        if not events:
            raise OrderNotFound(order_id)
        return OrderAggregate.from_events(events)

    async def save(self, agg: OrderAggregate) -> list[Event]:
        events = agg.pending_events
        if not events:
            return []
        agg.version = await self.store.append(agg.id, events, agg.version, agg.summary())
        agg.pending_events = []
        await self.publisher.publish_order_events(events)
        return events

    async def mutate(
        self,
        order_id: UUID,
        command: Callable[[OrderAggregate], object],
    ) -> tuple[OrderAggregate, list[Event]]:
        """command(agg) を実行して保存する。競合したら読み直してやり直す。"""
        attempt = 0
        while True:
            attempt += 1
            agg = await self.get(order_id)
            command(agg)
            try:
                return agg, await self.save(agg)
            except ConcurrencyConflict:
                if attempt >= self.max_retries:
                    raise
                logger.info(
                    "Order %s changed concurrently, retrying (attempt %d)",
                    order_id,
                    attempt,
                )

    async def all_events(self) -> list[dict]:
        return await self.store.load_all_events()

    async def events_for(self, aggregate_id: UUID) -> list[dict]:
        return await self.store.load_events(aggregate_id)
