"""
orderflow — Redis Pub/Sub パブリッシャー

状態変更をコミットした後、イベントを Redis に発行して他サービスへ通知する。

注意: Redis Pub/Sub は fire-and-forget 方式。
発行に失敗しても状態変更は既に確定しているので、ログに残して処理を続ける。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import Event

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
INVENTORY_CHANNEL = "inventory_events"
SAGA_CHANNEL = "saga_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis | None) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: Event) -> None:
        if self.redis is None:
            logger.debug("Redis disabled, dropping %s", event.event_type)
            return
        payload = json.dumps(
            {"event_type": event.event_type, "data": event.to_data()},
            default=str,
        )
        try:
            await self.redis.publish(channel, payload)
        except RedisError:
            logger.exception("Failed to publish %s to %s", event.event_type, channel)

    async def publish_order_events(self, events: list[Event]) -> None:
        for event in events:
            await self.publish(ORDER_CHANNEL, event)

    async def publish_inventory_event(self, event: Event) -> None:
        await self.publish(INVENTORY_CHANNEL, event)
