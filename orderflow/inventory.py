"""
orderflow — 在庫台帳 (InventoryLedger)

在庫数を変更できる唯一のコンポーネント。
引き当て(Reserve)・解放(Release)・出庫(Commit) を処理する。

Saga で重要: 複数行の引き当てが途中で失敗したとき、
OrderService が補償トランザクションとして release を呼ぶ。
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from .errors import InsufficientStock, InvalidStockLevel, ProductNotFound
from .events import (
    InventoryCommitted,
    InventoryCreated,
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    InventoryUpdated,
)
from .models import StockRecord
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


class InventoryLedger:
    def __init__(self, store, publisher: EventPublisher) -> None:
        self.store = store
        self.publisher = publisher

    # ── 引き当て / 解放 / 出庫 ───────────────────────

    async def reserve(
        self, product_id: str, quantity: int, order_id: UUID | None = None
    ) -> StockRecord:
        """
        在庫引き当てコマンド

        available >= quantity のときだけ reserved_quantity を増やす。
        不足なら InsufficientStock を送出する (待たずに即失敗)。
        """
        if quantity <= 0:
            raise InvalidStockLevel(
                "reservation quantity must be positive", product_id=product_id
            )
        reserved, record = await self.store.try_reserve(product_id, quantity)
        now = datetime.now(timezone.utc)
        if not reserved:
            logger.info(
                "Reservation rejected for %s: requested=%d available=%d",
                product_id,
                quantity,
                record.available,
            )
            await self.publisher.publish_inventory_event(
                InventoryReservationFailed(
                    product_id=product_id,
                    quantity_requested=quantity,
                    quantity_available=record.available,
                    order_id=order_id,
                    timestamp=now,
                )
            )
            raise InsufficientStock(product_id, quantity, record.available)

        logger.info("Reserved %d x %s (order=%s)", quantity, product_id, order_id)
        await self.publisher.publish_inventory_event(
            InventoryReserved(
                product_id=product_id, quantity=quantity, order_id=order_id, timestamp=now
            )
        )
        return record

    async def release(
        self, product_id: str, quantity: int, order_id: UUID | None = None
    ) -> StockRecord:
        """
        在庫解放コマンド（補償トランザクション）

        予約数を超える解放は呼び出し側のバグだが、状態は壊さずに 0 で止めて記録する。
        """
        record, released = await self.store.release(product_id, quantity)
        if released < quantity:
            logger.warning(
                "Release of %d x %s exceeded the reservation; clamped to %d (order=%s)",
                quantity,
                product_id,
                released,
                order_id,
            )
        logger.info("Released %d x %s (order=%s)", released, product_id, order_id)
        await self.publisher.publish_inventory_event(
            InventoryReleased(
                product_id=product_id,
                quantity=released,
                order_id=order_id,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return record

    async def commit(
        self, product_id: str, quantity: int, order_id: UUID | None = None
    ) -> StockRecord:
        """配達完了時の出庫。quantity と reserved_quantity を同じだけ減らす。"""
        record, from_reserved = await self.store.commit(product_id, quantity)
        if from_reserved < quantity:
            logger.warning(
                "Commit of %d x %s found only %d reserved (order=%s)",
                quantity,
                product_id,
                from_reserved,
                order_id,
            )
        logger.info("Committed %d x %s (order=%s)", quantity, product_id, order_id)
        await self.publisher.publish_inventory_event(
            InventoryCommitted(
                product_id=product_id,
                quantity=quantity,
                order_id=order_id,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return record

    # ── 参照 ─────────────────────────────────────────

    async def get(self, product_id: str) -> StockRecord:
        record = await self.store.get(product_id)
        if record is None:
            raise ProductNotFound(product_id)
        return record

    async def available(self, product_id: str) -> int:
        return (await self.get(product_id)).available

    async def low_stock(self, threshold: int) -> list[StockRecord]:
        return await self.store.low_stock(threshold)

    # ── 在庫レコードの管理 (出品者向け) ─────────────

    async def create_stock(
        self,
        product_id: str,
        quantity: int,
        location: str = "",
        sku: str | None = None,
    ) -> StockRecord:
        if quantity < 0:
            raise InvalidStockLevel("quantity must not be negative", product_id=product_id)
        now = datetime.now(timezone.utc)
        record = await self.store.create(
            StockRecord(
                product_id=product_id,
                quantity=quantity,
                reserved_quantity=0,
                location=location,
                sku=sku,
                last_restock_date=now,
                updated_at=now,
            )
        )
        await self.publisher.publish_inventory_event(
            InventoryCreated(
                product_id=product_id,
                quantity=quantity,
                location=location,
                sku=sku,
                timestamp=now,
            )
        )
        return record

    async def update_stock(
        self,
        product_id: str,
        *,
        quantity: int | None = None,
        location: str | None = None,
        sku: str | None = None,
    ) -> StockRecord:
        record = await self.store.update(
            product_id, quantity=quantity, location=location, sku=sku
        )
        await self.publisher.publish_inventory_event(
            InventoryUpdated(
                product_id=product_id,
                quantity=record.quantity,
                reserved_quantity=record.reserved_quantity,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return record
