"""
orderflow — 在庫ストア (RDB)

引き当ては条件付き UPDATE 1 文で行う:

    UPDATE inventory
    SET reserved_quantity = reserved_quantity + :qty
    WHERE product_id = :id AND quantity - reserved_quantity >= :qty

更新件数が 0 なら在庫不足。判定と更新が 1 文なので、
同じ商品を同時に引き当てても売り越しは起きない。

解放・出庫は SELECT ... FOR UPDATE で行ロックを取り、
読んだ値を条件にした UPDATE (compare-and-swap) で書き戻す。
ロックは商品単位で、グローバルなロックは使わない。
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import (
    ConcurrencyConflict,
    InventoryAlreadyExists,
    ProductNotFound,
)
from .models import StockRecord
from .schema import inventory

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 5


async def _fetch(
    session: AsyncSession, product_id: str, for_update: bool = False
) -> StockRecord | None:
    query = select(inventory).where(inventory.c.product_id == product_id)
    if for_update:
        query = query.with_for_update()
    row = (await session.execute(query)).fetchone()
    if not row:
        return None
    return StockRecord(**row._mapping)


class SqlStockStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def create(self, record: StockRecord) -> StockRecord:
        async with self._session_factory() as session:
            try:
                await session.execute(insert(inventory).values(**record.model_dump()))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InventoryAlreadyExists(record.product_id) from exc
        return record

    async def get(self, product_id: str) -> StockRecord | None:
        async with self._session_factory() as session:
            return await _fetch(session, product_id)

    async def try_reserve(self, product_id: str, quantity: int) -> tuple[bool, StockRecord]:
        """引き当てを試みる。(成功したか, 処理後のレコード) を返す。"""
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                update(inventory)
                .where(
                    inventory.c.product_id == product_id,
                    inventory.c.quantity - inventory.c.reserved_quantity >= quantity,
                )
                .values(
                    reserved_quantity=inventory.c.reserved_quantity + quantity,
                    updated_at=now,
                )
            )
            reserved = result.rowcount == 1
            record = await _fetch(session, product_id)
            await session.commit()
        if record is None:
            raise ProductNotFound(product_id)
        return reserved, record

    async def release(self, product_id: str, quantity: int) -> tuple[StockRecord, int]:
        """引き当てを解放する。(処理後のレコード, 実際に解放した数) を返す。"""
        return await self._compare_and_swap(
            product_id, lambda record: record.plan_release(quantity)
        )

    async def commit(self, product_id: str, quantity: int) -> tuple[StockRecord, int]:
        """
        出庫する。(処理後のレコード, 引き当てから差し引いた数) を返す。
        """
        return await self._compare_and_swap(
            product_id, lambda record: record.plan_commit(quantity)
        )

    async def update(
        self,
        product_id: str,
        *,
        quantity: int | None = None,
        location: str | None = None,
        sku: str | None = None,
    ) -> StockRecord:
        now = datetime.now(timezone.utc)
        record, _ = await self._compare_and_swap(
            product_id,
            lambda record: (
                record.plan_update(now, quantity=quantity, location=location, sku=sku),
                None,
            ),
        )
        return record

    async def low_stock(self, threshold: int) -> list[StockRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(inventory)
                .where(inventory.c.quantity <= threshold)
                .order_by(inventory.c.quantity.asc())
            )
            return [StockRecord(**row._mapping) for row in result.fetchall()]

    async def _compare_and_swap(
        self,
        product_id: str,
        change: Callable[[StockRecord], tuple[dict, object]],
    ) -> tuple[StockRecord, object]:
        for attempt in range(1, CAS_ATTEMPTS + 1):
            async with self._session_factory() as session:
                record = await _fetch(session, product_id, for_update=True)
                if record is None:
                    raise ProductNotFound(product_id)
                values, outcome = change(record)
                values["updated_at"] = datetime.now(timezone.utc)
                result = await session.execute(
                    update(inventory)
                    .where(
                        inventory.c.product_id == product_id,
                        inventory.c.quantity == record.quantity,
                        inventory.c.reserved_quantity == record.reserved_quantity,
                    )
                    .values(**values)
                )
                if result.rowcount == 1:
                    await session.commit()
                    return record.model_copy(update=values), outcome
                await session.rollback()
            logger.debug(
                "Stock row %s changed underneath us, retrying (attempt %d)",
                product_id,
                attempt,
            )
        raise ConcurrencyConflict(product_id, CAS_ATTEMPTS)
