"""
orderflow — インメモリストア

STORE_BACKEND=memory で使う、プロセス内のストア。
RDB 版と同じインターフェースを持ち、排他はキー (注文 ID / 商品 ID) ごとの
asyncio.Lock で行う。異なる商品の引き当て同士は互いを待たない。
"""

import asyncio
from datetime import datetime, timezone
from uuid import UUID

from .errors import ConcurrencyConflict, InventoryAlreadyExists, ProductNotFound
from .events import Event
from .models import StockRecord


class KeyedLocks:
    """キーごとに 1 つの asyncio.Lock を払い出す"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


class MemoryOrderStore:
    def __init__(self) -> None:
        self._events: dict[str, list[dict]] = {}
        self._read_model: dict[str, dict] = {}
        self._locks = KeyedLocks()

    async def append(
        self,
        order_id: UUID,
        events: list[Event],
        expected_version: int,
        summary: dict,
    ) -> int:
        key = str(order_id)
        async with self._locks(key):
            stream = self._events.setdefault(key, [])
            current = stream[-1]["version"] if stream else 0
            if current != expected_version:
                raise ConcurrencyConflict(order_id, expected_version)
            now = datetime.now(timezone.utc)
            version = current
            for event in events:
                version += 1
                stream.append(
                    {
                        "aggregate_id": key,
                        "aggregate_type": "Order",
                        "event_type": event.event_type,
                        "event_data": event.to_data(),
                        "version": version,
                        "created_at": now,
                    }
                )
            self._read_model[key] = {**summary, "version": version}
        return version

    async def load_events(self, order_id: UUID) -> list[dict]:
        return [
            {
                "event_type": e["event_type"],
                "event_data": e["event_data"],
                "version": e["version"],
                "created_at": e["created_at"],
            }
            for e in self._events.get(str(order_id), [])
        ]

    async def load_all_events(self) -> list[dict]:
        events = [e for stream in self._events.values() for e in stream]
        events.sort(key=lambda e: (e["created_at"], e["version"]))
        return [{**e, "created_at": e["created_at"].isoformat()} for e in events]

    async def list_orders(
        self,
        *,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        status: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        sort: str = "created_at",
        order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[dict], int]:
        rows = [
            row
            for row in self._read_model.values()
            if (not buyer_id or row["buyer_id"] == buyer_id)
            and (not seller_id or seller_id in row["seller_ids"])
            and (not status or row["status"] == status)
            and (not date_from or row["created_at"] >= date_from)
            and (not date_to or row["created_at"] <= date_to)
        ]
        rows.sort(key=lambda row: row["id"])
        rows.sort(key=lambda row: row[sort], reverse=order == "desc")
        offset = (page - 1) * limit
        return [dict(row) for row in rows[offset:offset + limit]], len(rows)

    async def find_order_by_tracking_number(self, tracking_number: str) -> str | None:
        for row in self._read_model.values():
            if row["tracking_number"] == tracking_number:
                return row["id"]
        return None


class MemoryStockStore:
    def __init__(self) -> None:
        self._records: dict[str, StockRecord] = {}
        self._locks = KeyedLocks()

    async def create(self, record: StockRecord) -> StockRecord:
        async with self._locks(record.product_id):
            if record.product_id in self._records:
                raise InventoryAlreadyExists(record.product_id)
            self._records[record.product_id] = record
        return record

    async def get(self, product_id: str) -> StockRecord | None:
        return self._records.get(product_id)

    async def try_reserve(self, product_id: str, quantity: int) -> tuple[bool, StockRecord]:
        async with self._locks(product_id):
            record = self._require(product_id)
            if record.available < quantity:
                return False, record
            record = self._store(
                record, {"reserved_quantity": record.reserved_quantity + quantity}
            )
        return True, record

    async def release(self, product_id: str, quantity: int) -> tuple[StockRecord, int]:
        async with self._locks(product_id):
            record = self._require(product_id)
            values, released = record.plan_release(quantity)
            return self._store(record, values), released

    async def commit(self, product_id: str, quantity: int) -> tuple[StockRecord, int]:
        async with self._locks(product_id):
            record = self._require(product_id)
            values, from_reserved = record.plan_commit(quantity)
            return self._store(record, values), from_reserved

    async def update(
        self,
        product_id: str,
        *,
        quantity: int | None = None,
        location: str | None = None,
        sku: str | None = None,
    ) -> StockRecord:
        async with self._locks(product_id):
            record = self._require(product_id)
            values = record.plan_update(
                datetime.now(timezone.utc), quantity=quantity, location=location, sku=sku
            )
            return self._store(record, values)

    async def low_stock(self, threshold: int) -> list[StockRecord]:
        records = [r for r in self._records.values() if r.quantity <= threshold]
        return sorted(records, key=lambda r: r.quantity)

    def _require(self, product_id: str) -> StockRecord:
        record = self._records.get(product_id)
        if record is None:
            raise ProductNotFound(product_id)
        return record

    def _store(self, record: StockRecord, values: dict) -> StockRecord:
        record = record.model_copy(
            update={**values, "updated_at": datetime.now(timezone.utc)}
        )
        self._records[record.product_id] = record
        return record
