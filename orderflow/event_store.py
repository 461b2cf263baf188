"""
orderflow — イベントストア

Event Sourcing の中核コンポーネント。
注文イベントを RDB に追記し、集約の再構築に使う。
バージョン番号による楽観的ロックで同時書き込みを防ぐ。

書き込み側 (イベント追記) と同じトランザクションでリードモデルも更新する。
"""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import ConcurrencyConflict
from .events import Event
from .schema import event_store, order_sellers, orders_read_model


async def append_events(
    session: AsyncSession,
    aggregate_id: UUID,
    aggregate_type: str,
    events: list[Event],
    expected_version: int,
) -> int:
    """
    イベントをストアに追記する。

    expected_version で楽観的ロックを実現:
    同じ aggregate_id + version の組み合わせが既に存在すると
    UNIQUE 制約違反で失敗する → 競合を検知できる。
    """
    version = expected_version
    now = datetime.now(timezone.utc)
    for event in events:
        version += 1
        await session.execute(
            insert(event_store).values(
                aggregate_id=str(aggregate_id),
                aggregate_type=aggregate_type,
                event_type=event.event_type,
                event_data=event.to_data(),
                version=version,
                created_at=now,
            )
        )
    return version


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """
    指定した集約の全イベントをバージョン順に読み出す。
    集約を再構築（リプレイ）するために使う。
    """
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == str(aggregate_id))
        .order_by(event_store.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]


async def load_all_events(session: AsyncSession) -> list[dict]:
    """すべてのイベントを時系列順に返す（デバッグ用）。"""
    result = await session.execute(
        select(event_store).order_by(
            event_store.c.created_at.asc(), event_store.c.version.asc()
        )
    )
    return [
        {
            "aggregate_id": row.aggregate_id,
            "aggregate_type": row.aggregate_type,
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]


class SqlOrderStore:
    """注文イベントとリードモデルを RDB に保存するストア"""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        order_id: UUID,
        events: list[Event],
        expected_version: int,
        summary: dict,
    ) -> int:
        async with self._session_factory() as session:
            try:
                version = await append_events(
                    session, order_id, "Order", events, expected_version
                )
                if expected_version == 0:
                    await session.execute(
                        insert(orders_read_model).values(
                            **_read_model_values(summary), version=version
                        )
                    )
                    for seller_id in summary["seller_ids"]:
                        await session.execute(
                            insert(order_sellers).values(
                                order_id=summary["id"], seller_id=seller_id
                            )
                        )
                else:
                    await session.execute(
                        update(orders_read_model)
                        .where(orders_read_model.c.id == str(order_id))
                        .values(**_read_model_values(summary), version=version)
                    )
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConcurrencyConflict(order_id, expected_version) from exc
        return version

    async def load_events(self, order_id: UUID) -> list[dict]:
        async with self._session_factory() as session:
            return await load_events(session, order_id)

    async def load_all_events(self) -> list[dict]:
        async with self._session_factory() as session:
            return await load_all_events(session)

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
        query = select(orders_read_model)
        if seller_id:
            query = query.join(
                order_sellers, order_sellers.c.order_id == orders_read_model.c.id
            ).where(order_sellers.c.seller_id == seller_id)
        if buyer_id:
            query = query.where(orders_read_model.c.buyer_id == buyer_id)
        if status:
            query = query.where(orders_read_model.c.status == status)
        if date_from:
            query = query.where(orders_read_model.c.created_at >= date_from)
        if date_to:
            query = query.where(orders_read_model.c.created_at <= date_to)
        column = orders_read_model.c[sort]
        ordering = column.asc() if order == "asc" else column.desc()

        async with self._session_factory() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(query.subquery())
                )
            ).scalar_one()
            result = await session.execute(
                query.order_by(ordering, orders_read_model.c.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = [dict(row._mapping) for row in result.fetchall()]

            sellers: dict[str, list[str]] = {}
            if rows:
                seller_rows = await session.execute(
                    select(order_sellers).where(
                        order_sellers.c.order_id.in_([row["id"] for row in rows])
                    )
                )
                for row in seller_rows.fetchall():
                    sellers.setdefault(row.order_id, []).append(row.seller_id)

        for row in rows:
            row["seller_ids"] = sorted(sellers.get(row["id"], []))
        return rows, total

    async def find_order_by_tracking_number(self, tracking_number: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(orders_read_model.c.id).where(
                    orders_read_model.c.tracking_number == tracking_number
                )
            )
            return result.scalars().first()


def _read_model_values(summary: dict) -> dict:
    return {
        "id": summary["id"],
        "order_number": summary["order_number"],
        "buyer_id": summary["buyer_id"],
        "status": summary["status"],
        "total": summary["total"],
        "payment_status": summary["payment_status"],
        "tracking_number": summary["tracking_number"],
        "created_at": summary["created_at"],
        "updated_at": summary["updated_at"],
    }
