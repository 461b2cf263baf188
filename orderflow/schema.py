"""
orderflow — テーブル定義

event_store         : 注文イベント (aggregate_id + version がユニーク = 楽観的ロック)
orders_read_model   : 注文一覧用のリードモデル
order_sellers       : 注文と出品者の対応 (出品者別一覧用)
inventory           : 商品ごとの在庫数と引き当て数
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False, index=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)

orders_read_model = Table(
    "orders_read_model",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(40), nullable=False),
    Column("buyer_id", String(64), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("total", Numeric(12, 2), nullable=False),
    Column("payment_status", Boolean, nullable=False, default=False),
    Column("tracking_number", String(100), index=True),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_sellers = Table(
    "order_sellers",
    metadata,
    Column("order_id", String(36), primary_key=True),
    Column("seller_id", String(64), primary_key=True, index=True),
)

inventory = Table(
    "inventory",
    metadata,
    Column("product_id", String(64), primary_key=True),
    Column("quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("location", Text, nullable=False, default=""),
    Column("sku", String(64)),
    Column("last_restock_date", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint(
        "reserved_quantity >= 0 AND reserved_quantity <= quantity",
        name="ck_inventory_reserved_within_quantity",
    ),
)


async def init_models(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
