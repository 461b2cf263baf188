"""
orderflow — 設定

各サービスと同じく環境変数から設定を読み込む。
テストでは Settings を直接組み立てて差し替える。
"""

import logging
import os
from decimal import Decimal

from pydantic import BaseModel, Field

DEFAULT_CARRIERS = "ups,fedex,usps,dhl"


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./orderflow.db"
    redis_url: str = "redis://localhost:6379"
    # "sql" | "memory"
    store_backend: str = "sql"
    tax_rate: Decimal = Decimal("0")
    carriers: frozenset[str] = Field(
        default_factory=lambda: frozenset(DEFAULT_CARRIERS.split(","))
    )
    carrier_api_url: str = ""
    label_base_url: str = "https://labels.orderflow.local/shipping-labels"
    low_stock_threshold: int = 5
    max_conflict_retries: int = 3
    log_level: str = "INFO"
    sql_echo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        carriers = os.environ.get("CARRIERS", DEFAULT_CARRIERS)
        return cls(
            database_url=os.environ.get(
                "DATABASE_URL", "sqlite+aiosqlite:///./orderflow.db"
            ),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            store_backend=os.environ.get("STORE_BACKEND", "sql"),
            tax_rate=Decimal(os.environ.get("TAX_RATE", "0")),
            carriers=frozenset(
                c.strip().lower() for c in carriers.split(",") if c.strip()
            ),
            carrier_api_url=os.environ.get("CARRIER_API_URL", ""),
            label_base_url=os.environ.get(
                "LABEL_BASE_URL", "https://labels.orderflow.local/shipping-labels"
            ),
            low_stock_threshold=int(os.environ.get("LOW_STOCK_THRESHOLD", "5")),
            max_conflict_retries=int(os.environ.get("MAX_CONFLICT_RETRIES", "3")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            sql_echo=os.environ.get("SQL_ECHO", "").lower() in ("1", "true", "yes"),
        )


def setup_logging(level: str = "INFO") -> None:
    """ルートロガーを設定する。起動時に一度だけ呼ぶ。"""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
