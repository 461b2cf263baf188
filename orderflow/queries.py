"""
orderflow — クエリハンドラ (CQRS の Read 側)

一覧はリードモデルから、単一注文の詳細はイベントから再構築した集約から返す。
"""

import math
from datetime import datetime, timezone

from .errors import InvalidQuery
from .models import Shipment, StockRecord

SORT_FIELDS = ("created_at", "updated_at", "total", "status", "order_number")
SORT_ORDERS = ("asc", "desc")


def _isoformat(value: datetime | str | None) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def order_row(row: dict) -> dict:
    return {
        "id": row["id"],
        "order_number": row["order_number"],
        "buyer_id": row["buyer_id"],
        "seller_ids": row["seller_ids"],
        "status": row["status"],
        "total": float(row["total"]),
        "payment_status": bool(row["payment_status"]),
        "tracking_number": row["tracking_number"],
        "created_at": _isoformat(row["created_at"]),
        "updated_at": _isoformat(row["updated_at"]),
    }


async def list_orders(
    store,
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
) -> dict:
    """
    注文一覧をリードモデルから取得する (ページング付き)。

    既定は作成日時の新しい順。date_from / date_to は作成日時の範囲 (両端を含む)。
    """
    if sort not in SORT_FIELDS:
        raise InvalidQuery(f"Cannot sort by {sort!r}", sort=sort)
    if order not in SORT_ORDERS:
        raise InvalidQuery(f"Sort order must be asc or desc, got {order!r}", order=order)
    date_from, date_to = _as_utc(date_from), _as_utc(date_to)
    if date_from and date_to and date_from > date_to:
        raise InvalidQuery("date_from must not be after date_to")
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    rows, total = await store.list_orders(
        buyer_id=buyer_id,
        seller_id=seller_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        sort=sort,
        order=order,
        page=page,
        limit=limit,
    )
    return {
        "orders": [order_row(row) for row in rows],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    }


def _as_utc(value: datetime | None) -> datetime | None:
    # タイムゾーン無しの日時は UTC とみなす
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def tracking_view(shipment: Shipment) -> dict:
    return {
        "order_id": shipment.order_id,
        "carrier": shipment.carrier,
        "tracking_number": shipment.tracking_number,
        "status": shipment.status.value,
        "estimated_delivery_date": _isoformat(shipment.estimated_delivery_date),
        "events": [entry.model_dump(mode="json") for entry in shipment.tracking_history],
    }


def inventory_levels(record: StockRecord) -> dict:
    return {
        "product_id": record.product_id,
        "quantity": record.quantity,
        "reserved_quantity": record.reserved_quantity,
        "available": record.available,
    }
