"""
orderflow — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST/PUT) と Query (GET) のエンドポイントを分離。
注文の状態変更はすべてイベントとして記録する。

呼び出し元の識別は認証サービスが付与するヘッダで受け取る:
    X-Actor-Id   : 利用者 ID
    X-Actor-Role : buyer | seller | admin
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .auth import Actor, Role
from .config import Settings, setup_logging
from .errors import OrderflowError
from .event_store import SqlOrderStore
from .inventory_store import SqlStockStore
from .memory import MemoryOrderStore, MemoryStockStore
from .models import CartLine, CartSnapshot, Dimensions, PaymentMethod, ShipmentStatus
from .orchestrator import OrderService, build_service
from .publisher import EventPublisher
from .queries import inventory_levels
from .schema import init_models

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "service", None) is not None:
        yield
        return

    setup_logging(settings.log_level)
    redis_pool = (
        aioredis.from_url(settings.redis_url, decode_responses=True)
        if settings.redis_url
        else None
    )
    engine = None
    if settings.store_backend == "memory":
        order_store, stock_store = MemoryOrderStore(), MemoryStockStore()
    else:
        engine = create_async_engine(settings.database_url, echo=settings.sql_echo)
        await init_models(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        order_store = SqlOrderStore(async_session)
        stock_store = SqlStockStore(async_session)

    app.state.service = build_service(
        settings, order_store, stock_store, EventPublisher(redis_pool)
    )
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    if engine is not None:
        await engine.dispose()


# ── Dependencies ─────────────────────────────────


def get_service(request: Request) -> OrderService:
    return request.app.state.service


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: Role = Header(default=Role.BUYER),
) -> Actor:
    if not x_actor_id:
        raise HTTPException(401, "X-Actor-Id header is required")
    return Actor(actor_id=x_actor_id, role=x_actor_role)


# ── Request Models ───────────────────────────────


class CartLineRequest(BaseModel):
    product_id: str
    seller_id: str
    quantity: int
    unit_price: Decimal
    product_name: str = ""
    product_image: str = ""
    variant: dict[str, str] | None = None


class CreateOrderRequest(BaseModel):
    lines: list[CartLineRequest]
    shipping_address_id: str
    payment_method: PaymentMethod
    discount: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    coupon_code: str | None = None
    notes: str | None = Field(default=None, max_length=500)
    # admin が代理で注文する場合のみ指定する
    buyer_id: str | None = None


class CancelOrderRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class PayOrderRequest(BaseModel):
    transaction_id: str | None = None


class CreateShipmentRequest(BaseModel):
    carrier: str
    tracking_number: str
    weight_kg: float | None = None
    dimensions: Dimensions | None = None
    shipping_cost: Decimal = Decimal("0")
    estimated_delivery_date: datetime | None = None


class ShipOrderRequest(BaseModel):
    tracking_number: str | None = None
    carrier: str | None = None
    estimated_delivery_date: datetime | None = None


class TrackingUpdateRequest(BaseModel):
    status: ShipmentStatus
    location: str | None = None
    description: str | None = None


class PaymentWebhook(BaseModel):
    order_id: UUID
    success: bool
    transaction_id: str | None = None


class CreateInventoryRequest(BaseModel):
    product_id: str
    quantity: int
    location: str = ""
    sku: str | None = None


class UpdateInventoryRequest(BaseModel):
    quantity: int | None = None
    location: str | None = None
    sku: str | None = None


router = APIRouter()


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/commands/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """注文作成コマンド (在庫引き当て Saga)"""
    snapshot = CartSnapshot(
        buyer_id=req.buyer_id if actor.is_admin and req.buyer_id else actor.actor_id,
        lines=tuple(CartLine(**line.model_dump()) for line in req.lines),
        discount=req.discount,
        shipping=req.shipping,
        coupon_code=req.coupon_code,
        notes=req.notes,
    )
    agg = await service.create_order(
        actor, snapshot, req.shipping_address_id, req.payment_method
    )
    return {
        "order_id": str(agg.id),
        "order_number": agg.order_number,
        "status": agg.status.value,
        "total": float(agg.total),
        "version": agg.version,
    }


@router.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: UUID,
    req: CancelOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """注文キャンセルコマンド (引き当て在庫を解放)"""
    agg = await service.cancel_order(actor, order_id, req.reason)
    return {"order_id": str(agg.id), "status": agg.status.value}


@router.post("/commands/orders/{order_id}/pay")
async def cmd_pay_order(
    order_id: UUID,
    req: PayOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    agg = await service.pay_order(actor, order_id, req.transaction_id)
    return {
        "order_id": str(agg.id),
        "status": agg.status.value,
        "payment_status": agg.payment_status,
    }


@router.post("/commands/orders/{order_id}/shipments", status_code=201)
async def cmd_create_shipment(
    order_id: UUID,
    req: CreateShipmentRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """出荷レコード作成コマンド"""
    shipment = await service.create_shipment(
        actor,
        order_id,
        req.carrier,
        req.tracking_number,
        weight_kg=req.weight_kg,
        dimensions=req.dimensions,
        shipping_cost=req.shipping_cost,
        estimated_delivery_date=req.estimated_delivery_date,
    )
    return shipment.model_dump(mode="json")


@router.post("/commands/orders/{order_id}/ship")
async def cmd_ship_order(
    order_id: UUID,
    req: ShipOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """発送コマンド (PAID → SHIPPED)"""
    agg = await service.ship_order(
        actor, order_id, req.tracking_number, req.carrier, req.estimated_delivery_date
    )
    return {
        "order_id": str(agg.id),
        "status": agg.status.value,
        "tracking_number": agg.tracking_number,
    }


@router.post("/commands/orders/{order_id}/deliver")
async def cmd_deliver_order(
    order_id: UUID,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """配達完了コマンド (在庫を出庫)"""
    agg = await service.deliver_order(actor, order_id)
    return {
        "order_id": str(agg.id),
        "status": agg.status.value,
        "delivered_at": agg.delivered_at.isoformat(),
    }


@router.post("/commands/orders/{order_id}/tracking")
async def cmd_update_tracking(
    order_id: UUID,
    req: TrackingUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """配送状況の更新 (shipped / delivered は注文の遷移として扱う)"""
    agg = await service.update_tracking(
        actor, order_id, req.status, req.location, req.description
    )
    return {
        "order_id": str(agg.id),
        "status": agg.status.value,
        "shipment_status": agg.shipment.status.value,
    }


@router.post("/commands/orders/{order_id}/label")
async def cmd_generate_label(
    order_id: UUID,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    label_url = await service.generate_label(actor, order_id)
    return {"order_id": str(order_id), "label_url": label_url}


@router.post("/webhooks/payments")
async def payment_webhook(
    req: PaymentWebhook,
    service: OrderService = Depends(get_service),
):
    """決済ゲートウェイからの通知 (リトライされても冪等)"""
    agg = await service.handle_payment_callback(
        req.order_id, req.success, req.transaction_id
    )
    return {
        "order_id": str(agg.id),
        "status": agg.status.value,
        "payment_status": agg.payment_status,
    }


@router.post("/commands/inventory", status_code=201)
async def cmd_create_inventory(
    req: CreateInventoryRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    record = await service.create_stock(
        actor, req.product_id, req.quantity, req.location, req.sku
    )
    return record.to_dict()


@router.put("/commands/inventory/{product_id}")
async def cmd_update_inventory(
    product_id: str,
    req: UpdateInventoryRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    record = await service.update_stock(
        actor, product_id, quantity=req.quantity, location=req.location, sku=req.sku
    )
    return record.to_dict()


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/queries/orders")
async def query_list_orders(
    scope: str = "buyer",
    status: str | None = None,
    buyer_id: str | None = None,
    seller_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    sort: str = "created_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    """注文一覧 (購入者 / 出品者 / admin で範囲が変わる)"""
    return await service.list_orders(
        actor,
        scope=scope,
        status=status,
        buyer_id=buyer_id,
        seller_id=seller_id,
        date_from=date_from,
        date_to=date_to,
        sort=sort,
        order=order,
        page=page,
        limit=limit,
    )


@router.get("/queries/orders/{order_id}")
async def query_get_order(
    order_id: UUID,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    agg = await service.get_order(actor, order_id)
    return agg.to_dict()


@router.get("/queries/shipments/track/{tracking_number}")
async def query_track_shipment(
    tracking_number: str,
    service: OrderService = Depends(get_service),
):
    return await service.track_shipment(tracking_number)


@router.get("/queries/inventory/alerts/low-stock")
async def query_low_stock(
    threshold: int | None = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    records = await service.low_stock(
        actor, threshold if threshold is not None else settings.low_stock_threshold
    )
    return [record.to_dict() for record in records]


@router.get("/queries/inventory/{product_id}")
async def query_get_inventory(
    product_id: str,
    service: OrderService = Depends(get_service),
):
    record = await service.get_inventory(product_id)
    return inventory_levels(record)


# ── Event Store (デバッグ用) ─────────────────────


@router.get("/events")
async def get_all_events(service: OrderService = Depends(get_service)):
    """イベントストアの全イベントを返す"""
    return await service.repository.all_events()


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(
    aggregate_id: UUID,
    service: OrderService = Depends(get_service),
):
    """指定集約のイベントを返す"""
    return await service.repository.events_for(aggregate_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "orderflow"}


async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(service: OrderService | None = None) -> FastAPI:
    app = FastAPI(title="Orderflow Service", lifespan=lifespan)
    if service is not None:
        app.state.service = service
    app.add_exception_handler(OrderflowError, orderflow_error_handler)
    app.include_router(router)
    return app


app = create_app()
