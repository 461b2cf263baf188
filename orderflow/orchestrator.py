"""
orderflow — 注文サービス (OrderService)

Saga パターン（オーケストレーション型）:
  OrderService が在庫台帳・決済・フルフィルメントへの呼び出しを制御する。
  失敗時は補償トランザクション(Compensating Transaction)を実行して
  整合性を保つ。

  注文作成フロー:
  ┌──────────────────────────────────────────────────────────┐
  │  1. カートのスナップショットを検証                         │
  │  2. 商品ごとに在庫を引き当て (product_id 昇順)             │
  │     └─ 失敗 → 引き当て済みの在庫をすべて解放              │
  │              (補償トランザクション) → InsufficientStock    │
  │  3. 金額を確定して注文を PENDING で保存                    │
  │     └─ 失敗 → 引き当て済みの在庫をすべて解放              │
  └──────────────────────────────────────────────────────────┘

  その後の遷移 (支払い・出荷・配達・キャンセル) は認可チェックの後、
  PaymentCoordinator / FulfillmentCoordinator に委譲する。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from . import queries
from .aggregate import OrderAggregate
from .auth import Action, Actor, Authorizer, RoleBasedAuthorizer
from .carriers import CarrierClient
from .config import Settings
from .errors import Forbidden, InvalidCart, OrderflowError, TrackingNumberNotFound
from .events import SagaCompensated, SagaCompleted, SagaEvent
from .fulfillment import FulfillmentCoordinator
from .inventory import InventoryLedger
from .models import (
    CartSnapshot,
    Dimensions,
    PaymentMethod,
    Shipment,
    ShipmentStatus,
    StepLog,
    StockRecord,
)
from .payments import PaymentCoordinator
from .publisher import SAGA_CHANNEL, EventPublisher
from .repository import OrderRepository

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def validate_snapshot(snapshot: CartSnapshot) -> None:
    if not snapshot.lines:
        raise InvalidCart("Cart snapshot has no lines")
    for line in snapshot.lines:
        if line.quantity <= 0:
            raise InvalidCart(
                f"Quantity for {line.product_id} must be positive",
                product_id=line.product_id,
                quantity=line.quantity,
            )
        if line.unit_price < 0:
            raise InvalidCart(
                f"Unit price for {line.product_id} must not be negative",
                product_id=line.product_id,
            )
    if snapshot.discount < 0 or snapshot.shipping < 0:
        raise InvalidCart("Discount and shipping must not be negative")


class OrderService:
    def __init__(
        self,
        repository: OrderRepository,
        ledger: InventoryLedger,
        payments: PaymentCoordinator,
        fulfillment: FulfillmentCoordinator,
        authorizer: Authorizer,
        tax_rate: Decimal = Decimal("0"),
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.payments = payments
        self.fulfillment = fulfillment
        self.authorizer = authorizer
        self.tax_rate = tax_rate

    # ── 注文作成 Saga ─────────────────────────────────

    async def create_order(
        self,
        actor: Actor,
        snapshot: CartSnapshot,
        shipping_address_id: str,
        payment_method: PaymentMethod | str,
    ) -> OrderAggregate:
        """
        注文作成 Saga を実行する。

        引き当ては全商品成功か全商品なしのどちらか。
        途中で失敗したら、このリクエストで引き当てた分を同期的に解放してから
        エラーを返す。
        """
        if not self.authorizer.can(actor, Action.CREATE, None) or (
            not actor.is_admin and actor.actor_id != snapshot.buyer_id
        ):
            raise Forbidden(actor.actor_id, Action.CREATE.value)
        validate_snapshot(snapshot)

        order_id = uuid4()
        agg = OrderAggregate.create(
            order_id,
            snapshot,
            shipping_address_id,
            PaymentMethod(payment_method),
            self.tax_rate,
            _now(),
        )

        saga_log: list[StepLog] = []
        reserved: list[tuple[str, int]] = []
        try:
            # ── Step 1..n: 在庫を引き当て ────────────────
            for product_id, quantity in agg.reservation_plan:
                entry = self._log_step(
                    saga_log, "ReserveInventory", product_id=product_id, quantity=quantity
                )
                await self.ledger.reserve(product_id, quantity, order_id=order_id)
                entry.status = "COMPLETED"
                reserved.append((product_id, quantity))

            # ── Step n+1: 注文を保存 ────────────────────
            entry = self._log_step(saga_log, "CreateOrder")
            await self.repository.save(agg)
            entry.status = "COMPLETED"
        except Exception as e:
            saga_log[-1].status = "FAILED"
            saga_log[-1].error = str(e)
            await self._compensate(order_id, reserved, saga_log)
            logger.warning("Order saga %s compensated: %s", order_id, e)
            await self._publish_saga_event(SagaCompensated, order_id, saga_log)
            raise

        logger.info(
            "Order %s created for buyer %s (%d products, total=%s)",
            order_id,
            snapshot.buyer_id,
            len(reserved),
            agg.total,
        )
        await self._publish_saga_event(SagaCompleted, order_id, saga_log)
        return agg

    async def _compensate(
        self,
        order_id: UUID,
        reserved: list[tuple[str, int]],
        saga_log: list[StepLog],
    ) -> None:
        """引き当て済みの在庫を逆順に解放する。"""
        for product_id, quantity in reversed(reserved):
            entry = self._log_step(
                saga_log,
                "ReleaseInventory (COMPENSATING)",
                product_id=product_id,
                quantity=quantity,
            )
            try:
                await self.ledger.release(product_id, quantity, order_id=order_id)
                entry.status = "COMPLETED"
            except OrderflowError as e:
                entry.status = "FAILED"
                entry.error = str(e)
                logger.exception(
                    "Compensation failed for %s on order %s", product_id, order_id
                )

    @staticmethod
    def _log_step(saga_log: list[StepLog], action: str, **detail) -> StepLog:
        entry = StepLog(
            step=len(saga_log) + 1, action=action, timestamp=_now(), detail=detail
        )
        saga_log.append(entry)
        return entry

    async def _publish_saga_event(
        self,
        event_cls: type[SagaEvent],
        order_id: UUID,
        saga_log: list[StepLog],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        await self.repository.publisher.publish(
            SAGA_CHANNEL,
            event_cls(order_id=order_id, saga_log=saga_log, timestamp=_now()),
        )

    # ── 遷移 (認可チェック + 委譲) ───────────────────

    async def _authorize(
        self, actor: Actor, action: Action, order_id: UUID
    ) -> OrderAggregate:
        agg = await self.repository.get(order_id)
        if not self.authorizer.can(actor, action, agg):
            raise Forbidden(actor.actor_id, action.value)
        return agg

    async def cancel_order(
        self, actor: Actor, order_id: UUID, reason: str = ""
    ) -> OrderAggregate:
        await self._authorize(actor, Action.CANCEL, order_id)
        return await self.fulfillment.cancel(order_id, reason)

    async def pay_order(
        self, actor: Actor, order_id: UUID, transaction_id: str | None = None
    ) -> OrderAggregate:
        await self._authorize(actor, Action.PAY, order_id)
        return await self.payments.confirm_payment(order_id, transaction_id)

    async def confirm_payment(
        self, order_id: UUID, transaction_id: str | None = None
    ) -> OrderAggregate:
        """決済ゲートウェイから呼ばれる (利用者の認可は不要)。"""
        return await self.payments.confirm_payment(order_id, transaction_id)

    async def handle_payment_callback(
        self, order_id: UUID, success: bool, transaction_id: str | None = None
    ) -> OrderAggregate:
        return await self.payments.handle_gateway_callback(
            order_id, success, transaction_id
        )

    async def create_shipment(
        self,
        actor: Actor,
        order_id: UUID,
        carrier: str,
        tracking_number: str,
        weight_kg: float | None = None,
        dimensions: Dimensions | None = None,
        shipping_cost: Decimal = Decimal("0"),
        estimated_delivery_date: datetime | None = None,
    ) -> Shipment:
        await self._authorize(actor, Action.CREATE_SHIPMENT, order_id)
        return await self.fulfillment.create_shipment(
            order_id,
            carrier,
            tracking_number,
            weight_kg=weight_kg,
            dimensions=dimensions,
            shipping_cost=shipping_cost,
            estimated_delivery_date=estimated_delivery_date,
        )

    async def ship_order(
        self,
        actor: Actor,
        order_id: UUID,
        tracking_number: str | None,
        carrier: str | None,
        estimated_delivery_date: datetime | None = None,
    ) -> OrderAggregate:
        await self._authorize(actor, Action.SHIP, order_id)
        return await self.fulfillment.mark_shipped(
            order_id, tracking_number, carrier, estimated_delivery_date
        )

    async def deliver_order(self, actor: Actor, order_id: UUID) -> OrderAggregate:
        await self._authorize(actor, Action.DELIVER, order_id)
        return await self.fulfillment.mark_delivered(order_id)

    async def update_tracking(
        self,
        actor: Actor,
        order_id: UUID,
        status: ShipmentStatus | str,
        location: str | None = None,
        description: str | None = None,
    ) -> OrderAggregate:
        await self._authorize(actor, Action.UPDATE_TRACKING, order_id)
        return await self.fulfillment.update_tracking(
            order_id, ShipmentStatus(status), location, description
        )

    async def generate_label(self, actor: Actor, order_id: UUID) -> str:
        await self._authorize(actor, Action.LABEL, order_id)
        return await self.fulfillment.generate_label(order_id)

    # ── 参照 ─────────────────────────────────────────

    async def get_order(self, actor: Actor, order_id: UUID) -> OrderAggregate:
        return await self._authorize(actor, Action.VIEW, order_id)

    async def list_orders(
        self,
        actor: Actor,
        *,
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
    ) -> dict:
        """
        一覧は呼び出し元の範囲に絞る。
        admin だけが buyer_id / seller_id を自由に指定できる。
        """
        if not actor.is_admin:
            buyer_id = seller_id = None
            if scope == "seller":
                seller_id = actor.actor_id
            else:
                buyer_id = actor.actor_id
        return await queries.list_orders(
            self.repository.store,
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

    async def track_shipment(self, tracking_number: str) -> dict:
        """追跡番号から配送状況と履歴を返す。"""
        order_id = await self.repository.store.find_order_by_tracking_number(
            tracking_number
        )
        if order_id is None:
            raise TrackingNumberNotFound(tracking_number)
        agg = await self.repository.get(UUID(order_id))
        return queries.tracking_view(agg.shipment)

    async def get_inventory(self, product_id: str) -> StockRecord:
        return await self.ledger.get(product_id)

    # ── 在庫管理 (出品者 / admin) ────────────────────

    def _require_inventory_access(self, actor: Actor) -> None:
        if not self.authorizer.can(actor, Action.MANAGE_INVENTORY, None):
            raise Forbidden(actor.actor_id, Action.MANAGE_INVENTORY.value)

    async def create_stock(
        self,
        actor: Actor,
        product_id: str,
        quantity: int,
        location: str = "",
        sku: str | None = None,
    ) -> StockRecord:
        self._require_inventory_access(actor)
        return await self.ledger.create_stock(product_id, quantity, location, sku)

    async def update_stock(
        self,
        actor: Actor,
        product_id: str,
        *,
        quantity: int | None = None,
        location: str | None = None,
        sku: str | None = None,
    ) -> StockRecord:
        self._require_inventory_access(actor)
        return await self.ledger.update_stock(
            product_id, quantity=quantity, location=location, sku=sku
        )

    async def low_stock(self, actor: Actor, threshold: int) -> list[StockRecord]:
        self._require_inventory_access(actor)
        return await self.ledger.low_stock(threshold)


def build_service(
    settings: Settings,
    order_store,
    stock_store,
    publisher: EventPublisher,
    authorizer: Authorizer | None = None,
    carrier_client: CarrierClient | None = None,
) -> OrderService:
    """各コンポーネントを組み立てる (composition root)。"""
    repository = OrderRepository(
        order_store, publisher, max_retries=settings.max_conflict_retries
    )
    ledger = InventoryLedger(stock_store, publisher)
    carrier_client = carrier_client or CarrierClient(
        api_url=settings.carrier_api_url, label_base_url=settings.label_base_url
    )
    return OrderService(
        repository=repository,
        ledger=ledger,
        payments=PaymentCoordinator(repository),
        fulfillment=FulfillmentCoordinator(
            repository, ledger, carrier_client, settings.carriers
        ),
        authorizer=authorizer or RoleBasedAuthorizer(),
        tax_rate=settings.tax_rate,
    )
