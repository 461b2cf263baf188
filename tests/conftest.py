from decimal import Decimal

import pytest
from fakeredis import aioredis as fake_aioredis

from orderflow.auth import Actor, Role
from orderflow.config import Settings
from orderflow.memory import MemoryOrderStore, MemoryStockStore
from orderflow.models import CartLine, CartSnapshot, PaymentMethod
from orderflow.orchestrator import build_service
from orderflow.publisher import EventPublisher

BUYER = Actor(actor_id="buyer-1", role=Role.BUYER)
OTHER_BUYER = Actor(actor_id="buyer-2", role=Role.BUYER)
SELLER = Actor(actor_id="seller-1", role=Role.SELLER)
OTHER_SELLER = Actor(actor_id="seller-2", role=Role.SELLER)
ADMIN = Actor(actor_id="admin-1", role=Role.ADMIN)


def cart(*lines, buyer_id="buyer-1", **kwargs) -> CartSnapshot:
    """cart(("P1", 2, "10.00"), ...) で CartSnapshot を組み立てる"""
    return CartSnapshot(
        buyer_id=buyer_id,
        lines=tuple(
            CartLine(
                product_id=line[0],
                quantity=line[1],
                unit_price=Decimal(line[2]),
                seller_id=line[3] if len(line) > 3 else "seller-1",
                product_name=f"Product {line[0]}",
            )
            for line in lines
        ),
        **kwargs,
    )


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        redis_url="",
        tax_rate=Decimal("0.10"),
        label_base_url="https://labels.test",
    )


@pytest.fixture
def redis():
    return fake_aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def publisher(redis):
    return EventPublisher(redis)


@pytest.fixture
def stock_store():
    return MemoryStockStore()


@pytest.fixture
def order_store():
    return MemoryOrderStore()


@pytest.fixture
async def service(settings, order_store, stock_store, publisher):
    service = build_service(settings, order_store, stock_store, publisher)
    await service.ledger.create_stock("P1", 10, location="WH-A")
    await service.ledger.create_stock("P2", 5, location="WH-A")
    await service.ledger.create_stock("P3", 1, location="WH-B")
    return service


@pytest.fixture
async def place_order(service):
    async def _place(*lines, actor=BUYER, **kwargs):
        snapshot = cart(*lines, buyer_id=actor.actor_id, **kwargs)
        return await service.create_order(
            actor, snapshot, "addr-1", PaymentMethod.CREDIT_CARD
        )

    return _place
