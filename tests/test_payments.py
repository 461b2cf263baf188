import json

import pytest

from conftest import BUYER, SELLER
from orderflow.errors import InvalidTransition
from orderflow.models import OrderStatus
from orderflow.publisher import ORDER_CHANNEL


async def test_gateway_success_marks_order_paid(service, place_order):
    agg = await place_order(("P1", 1, "5.00"))
    agg = await service.handle_payment_callback(agg.id, True, "txn-42")
    assert agg.status is OrderStatus.PAID
    assert agg.payment_status is True
    assert agg.transaction_id == "txn-42"
    assert agg.paid_at is not None


async def test_gateway_retries_are_idempotent(service, place_order):
    agg = await place_order(("P1", 1, "5.00"))
    for _ in range(3):
        result = await service.handle_payment_callback(agg.id, True, "txn-42")
        assert result.status is OrderStatus.PAID
    events = await service.repository.events_for(agg.id)
    assert [e["event_type"] for e in events].count("OrderPaid") == 1


async def test_late_confirmation_after_shipping_is_ignored(service, place_order):
    agg = await place_order(("P1", 1, "5.00"))
    await service.confirm_payment(agg.id, "txn-1")
    await service.ship_order(SELLER, agg.id, "1Z999", "ups")

    agg = await service.confirm_payment(agg.id, "txn-1")
    assert agg.status is OrderStatus.SHIPPED


async def test_confirmation_after_delivery_is_ignored(service, place_order):
    agg = await place_order(("P1", 1, "5.00"))
    await service.confirm_payment(agg.id, "txn-1")
    await service.ship_order(SELLER, agg.id, "1Z999", "ups")
    await service.deliver_order(BUYER, agg.id)

    for transaction_id in ("txn-1", "txn-late"):
        agg = await service.confirm_payment(agg.id, transaction_id)
        assert agg.status is OrderStatus.DELIVERED
        assert agg.transaction_id == "txn-1"
    agg = await service.handle_payment_callback(agg.id, True, "txn-late")
    assert agg.status is OrderStatus.DELIVERED

    events = await service.repository.events_for(agg.id)
    assert len(events) == 5
    assert events[-1]["event_type"] == "OrderDelivered"


async def test_gateway_failure_leaves_order_pending(service, place_order, redis, caplog):
    agg = await place_order(("P1", 1, "5.00"))
    pubsub = redis.pubsub()
    await pubsub.subscribe(ORDER_CHANNEL)
    await pubsub.get_message(timeout=1)

    result = await service.handle_payment_callback(agg.id, False, "txn-bad")

    assert result.status is OrderStatus.PENDING
    assert result.payment_status is False
    assert "reported failure" in caplog.text
    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    await pubsub.aclose()
    payload = json.loads(message["data"])
    assert payload["event_type"] == "PaymentFailed"
    assert payload["data"]["transaction_id"] == "txn-bad"


async def test_payment_for_cancelled_order_is_rejected(service, place_order):
    agg = await place_order(("P1", 1, "5.00"))
    await service.cancel_order(BUYER, agg.id)
    with pytest.raises(InvalidTransition) as exc:
        await service.handle_payment_callback(agg.id, True, "txn-1")
    assert exc.value.context == {"from_status": "cancelled", "to_status": "paid"}
