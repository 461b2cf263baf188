from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import cart
from orderflow.aggregate import OrderAggregate, quantities_by_product
from orderflow.errors import (
    CannotCancelShippedOrder,
    InvalidShipmentDetails,
    InvalidTransition,
    OrderNotShippable,
    ShipmentAlreadyExists,
    ShipmentNotFound,
)
from orderflow.models import OrderStatus, PaymentMethod, ShipmentStatus

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
CARRIERS = frozenset({"ups", "fedex", "usps", "dhl"})


def new_order(*lines, tax_rate="0", **kwargs) -> OrderAggregate:
    snapshot = cart(*(lines or (("P1", 2, "10.00"),)), **kwargs)
    return OrderAggregate.create(
        uuid4(), snapshot, "addr-1", PaymentMethod.CREDIT_CARD, Decimal(tax_rate), NOW
    )


def paid_order(**kwargs) -> OrderAggregate:
    agg = new_order(**kwargs)
    agg.confirm_payment("txn-1", NOW)
    return agg


def test_create_computes_frozen_totals():
    agg = new_order(
        ("P1", 2, "10.00"),
        ("P2", 1, "5.55"),
        tax_rate="0.10",
        discount=Decimal("5.00"),
        shipping=Decimal("4.99"),
    )
    assert agg.status is OrderStatus.PENDING
    assert agg.subtotal == Decimal("25.55")
    assert agg.discount == Decimal("5.00")
    assert agg.tax == Decimal("2.06")
    assert agg.total == Decimal("27.60")
    assert agg.order_number == f"ORD-20240301-{agg.id.hex[:8].upper()}"
    assert [e.event_type for e in agg.pending_events] == ["OrderCreated"]


def test_discount_never_exceeds_subtotal():
    agg = new_order(("P1", 1, "3.00"), discount=Decimal("10.00"))
    assert agg.discount == Decimal("3.00")
    assert agg.total == Decimal("0.00")


def test_reservation_plan_merges_lines_and_sorts_products():
    agg = new_order(("P2", 1, "1.00"), ("P1", 2, "1.00"), ("P2", 3, "1.00"))
    assert agg.reservation_plan == [("P1", 2), ("P2", 4)]
    assert quantities_by_product([]) == []


def test_seller_id_only_for_single_vendor_orders():
    single = new_order(("P1", 1, "1.00", "s1"), ("P2", 1, "1.00", "s1"))
    multi = new_order(("P1", 1, "1.00", "s1"), ("P2", 1, "1.00", "s2"))
    assert single.seller_id == "s1"
    assert multi.seller_id is None
    assert multi.seller_ids == ["s1", "s2"]


def test_full_lifecycle_replays_from_events():
    agg = paid_order()
    agg.ship("shp-1", "1Z999", "UPS", CARRIERS, NOW)
    agg.deliver(NOW)

    stored = [
        {"event_type": e.event_type, "event_data": e.to_data(), "version": i}
        for i, e in enumerate(agg.pending_events, start=1)
    ]
    replayed = OrderAggregate.from_events(stored)

    assert replayed.status is OrderStatus.DELIVERED
    assert replayed.version == 5
    assert replayed.total == agg.total
    assert replayed.payment_status is True
    assert replayed.transaction_id == "txn-1"
    assert replayed.shipment.carrier == "ups"
    assert replayed.tracking_number == "1Z999"
    assert replayed.shipment.shipped_at is not None
    assert replayed.to_dict() == {**agg.to_dict(), "version": 5}


def test_confirm_payment_is_idempotent():
    agg = paid_order()
    assert agg.confirm_payment("txn-2", NOW) is False
    assert agg.transaction_id == "txn-1"
    assert len(agg.pending_events) == 2


def test_confirm_payment_on_cancelled_order_is_rejected():
    agg = new_order()
    agg.cancel("changed my mind", NOW)
    with pytest.raises(InvalidTransition):
        agg.confirm_payment("txn-1", NOW)


@pytest.mark.parametrize(
    "carrier, tracking",
    [("ups", ""), ("ups", "   "), ("pigeon", "1Z999"), (None, "1Z999")],
)
def test_ship_rejects_bad_shipment_details(carrier, tracking):
    agg = paid_order()
    with pytest.raises(InvalidShipmentDetails):
        agg.ship("shp-1", tracking, carrier, CARRIERS, NOW)
    assert agg.status is OrderStatus.PAID
    assert agg.shipment is None


def test_ship_requires_paid_order():
    agg = new_order()
    with pytest.raises(InvalidTransition) as exc:
        agg.ship("shp-1", "1Z999", "ups", CARRIERS, NOW)
    assert exc.value.context["from_status"] == "pending"
    assert exc.value.context["to_status"] == "shipped"


def test_ship_uses_existing_shipment_and_checks_consistency():
    agg = paid_order()
    agg.create_shipment("shp-1", "fedex", "FX1", CARRIERS, NOW, weight_kg=1.5)
    with pytest.raises(InvalidShipmentDetails):
        agg.ship("shp-2", "OTHER", None, CARRIERS, NOW)

    agg.ship("shp-2", None, None, CARRIERS, NOW)
    assert agg.status is OrderStatus.SHIPPED
    assert agg.shipment.shipment_id == "shp-1"
    assert agg.shipment.weight_kg == 1.5


def test_only_one_shipment_per_order():
    agg = paid_order()
    agg.create_shipment("shp-1", "dhl", "D1", CARRIERS, NOW)
    with pytest.raises(ShipmentAlreadyExists):
        agg.create_shipment("shp-2", "dhl", "D2", CARRIERS, NOW)


def test_shipment_needs_paid_order():
    with pytest.raises(OrderNotShippable):
        new_order().create_shipment("shp-1", "dhl", "D1", CARRIERS, NOW)


def test_cancel_after_shipping_is_rejected():
    agg = paid_order()
    agg.ship("shp-1", "1Z999", "ups", CARRIERS, NOW)
    with pytest.raises(CannotCancelShippedOrder) as exc:
        agg.cancel("too late", NOW)
    # 既存の InvalidTransition ハンドラでも拾える
    assert isinstance(exc.value, InvalidTransition)
    assert agg.status is OrderStatus.SHIPPED


def test_cancel_paid_order_with_shipment_is_rejected():
    agg = paid_order()
    agg.create_shipment("shp-1", "usps", "U1", CARRIERS, NOW)
    with pytest.raises(CannotCancelShippedOrder):
        agg.cancel("", NOW)


@pytest.mark.parametrize("terminal", ["delivered", "cancelled"])
def test_terminal_states_reject_every_transition(terminal):
    agg = paid_order()
    if terminal == "delivered":
        agg.ship("shp-1", "1Z999", "ups", CARRIERS, NOW)
        agg.deliver(NOW)
    else:
        agg.cancel("", NOW)
    before = len(agg.pending_events)

    with pytest.raises(InvalidTransition):
        agg.deliver(NOW)
    with pytest.raises(InvalidTransition):
        agg.cancel("", NOW)
    with pytest.raises(InvalidTransition):
        agg.ship("shp-9", "1Z999", "ups", CARRIERS, NOW)
    with pytest.raises(InvalidTransition):
        agg.record_label("https://labels.test/late.pdf", NOW)
    with pytest.raises(InvalidTransition):
        agg.update_tracking(ShipmentStatus.IN_TRANSIT, NOW)
    assert agg.status.is_terminal
    assert len(agg.pending_events) == before


def test_label_needs_paid_or_shipped_order_with_shipment():
    agg = new_order()
    with pytest.raises(InvalidTransition) as exc:
        agg.record_label("https://labels.test/1.pdf", NOW)
    assert exc.value.context == {"from_status": "pending", "to_status": "labelled"}

    agg.confirm_payment("txn-1", NOW)
    with pytest.raises(ShipmentNotFound):
        agg.record_label("https://labels.test/1.pdf", NOW)

    agg.create_shipment("shp-1", "ups", "1Z1", CARRIERS, NOW)
    agg.record_label("https://labels.test/1.pdf", NOW)
    agg.ship("shp-2", None, None, CARRIERS, NOW)
    agg.record_label("https://labels.test/2.pdf", NOW)
    assert agg.shipment.label_url == "https://labels.test/2.pdf"

    agg.deliver(NOW)
    before = len(agg.pending_events)
    with pytest.raises(InvalidTransition):
        agg.record_label("https://labels.test/3.pdf", NOW)
    assert len(agg.pending_events) == before
    assert agg.shipment.label_url == "https://labels.test/2.pdf"


def test_tracking_history_follows_the_shipment():
    agg = paid_order()
    agg.create_shipment("shp-1", "ups", "1Z1", CARRIERS, NOW)
    agg.update_tracking(ShipmentStatus.PROCESSING, NOW, location="Osaka DC")
    agg.ship("shp-2", None, None, CARRIERS, NOW)
    agg.update_tracking(ShipmentStatus.IN_TRANSIT, NOW, description="Left hub")
    agg.update_tracking(ShipmentStatus.OUT_FOR_DELIVERY, NOW)
    agg.deliver(NOW)

    assert agg.status is OrderStatus.DELIVERED
    assert agg.shipment.status is ShipmentStatus.DELIVERED
    assert [entry.status for entry in agg.shipment.tracking_history] == [
        ShipmentStatus.PENDING,
        ShipmentStatus.PROCESSING,
        ShipmentStatus.SHIPPED,
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.OUT_FOR_DELIVERY,
        ShipmentStatus.DELIVERED,
    ]
    assert agg.shipment.tracking_history[1].location == "Osaka DC"
    assert agg.shipment.tracking_history[3].description == "Left hub"

    stored = [
        {"event_type": e.event_type, "event_data": e.to_data(), "version": i}
        for i, e in enumerate(agg.pending_events, start=1)
    ]
    assert OrderAggregate.from_events(stored).shipment == agg.shipment


def test_tracking_update_does_not_move_the_order():
    agg = paid_order()
    with pytest.raises(ShipmentNotFound):
        agg.update_tracking(ShipmentStatus.PROCESSING, NOW)

    agg.create_shipment("shp-1", "ups", "1Z1", CARRIERS, NOW)
    agg.update_tracking(ShipmentStatus.FAILED, NOW, description="Address not found")
    assert agg.status is OrderStatus.PAID
    assert agg.shipment.status is ShipmentStatus.FAILED

    # 出庫を伴う状況は ship / deliver コマンドで扱う
    for status in (ShipmentStatus.SHIPPED, ShipmentStatus.DELIVERED):
        with pytest.raises(InvalidTransition):
            agg.update_tracking(status, NOW)
