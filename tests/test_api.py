from uuid import uuid4

import httpx
import pytest

from orderflow.main import create_app

BUYER_HEADERS = {"X-Actor-Id": "buyer-1", "X-Actor-Role": "buyer"}
SELLER_HEADERS = {"X-Actor-Id": "seller-1", "X-Actor-Role": "seller"}
ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}

ORDER_PAYLOAD = {
    "lines": [
        {"product_id": "P1", "seller_id": "seller-1", "quantity": 2, "unit_price": "10.00"},
        {"product_id": "P2", "seller_id": "seller-1", "quantity": 1, "unit_price": "4.50"},
    ],
    "shipping_address_id": "addr-1",
    "payment_method": "credit_card",
    "shipping": "5.00",
}


@pytest.fixture
async def client(service):
    app = create_app(service=service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_order(client, payload=ORDER_PAYLOAD):
    resp = await client.post("/commands/orders", json=payload, headers=BUYER_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok", "service": "orderflow"}


async def test_order_lifecycle_over_http(client):
    created = await create_order(client)
    order_id = created["order_id"]
    assert created["status"] == "pending"
    assert created["total"] == 31.95  # 24.50 + 5.00 + 10% tax

    resp = await client.post(
        f"/commands/orders/{order_id}/pay", json={"transaction_id": "txn-1"},
        headers=BUYER_HEADERS,
    )
    assert resp.json()["status"] == "paid"

    resp = await client.post(
        f"/commands/orders/{order_id}/ship",
        json={"tracking_number": "1Z999", "carrier": "ups"},
        headers=SELLER_HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["tracking_number"] == "1Z999"

    resp = await client.post(f"/commands/orders/{order_id}/deliver", headers=BUYER_HEADERS)
    assert resp.json()["status"] == "delivered"

    resp = await client.get(f"/queries/orders/{order_id}", headers=BUYER_HEADERS)
    order = resp.json()
    assert order["status"] == "delivered"
    assert order["shipment"]["carrier"] == "ups"
    assert order["seller_id"] == "seller-1"
    assert order["version"] == 5

    resp = await client.get("/queries/inventory/P1")
    assert resp.json() == {
        "product_id": "P1",
        "quantity": 8,
        "reserved_quantity": 0,
        "available": 8,
    }

    resp = await client.get(f"/events/{order_id}")
    assert [e["event_type"] for e in resp.json()] == [
        "OrderCreated",
        "OrderPaid",
        "ShipmentCreated",
        "OrderShipped",
        "OrderDelivered",
    ]


async def test_insufficient_stock_maps_to_409(client):
    payload = {**ORDER_PAYLOAD, "lines": [
        {"product_id": "P3", "seller_id": "seller-1", "quantity": 2, "unit_price": "1.00"},
    ]}
    resp = await client.post("/commands/orders", json=payload, headers=BUYER_HEADERS)
    assert resp.status_code == 409
    assert resp.json() == {
        "detail": "Insufficient stock for P3: requested=2, available=1",
        "error": "insufficient_stock",
        "product_id": "P3",
        "requested": 2,
        "available": 1,
    }


async def test_cancel_shipped_order_maps_to_409(client):
    order_id = (await create_order(client))["order_id"]
    await client.post(f"/commands/orders/{order_id}/pay", json={}, headers=BUYER_HEADERS)
    await client.post(
        f"/commands/orders/{order_id}/shipments",
        json={"carrier": "dhl", "tracking_number": "D-1", "weight_kg": 1.2},
        headers=SELLER_HEADERS,
    )
    resp = await client.post(
        f"/commands/orders/{order_id}/cancel", json={"reason": "late"},
        headers=BUYER_HEADERS,
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "cannot_cancel_shipped_order"


async def test_invalid_shipment_details_map_to_422(client):
    order_id = (await create_order(client))["order_id"]
    await client.post(f"/commands/orders/{order_id}/pay", json={}, headers=BUYER_HEADERS)
    resp = await client.post(
        f"/commands/orders/{order_id}/ship",
        json={"tracking_number": "", "carrier": "ups"},
        headers=SELLER_HEADERS,
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_shipment_details"


async def test_missing_actor_header_is_401(client):
    resp = await client.post("/commands/orders", json=ORDER_PAYLOAD)
    assert resp.status_code == 401


async def test_forbidden_and_not_found(client):
    order_id = (await create_order(client))["order_id"]
    resp = await client.get(
        f"/queries/orders/{order_id}",
        headers={"X-Actor-Id": "buyer-2", "X-Actor-Role": "buyer"},
    )
    assert resp.status_code == 403

    resp = await client.get(f"/queries/orders/{uuid4()}", headers=ADMIN_HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"] == "order_not_found"


async def test_payment_webhook(client):
    order_id = (await create_order(client))["order_id"]
    body = {"order_id": order_id, "success": True, "transaction_id": "txn-9"}
    for _ in range(2):
        resp = await client.post("/webhooks/payments", json=body)
        assert resp.status_code == 200
        assert resp.json()["status"] == "paid"

    resp = await client.post(
        "/webhooks/payments", json={"order_id": order_id, "success": False}
    )
    assert resp.json()["status"] == "paid"


async def test_label_endpoint(client):
    order_id = (await create_order(client))["order_id"]
    await client.post(f"/commands/orders/{order_id}/pay", json={}, headers=BUYER_HEADERS)
    resp = await client.post(
        f"/commands/orders/{order_id}/shipments",
        json={"carrier": "ups", "tracking_number": "1Z1"},
        headers=SELLER_HEADERS,
    )
    assert resp.status_code == 201
    shipment_id = resp.json()["shipment_id"]

    resp = await client.post(f"/commands/orders/{order_id}/label", headers=SELLER_HEADERS)
    assert resp.json()["label_url"] == f"https://labels.test/{shipment_id}.pdf"


async def test_order_list_pagination(client):
    for _ in range(3):
        await create_order(client, {**ORDER_PAYLOAD, "lines": ORDER_PAYLOAD["lines"][:1]})

    resp = await client.get("/queries/orders?page=2&limit=2", headers=BUYER_HEADERS)
    data = resp.json()
    assert data["pagination"] == {"total": 3, "page": 2, "limit": 2, "totalPages": 2}
    assert len(data["orders"]) == 1

    resp = await client.get("/queries/orders?scope=seller", headers=SELLER_HEADERS)
    assert resp.json()["pagination"]["total"] == 3


async def test_inventory_management(client):
    resp = await client.post(
        "/commands/inventory",
        json={"product_id": "NEW", "quantity": 3, "sku": "SKU-NEW"},
        headers=SELLER_HEADERS,
    )
    assert resp.status_code == 201
    assert resp.json()["available"] == 3

    resp = await client.post(
        "/commands/inventory",
        json={"product_id": "NEW", "quantity": 3},
        headers=SELLER_HEADERS,
    )
    assert resp.status_code == 409

    resp = await client.put(
        "/commands/inventory/NEW", json={"quantity": 1}, headers=SELLER_HEADERS
    )
    assert resp.json()["quantity"] == 1

    resp = await client.get(
        "/queries/inventory/alerts/low-stock?threshold=1", headers=SELLER_HEADERS
    )
    assert sorted(r["product_id"] for r in resp.json()) == ["NEW", "P3"]

    resp = await client.post(
        "/commands/inventory",
        json={"product_id": "X", "quantity": 3},
        headers=BUYER_HEADERS,
    )
    assert resp.status_code == 403

    resp = await client.get("/queries/inventory/missing")
    assert resp.status_code == 404


async def test_order_list_filters_and_sort(client):
    for quantity in (3, 1, 2):
        line = {**ORDER_PAYLOAD["lines"][0], "quantity": quantity}
        await create_order(client, {**ORDER_PAYLOAD, "lines": [line]})

    resp = await client.get(
        "/queries/orders", params={"sort": "total", "order": "asc"}, headers=BUYER_HEADERS
    )
    totals = [o["total"] for o in resp.json()["orders"]]
    assert totals == sorted(totals)
    assert len(totals) == 3

    resp = await client.get(
        "/queries/orders", params={"date_from": "2999-01-01T00:00:00"},
        headers=BUYER_HEADERS,
    )
    assert resp.json()["pagination"]["total"] == 0

    resp = await client.get(
        "/queries/orders", params={"date_to": "2000-01-01T00:00:00Z"},
        headers=BUYER_HEADERS,
    )
    assert resp.json()["orders"] == []

    resp = await client.get(
        "/queries/orders", params={"sort": "buyer_id"}, headers=BUYER_HEADERS
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_query"


async def test_tracking_over_http(client):
    order_id = (await create_order(client))["order_id"]
    await client.post(f"/commands/orders/{order_id}/pay", json={}, headers=BUYER_HEADERS)
    await client.post(
        f"/commands/orders/{order_id}/ship",
        json={"tracking_number": "1Z-HTTP", "carrier": "ups"},
        headers=SELLER_HEADERS,
    )

    resp = await client.post(
        f"/commands/orders/{order_id}/tracking",
        json={"status": "out_for_delivery", "location": "Kyoto"},
        headers=SELLER_HEADERS,
    )
    assert resp.json() == {
        "order_id": order_id,
        "status": "shipped",
        "shipment_status": "out_for_delivery",
    }

    resp = await client.post(
        f"/commands/orders/{order_id}/tracking",
        json={"status": "in_transit"},
        headers=BUYER_HEADERS,
    )
    assert resp.status_code == 403

    resp = await client.get("/queries/shipments/track/1Z-HTTP")
    tracking = resp.json()
    assert tracking["status"] == "out_for_delivery"
    assert tracking["events"][-1]["location"] == "Kyoto"

    resp = await client.get("/queries/shipments/track/UNKNOWN")
    assert resp.status_code == 404
    assert resp.json()["error"] == "tracking_number_not_found"


async def test_label_after_delivery_maps_to_409(client):
    order_id = (await create_order(client))["order_id"]
    await client.post(f"/commands/orders/{order_id}/pay", json={}, headers=BUYER_HEADERS)
    await client.post(
        f"/commands/orders/{order_id}/ship",
        json={"tracking_number": "1Z-DONE", "carrier": "ups"},
        headers=SELLER_HEADERS,
    )
    await client.post(f"/commands/orders/{order_id}/deliver", headers=BUYER_HEADERS)

    resp = await client.post(f"/commands/orders/{order_id}/label", headers=SELLER_HEADERS)
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"

    resp = await client.get(f"/queries/orders/{order_id}", headers=BUYER_HEADERS)
    assert resp.json()["version"] == 5
