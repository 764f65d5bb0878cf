"""HTTP surface: auth boundary, envelopes and the end-to-end order flow."""

import pytest
from fastapi.testclient import TestClient

from gasmarket.services.api_gateway.main import app, get_marketplace

API_KEY = {"X-Api-Key": "test-api-key"}
CUSTOMER = {**API_KEY, "X-User-Id": "customer-1", "X-User-Type": "customer"}
AGENT = {**API_KEY, "X-User-Id": "agent-1", "X-User-Type": "agent"}


@pytest.fixture()
def client(mp):
    app.dependency_overrides[get_marketplace] = lambda: mp
    yield TestClient(app)
    app.dependency_overrides.clear()


def _order_body(listing, **overrides):
    body = {"listing_id": listing.id, "quantity": 2, "delivery_address": "Kilimani, Nairobi"}
    body.update(overrides)
    return body


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_metrics_exposed(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text


def test_api_key_required(client, listing):
    resp = client.post("/orders", json=_order_body(listing), headers={"X-User-Id": "customer-1", "X-User-Type": "customer"})
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_identity_required(client, listing):
    resp = client.post("/orders", json=_order_body(listing), headers=API_KEY)
    assert resp.status_code == 401


def test_place_order(client, listing):
    resp = client.post("/orders", json=_order_body(listing), headers=CUSTOMER)

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "Order placed successfully"
    assert body["order"]["total_price"] == 2400.0
    assert body["order"]["grand_total"] == 2500.0
    assert body["order"]["status"] == "pending"


def test_invalid_payload_is_400(client, listing):
    resp = client.post("/orders", json=_order_body(listing, quantity=0), headers=CUSTOMER)
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_domain_errors_use_envelope(client, listing):
    resp = client.post("/orders", json=_order_body(listing, quantity=9), headers=CUSTOMER)
    assert resp.status_code == 400
    assert resp.json() == {
        "success": False,
        "message": "Only 5 units available. Requested: 9",
        "error": "insufficient_stock",
        "available_quantity": 5,
    }


def test_order_hidden_from_other_customers(client, listing):
    order_id = client.post("/orders", json=_order_body(listing), headers=CUSTOMER).json()["order"]["id"]
    stranger = {**API_KEY, "X-User-Id": "customer-2", "X-User-Type": "customer"}

    resp = client.get(f"/orders/{order_id}", headers=stranger)

    assert resp.status_code == 404
    assert resp.json()["error"] == "order_not_found"


def test_agent_flow_and_summary(client, listing):
    order_id = client.post("/orders", json=_order_body(listing), headers=CUSTOMER).json()["order"]["id"]

    resp = client.put(f"/orders/agent/{order_id}/status", json={"status": "confirmed"}, headers=AGENT)
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "confirmed"

    resp = client.put(f"/orders/agent/{order_id}/status", json={"status": "delivered"}, headers=AGENT)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot change status from confirmed to delivered"

    summary = client.get("/orders/agent/summary", headers=AGENT).json()["summary"]
    assert summary["confirmed"] == 1

    details = client.get(f"/orders/{order_id}", headers=CUSTOMER).json()
    assert [step["to_status"] for step in details["timeline"]] == ["confirmed"]


def test_status_patch_rejects_unknown_fields(client, listing):
    order_id = client.post("/orders", json=_order_body(listing), headers=CUSTOMER).json()["order"]["id"]
    resp = client.put(
        f"/orders/agent/{order_id}/status",
        json={"status": "confirmed", "grand_total": 1},
        headers=AGENT,
    )
    assert resp.status_code == 400


def test_cancel_without_body(client, listing):
    order_id = client.post("/orders", json=_order_body(listing), headers=CUSTOMER).json()["order"]["id"]
    resp = client.put(f"/orders/customer/{order_id}/cancel", headers=CUSTOMER)
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "cancelled"


def test_mpesa_flow(client, listing, cart_rows):
    order = client.post("/orders", json=_order_body(listing, payment_method="mpesa"), headers=CUSTOMER).json()["order"]
    assert order["status"] == "pending_payment"

    resp = client.post(
        "/payments/initiate",
        json={"order_id": order["id"], "phone_number": "0712345678", "amount": 2500.01},
        headers=CUSTOMER,
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "amount_mismatch"

    payment = client.post(
        "/payments/initiate",
        json={"order_id": order["id"], "phone_number": "0712345678", "amount": 2500},
        headers=CUSTOMER,
    ).json()["payment"]
    code = payment["verification_code"]

    resp = client.post(
        "/payments/verify",
        json={"payment_id": payment["payment_id"], "verification_code": "000000"},
        headers=CUSTOMER,
    )
    assert resp.status_code == 400
    assert resp.json()["attempts_left"] == 4

    resp = client.post(
        "/payments/verify",
        json={"payment_id": payment["payment_id"], "verification_code": code},
        headers=CUSTOMER,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["order"]["status"] == "pending"
    assert body["order"]["payment_status"] == "paid"
    assert cart_rows() == 0

    status = client.get("/payments/status", params={"order_id": order["id"]}, headers=CUSTOMER).json()
    assert status["payment"]["status"] == "completed"
    assert "verification_code" not in status["payment"]


def test_callback_always_answers(client):
    resp = client.post("/payments/mpesa/callback", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.json()["ResultCode"] == 1

    resp = client.post("/payments/mpesa/callback", json={"Body": {"stkCallback": {"CheckoutRequestID": "nope"}}})
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Success"}


def test_delivery_then_rating_and_earnings(client, listing):
    order_id = client.post("/orders", json=_order_body(listing), headers=CUSTOMER).json()["order"]["id"]
    for status in ("confirmed", "processing", "dispatched", "delivered"):
        client.put(f"/orders/agent/{order_id}/status", json={"status": status}, headers=AGENT)

    resp = client.post(f"/orders/{order_id}/rating", json={"rating": 5, "review": "Great"}, headers=CUSTOMER)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Thank you for your rating!"

    resp = client.post(f"/orders/{order_id}/rating", json={"rating": 4}, headers=CUSTOMER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "already_rated"

    earnings = client.get("/wallet/earnings", headers=AGENT).json()["data"]
    assert earnings["balance"] == 2500.0

    report = client.get("/wallet/reconciliation", headers=API_KEY).json()
    assert report["mismatched_count"] == 0
