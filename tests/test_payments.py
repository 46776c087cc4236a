import hashlib
import hmac
import json

import httpx
import pytest

import config
from errors import GatewayError
from payments import (
    PaystackClient,
    is_payment_failure_event,
    is_payment_success_event,
    to_minor_units,
    verify_webhook_signature,
)

WEBHOOK_SECRET = "whsec_test"


def _charge(order, event="charge.success", status="success", amount=None, **data):
    payload = {
        "event": event,
        "data": {
            "reference": order.get("paystack_reference") or "ref_missing",
            "amount": amount if amount is not None else to_minor_units(order["total"]),
            "status": status,
            "channel": "card",
            "gateway_response": "Approved",
            "paid_at": "2026-10-18T10:00:00.000Z",
            "fees": 7500,
            "authorization": {"authorization_code": "AUTH_abc"},
            "metadata": {"order_id": order["id"]},
            **data,
        },
    }
    return json.dumps(payload).encode("utf-8")


def _signed(body, secret=WEBHOOK_SECRET):
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return {"Content-Type": "application/json", "x-paystack-signature": signature}


@pytest.fixture
def webhook_secret(db, monkeypatch):
    monkeypatch.setattr(config, "PAYSTACK_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


def test_signature_verification(db, monkeypatch):
    body = b'{"event":"charge.success"}'
    good = hmac.new(b"s3cret", body, hashlib.sha512).hexdigest()
    assert verify_webhook_signature(body, good, "s3cret")
    assert not verify_webhook_signature(body + b" ", good, "s3cret")
    assert not verify_webhook_signature(body, None, "s3cret")

    assert verify_webhook_signature(body, "anything", "")
    monkeypatch.setattr(config, "APP_ENV", "production")
    assert not verify_webhook_signature(body, "anything", "")


def test_event_classification():
    assert is_payment_success_event({"event": "charge.success", "data": {"status": "success"}})
    assert not is_payment_success_event({"event": "charge.success", "data": {"status": "failed"}})
    assert is_payment_failure_event({"event": "charge.success", "data": {"status": "failed"}})
    assert is_payment_failure_event({"event": "charge.failed", "data": {"status": "failed"}})
    assert not is_payment_failure_event({"event": "transfer.failed", "data": {"status": "failed"}})


def test_minor_units_round_half_up():
    assert to_minor_units(5000) == 500000
    assert to_minor_units(19.995) == 2000
    assert to_minor_units(0.1 + 0.2) == 30


def test_webhook_rejects_missing_and_bad_signatures(client, webhook_secret, user, make_product, make_order):
    order = make_order(user, make_product(), reference="ref_1")
    body = _charge(order)

    res = client.post("/api/payments/webhook", content=body, headers={"Content-Type": "application/json"})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing signature header"

    res = client.post("/api/payments/webhook", content=body, headers=_signed(body, "wrong"))
    assert res.status_code == 401
    assert res.json()["error"] == "Invalid signature"

    garbage = b"not json"
    res = client.post("/api/payments/webhook", content=garbage, headers=_signed(garbage))
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid payload"


def test_webhook_success_marks_order_paid_once(client, db, webhook_secret, user, make_product, make_order):
    order = make_order(user, make_product(price=5000.0), reference="ref_ok")
    body = _charge(order)

    res = client.post("/api/payments/webhook", content=body, headers=_signed(body))
    assert res.status_code == 200, res.text
    assert res.json() == {"success": True, "handled": True}

    stored = db["order"].find_one({"_id": order["_id"]})
    assert stored["payment_status"] == "paid"
    assert stored["status"] == "confirmed"
    assert stored["paid_at"] is not None
    assert stored["payment_details"]["authorization_code"] == "AUTH_abc"
    assert stored["payment_details"]["fees"] == 75.0

    again = client.post("/api/payments/webhook", content=body, headers=_signed(body))
    assert again.status_code == 200
    assert db["notification"].count_documents({"kind": "payment_confirmation"}) == 1


def test_webhook_ignores_wrong_amount(client, db, webhook_secret, user, make_product, make_order):
    order = make_order(user, make_product(price=5000.0), reference="ref_short")
    body = _charge(order, amount=100)
    res = client.post("/api/payments/webhook", content=body, headers=_signed(body))
    assert res.status_code == 200
    assert res.json()["handled"] is False
    assert db["order"].find_one({"_id": order["_id"]})["payment_status"] == "pending"


def test_webhook_failure_event(client, db, webhook_secret, user, make_product, make_order):
    order = make_order(user, make_product(), reference="ref_fail")
    body = _charge(order, event="charge.failed", status="failed", message="Insufficient funds")
    res = client.post("/api/payments/webhook", content=body, headers=_signed(body))
    assert res.json() == {"success": True, "handled": True}
    stored = db["order"].find_one({"_id": order["_id"]})
    assert stored["payment_status"] == "failed"
    assert stored["payment_details"]["failure_reason"] == "Insufficient funds"


def test_webhook_for_unknown_order_is_acknowledged(client, webhook_secret):
    body = json.dumps({
        "event": "charge.success",
        "data": {"reference": "ref_nobody", "amount": 1000, "status": "success"},
    }).encode("utf-8")
    res = client.post("/api/payments/webhook", content=body, headers=_signed(body))
    assert res.status_code == 200
    assert res.json() == {"success": True, "handled": False}


def test_webhook_validates_event_fields(client, webhook_secret):
    body = json.dumps({"event": "charge.success", "data": {"reference": "ref_x", "amount": -5}}).encode("utf-8")
    res = client.post("/api/payments/webhook", content=body, headers=_signed(body))
    assert res.status_code == 400
    assert res.json()["details"] == ["Valid amount is required", "Transaction status is required"]


def test_initialize_payment(client, db, gateway, user, make_product, make_order):
    order = make_order(user, make_product(price=5000.0))
    res = client.post("/api/payments/initialize", json={"orderId": order["id"]}, headers=user["headers"])
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["authorization_url"].startswith("https://checkout.paystack.com/")
    assert body["reference"].startswith(f"order_{order['id']}_")

    sent = gateway.initialized[0]
    assert sent["amount"] == 500000
    assert sent["email"] == user["email"]
    assert sent["metadata"]["order_id"] == order["id"]
    assert db["order"].find_one({"_id": order["_id"]})["paystack_reference"] == body["reference"]


def test_initialize_payment_rejections(client, gateway, make_user, user, make_product, make_order):
    product = make_product()
    paid = make_order(user, product, status="confirmed", payment_status="paid")
    res = client.post("/api/payments/initialize", json={"orderId": paid["id"]}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Order is already paid"

    cancelled = make_order(user, product, status="cancelled")
    res = client.post("/api/payments/initialize", json={"orderId": cancelled["id"]}, headers=user["headers"])
    assert res.json()["error"] == "Cannot pay for cancelled order"

    other = make_user()
    pending = make_order(user, product)
    res = client.post("/api/payments/initialize", json={"orderId": pending["id"]}, headers=other["headers"])
    assert res.status_code == 403

    res = client.post("/api/payments/initialize", json={}, headers=user["headers"])
    assert res.json()["error"] == "Order ID is required"
    assert gateway.initialized == []


def test_retrying_a_failed_payment_resets_it(client, db, gateway, user, make_product, make_order):
    order = make_order(user, make_product(), payment_status="failed")
    res = client.post("/api/payments/initialize", json={"orderId": order["id"]}, headers=user["headers"])
    assert res.status_code == 200, res.text
    assert db["order"].find_one({"_id": order["_id"]})["payment_status"] == "pending"


def test_verify_payment(client, db, gateway, user, make_product, make_order):
    order = make_order(user, make_product(price=5000.0), reference="ref_verify")
    gateway.verify_result = {"status": "success", "amount": 500000, "metadata": {"order_id": order["id"]}}
    res = client.post("/api/payments/verify", json={"reference": "ref_verify"}, headers=user["headers"])
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["verified"] is True
    assert body["order"]["payment_status"] == "paid"
    assert body["order"]["status"] == "confirmed"


def test_verify_payment_rejects_wrong_amount(client, gateway, user, make_product, make_order):
    order = make_order(user, make_product(price=5000.0), reference="ref_low")
    gateway.verify_result = {"status": "success", "amount": 1000}
    res = client.post("/api/payments/verify", json={"reference": "ref_low", "orderId": order["id"]}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Payment amount does not match order total"


def test_verify_payment_cannot_be_replayed_for_another_order(client, db, gateway, user, make_product, make_order):
    product = make_product(price=5000.0)
    first = make_order(user, product, reference="ref_real")
    second = make_order(user, product)
    gateway.verify_result = {"status": "success", "amount": 500000, "metadata": {"order_id": first["id"]}}

    res = client.post("/api/payments/verify", json={"reference": "ref_real", "orderId": first["id"]}, headers=user["headers"])
    assert res.status_code == 200, res.text

    res = client.post("/api/payments/verify", json={"reference": "ref_real", "orderId": second["id"]}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Payment reference does not belong to this order"
    stored = db["order"].find_one({"_id": second["_id"]})
    assert stored["payment_status"] == "pending"
    assert stored["paystack_reference"] is None


def test_verify_payment_rejects_a_stale_reference(client, db, gateway, user, make_product, make_order):
    order = make_order(user, make_product(price=5000.0), reference="ref_current")
    gateway.verify_result = {"status": "success", "amount": 500000, "metadata": {"order_id": order["id"]}}
    res = client.post("/api/payments/verify", json={"reference": "ref_old"}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Payment reference does not match order"
    assert db["order"].find_one({"_id": order["_id"]})["payment_status"] == "pending"


def test_paystack_client_requests():
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.path == "/transaction/initialize":
            return httpx.Response(200, json={"status": True, "data": {"authorization_url": "https://pay", "access_code": "x", "reference": "r1"}})
        return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})

    client = PaystackClient(secret_key="sk_test", base_url="https://api.paystack.co", transport=httpx.MockTransport(handler))
    data = client.initialize_transaction("a@example.com", 1000, "r1", "https://shop/callback", {"order_id": "1"}, ["card"])
    assert data["reference"] == "r1"
    assert seen[0].headers["Authorization"] == "Bearer sk_test"
    assert json.loads(seen[0].content)["amount"] == 1000

    with pytest.raises(GatewayError) as exc:
        client.verify_transaction("missing")
    assert exc.value.message == "Transaction reference not found"
    assert seen[1].url.path == "/transaction/verify/missing"


def test_paystack_client_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = PaystackClient(secret_key="sk_test", transport=httpx.MockTransport(handler))
    with pytest.raises(GatewayError) as exc:
        client.refund("r1", 500)
    assert exc.value.message == "Payment gateway is unreachable"
