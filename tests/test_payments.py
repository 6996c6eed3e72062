import hashlib
import hmac
import json
import sqlite3

import pytest

import payments
from helpers import suno_envelope
from payments import get_payment, map_razorpay_status, verify_payment_signature, verify_webhook_signature


def sign(secret, message):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


@pytest.fixture
def order(anon_client, song_request_id, razorpay_session):
    razorpay_session.queue("POST", "/v1/orders", {
        "id": "order_abc", "amount": 29900, "currency": "INR", "receipt": f"song_req_{song_request_id}",
        "status": "created",
    })
    response = anon_client.post("/api/payments/create-order", json={"amount": 299, "songRequestId": song_request_id,
                                                                    "planId": "basic"})
    assert response.status_code == 200
    return response.get_json()


def post_webhook(client, event, secret="rzp_webhook_secret", event_id=None):
    body = json.dumps(event).encode()
    headers = {"X-Razorpay-Signature": sign(secret, body)}
    if event_id:
        headers["X-Razorpay-Event-Id"] = event_id
    return client.post("/api/webhooks/razorpay", data=body, content_type="application/json", headers=headers)


def captured_event(payment_id="pay_123", order_id="order_abc", status="captured"):
    return {
        "event": "payment.captured",
        "created_at": 1700000000,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "status": status,
                                           "method": "upi", "amount": 29900}}},
    }


def test_status_map_defaults_to_pending():
    assert map_razorpay_status("captured") == "completed"
    assert map_razorpay_status("refunded") == "refunded"
    assert map_razorpay_status("something-new") == "pending"


def test_signatures():
    signature = sign("secret", "order_1|pay_1")
    assert verify_payment_signature("order_1", "pay_1", signature, "secret")
    assert not verify_payment_signature("order_1", "pay_2", signature, "secret")
    assert verify_webhook_signature(b'{"a": 1}', sign("secret", b'{"a": 1}'), "secret")
    assert not verify_webhook_signature(b'{"a": 1}', None, "secret")


def test_pricing_plans(client):
    body = client.get("/api/pricing-plans").get_json()
    assert body["currency"] == "INR"
    assert [plan["id"] for plan in body["plans"]] == ["basic", "standard", "premium"]
    assert body["paymentRequired"] is False


def test_create_order_requires_session(client):
    response = client.post("/api/payments/create-order", json={"amount": 299})
    assert response.status_code == 401


def test_create_order_validates_amount(anon_client):
    response = anon_client.post("/api/payments/create-order", json={"amount": 0})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid input"


def test_create_order_for_someone_elses_request(app, song_request_id):
    stranger = app.test_client()
    stranger.post("/api/users/anonymous")
    response = stranger.post("/api/payments/create-order", json={"amount": 299, "songRequestId": song_request_id})
    assert response.status_code == 403


def test_create_order(order, razorpay_session, song_request_id):
    assert order["orderId"] == "order_abc"
    assert order["amount"] == 29900
    assert order["key"] == "rzp_test_key"

    method, url, kwargs = razorpay_session.calls[0]
    assert (method, url) == ("POST", "https://razorpay.test/v1/orders")
    assert kwargs["auth"] == ("rzp_test_key", "rzp_test_secret")
    assert kwargs["json"]["amount"] == 29900
    assert kwargs["json"]["notes"] == {
        "songRequestId": str(song_request_id),
        "description": "Melodia Song Generation",
        "planId": "basic",
    }


def test_provider_failure_on_create(anon_client, razorpay_session):
    razorpay_session.queue("POST", "/v1/orders", {"error": {"description": "bad key"}}, status_code=401)
    response = anon_client.post("/api/payments/create-order", json={"amount": 299})
    assert response.status_code == 500


def test_verify_payment(app, anon_client, order, razorpay_session):
    razorpay_session.queue("GET", "/v1/payments/pay_123", {"id": "pay_123", "status": "captured", "method": "card"})
    response = anon_client.post("/api/payments/verify", json={
        "razorpay_order_id": "order_abc",
        "razorpay_payment_id": "pay_123",
        "razorpay_signature": sign("rzp_test_secret", "order_abc|pay_123"),
    })
    assert response.status_code == 200
    assert response.get_json()["paymentId"] == order["paymentId"]

    status = anon_client.get(f"/api/payments/status/{order['paymentId']}").get_json()["payment"]
    assert status["status"] == "completed"
    assert status["paymentMethod"] == "card"
    assert status["razorpayPaymentId"] == "pay_123"


def test_verify_rejects_bad_signature(anon_client, order):
    response = anon_client.post("/api/payments/verify", json={
        "razorpay_order_id": "order_abc",
        "razorpay_payment_id": "pay_123",
        "razorpay_signature": "forged",
    })
    assert response.status_code == 400


def test_verify_unknown_order(anon_client):
    response = anon_client.post("/api/payments/verify", json={
        "razorpay_order_id": "order_missing",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign("rzp_test_secret", "order_missing|pay_1"),
    })
    assert response.status_code == 404


def test_payment_status_is_owner_only(app, client, order):
    stranger = app.test_client()
    assert stranger.get(f"/api/payments/status/{order['paymentId']}").status_code == 401
    stranger.post("/api/users/anonymous")
    assert stranger.get(f"/api/payments/status/{order['paymentId']}").status_code == 403
    assert client.get("/api/payments/status/9999").status_code == 404


class TestRazorpayWebhook:
    def test_missing_signature(self, client):
        response = client.post("/api/webhooks/razorpay", json=captured_event())
        assert response.status_code == 400

    def test_wrong_secret(self, client, order):
        assert post_webhook(client, captured_event(), secret="nope").status_code == 400

    def test_signed_garbage(self, client):
        body = b"not json"
        response = client.post("/api/webhooks/razorpay", data=body,
                               headers={"X-Razorpay-Signature": sign("rzp_webhook_secret", body)})
        assert response.status_code == 400

    def test_captured_then_duplicate(self, app, client, order):
        first = post_webhook(client, captured_event(), event_id="evt_1")
        assert first.get_json()["message"] == "Webhook processed successfully"
        with app.app_context():
            payment = get_payment(order["paymentId"])
        assert payment["status"] == "completed"
        assert payment["payment_method"] == "upi"
        assert payment["razorpay_payment_id"] == "pay_123"

        second = post_webhook(client, captured_event(), event_id="evt_1")
        assert second.get_json()["message"] == "Webhook already processed"

    def test_events_without_id_are_not_deduplicated(self, app, client, order):
        failed = {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_abc", "status": "failed"}}},
        }
        first = post_webhook(client, failed)
        second = post_webhook(client, captured_event(payment_id="pay_2"))
        assert first.get_json()["message"] == "Webhook processed successfully"
        assert second.get_json()["message"] == "Webhook processed successfully"
        with app.app_context():
            assert get_payment(order["paymentId"])["status"] == "completed"

    def test_failed_payment_keeps_error(self, app, client, order):
        event = {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {
                "id": "pay_999", "order_id": "order_abc", "status": "failed",
                "error_code": "BAD_REQUEST_ERROR", "error_description": "Card declined",
            }}},
        }
        post_webhook(client, event, event_id="evt_failed")
        with app.app_context():
            payment = get_payment(order["paymentId"])
        assert payment["status"] == "failed"
        assert payment["metadata"]["error"]["description"] == "Card declined"

    def test_refund(self, app, client, order):
        post_webhook(client, captured_event(), event_id="evt_cap")
        refund = {
            "event": "refund.created",
            "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_123", "amount": 29900}}},
        }
        post_webhook(client, refund, event_id="evt_refund")
        with app.app_context():
            assert get_payment(order["paymentId"])["status"] == "refunded"

    def test_processing_failure_allows_retry(self, client, order, monkeypatch):
        original = payments.process_webhook_event
        failures = [sqlite3.OperationalError("database is locked")]

        def flaky(event):
            if failures:
                raise failures.pop()
            return original(event)

        monkeypatch.setattr(payments, "process_webhook_event", flaky)
        assert post_webhook(client, captured_event(), event_id="evt_retry").status_code == 500

        retried = post_webhook(client, captured_event(), event_id="evt_retry")
        assert retried.get_json()["message"] == "Webhook processed successfully"


def test_generation_waits_for_payment(app, anon_client, order, song_request_id, suno_session, razorpay_session):
    app.config["REQUIRE_PAYMENT"] = True
    draft = anon_client.post("/api/generate-lyrics", json={"requestId": song_request_id}).get_json()["draft"]
    anon_client.post("/api/approve-lyrics", json={"draftId": draft["id"], "requestId": song_request_id})
    body = {"lyricsDraftId": draft["id"], "songRequestId": song_request_id}

    assert anon_client.post("/api/generate-song", json=body).status_code == 402

    razorpay_session.queue("GET", "/v1/payments/pay_123", {"id": "pay_123", "method": "card"})
    anon_client.post("/api/payments/verify", json={
        "razorpay_order_id": "order_abc",
        "razorpay_payment_id": "pay_123",
        "razorpay_signature": sign("rzp_test_secret", "order_abc|pay_123"),
    })
    suno_session.queue("POST", "/api/v1/generate", suno_envelope({"taskId": "task-paid"}))
    response = anon_client.post("/api/generate-song", json=body)
    assert response.status_code == 200
    assert response.get_json()["taskId"] == "task-paid"
