import hashlib
import hmac
import json
import logging
import sqlite3
import time

import requests
from flask import Blueprint, current_app, jsonify, request

from auth import send_payment_confirmation, session_identity
from Credentials import get_user_by_id
from database import dump_json, get_db, row_to_dict, utcnow
from extensions import limiter
from mongo_integration import forget_webhook_event, mark_webhook_processed, record_webhook_event
from schemas import CreateOrderRequest, VerifyPaymentRequest, parse_body
from song_store import get_song_request, owns_request

log = logging.getLogger(__name__)

payments_bp = Blueprint('payments_bp', __name__)

RAZORPAY_STATUS_MAP = {
    "captured": "completed",
    "authorized": "pending",
    "created": "pending",
    "failed": "failed",
    "refunded": "refunded",
}


class PaymentError(Exception):
    pass


def map_razorpay_status(status):
    return RAZORPAY_STATUS_MAP.get(status, "pending")


def _hmac_hex(secret, message):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id, payment_id, signature, secret):
    expected = _hmac_hex(secret, f"{order_id}|{payment_id}")
    return hmac.compare_digest(expected, signature or "")


def verify_webhook_signature(body, signature, secret):
    expected = _hmac_hex(secret, body)
    return hmac.compare_digest(expected, signature or "")


class RazorpayClient:
    """Thin wrapper over the Razorpay orders/payments REST API."""

    def __init__(self, api_url, key_id, key_secret, demo_mode=False, session=None, timeout=30):
        self.api_url = api_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.demo_mode = demo_mode
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            config["RAZORPAY_API_URL"],
            config["RAZORPAY_KEY_ID"],
            config["RAZORPAY_KEY_SECRET"],
            demo_mode=config["DEMO_MODE"],
        )

    def _request(self, method, path, **kwargs):
        try:
            response = self.session.request(
                method, f"{self.api_url}{path}", auth=(self.key_id, self.key_secret), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise PaymentError(f"Razorpay request failed: {e}")
        if response.status_code >= 400:
            raise PaymentError(f"Razorpay error: HTTP {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise PaymentError(f"Razorpay returned invalid JSON: {e}")

    def create_order(self, amount, currency="INR", receipt=None, notes=None):
        """Create an order for ``amount`` rupees. The returned amount is in paise."""
        paise = int(round(amount * 100))
        receipt = receipt or f"receipt_{int(time.time() * 1000)}"
        if self.demo_mode:
            log.info("[DEMO MODE] Razorpay create order: %s %s", amount, currency)
            return {
                "id": f"order_demo_{int(time.time() * 1000)}",
                "amount": paise,
                "currency": currency,
                "receipt": receipt,
                "status": "created",
            }

        order = self._request(
            "POST", "/orders", json={"amount": paise, "currency": currency, "receipt": receipt, "notes": notes or {}}
        )
        return {
            "id": order["id"],
            "amount": int(order.get("amount", paise)),
            "currency": order.get("currency") or currency,
            "receipt": order.get("receipt") or "",
            "status": order.get("status") or "created",
        }

    def fetch_payment(self, payment_id):
        if self.demo_mode:
            return {"id": payment_id, "status": "captured", "method": "card"}
        return self._request("GET", f"/payments/{payment_id}")


def get_razorpay_client():
    return current_app.extensions["razorpay"]


# Payment rows

def create_payment(song_request_id, user_id, anonymous_user_id, order_id, amount, currency):
    db = get_db()
    now = utcnow()
    cursor = db.execute(
        """INSERT INTO payments (song_request_id, user_id, anonymous_user_id, razorpay_order_id, amount, currency,
                                 status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
        (song_request_id, user_id, anonymous_user_id, order_id, amount, currency, now, now),
    )
    db.commit()
    return get_payment(cursor.lastrowid)


def get_payment(payment_id):
    return row_to_dict(get_db().execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone())


def get_payment_by_order_id(order_id):
    row = get_db().execute("SELECT * FROM payments WHERE razorpay_order_id = ?", (order_id,)).fetchone()
    return row_to_dict(row)


def get_payment_by_razorpay_id(razorpay_payment_id):
    row = get_db().execute(
        "SELECT * FROM payments WHERE razorpay_payment_id = ? ORDER BY id DESC LIMIT 1", (razorpay_payment_id,)
    ).fetchone()
    return row_to_dict(row)


def update_payment(payment_id, **fields):
    if "metadata" in fields:
        fields["metadata"] = dump_json(fields["metadata"])
    assignments = [f"{column} = ?" for column in fields] + ["updated_at = ?"]
    values = list(fields.values()) + [utcnow(), payment_id]
    db = get_db()
    db.execute(f"UPDATE payments SET {', '.join(assignments)} WHERE id = ?", values)
    db.commit()
    return get_payment(payment_id)


def has_completed_payment(song_request_id):
    row = get_db().execute(
        "SELECT 1 FROM payments WHERE song_request_id = ? AND status = 'completed' LIMIT 1", (song_request_id,)
    ).fetchone()
    return row is not None


def serialize_payment(payment):
    return {
        "id": payment["id"],
        "songRequestId": payment["song_request_id"],
        "orderId": payment["razorpay_order_id"],
        "razorpayPaymentId": payment["razorpay_payment_id"],
        "amount": payment["amount"],
        "currency": payment["currency"],
        "status": payment["status"],
        "paymentMethod": payment["payment_method"],
        "createdAt": payment["created_at"],
        "updatedAt": payment["updated_at"],
    }


def _owns_payment(payment, user_id, anonymous_user_id):
    if user_id is not None and payment["user_id"] == user_id:
        return True
    return bool(anonymous_user_id) and payment["anonymous_user_id"] == anonymous_user_id


# Webhook processing

def _with_metadata(payment, entity, **extra):
    metadata = dict(payment.get("metadata") or {})
    metadata.update(entity)
    metadata.update(extra)
    return metadata


def _find_payment_for_entity(entity, refund=None):
    razorpay_payment_id = entity.get("id") or (refund or {}).get("payment_id")
    payment = get_payment_by_razorpay_id(razorpay_payment_id) if razorpay_payment_id else None
    if payment is None and entity.get("order_id"):
        payment = get_payment_by_order_id(entity["order_id"])
    return payment


def process_webhook_event(event):
    event_type = event.get("event")
    payload = event.get("payload") or {}
    entity = (payload.get("payment") or {}).get("entity") or {}
    refund = (payload.get("refund") or {}).get("entity")

    payment = _find_payment_for_entity(entity, refund)
    if payment is None:
        log.error("Payment record not found for Razorpay event %s (%s)", event_type, entity.get("id"))
        return None

    now = utcnow()
    if event_type in ("payment.captured", "order.paid"):
        fields = {
            "status": map_razorpay_status(entity.get("status") or "captured"),
            "metadata": _with_metadata(payment, entity, captured_at=now),
        }
        if entity.get("method"):
            fields["payment_method"] = entity["method"]
        if entity.get("id"):
            fields["razorpay_payment_id"] = entity["id"]
        return update_payment(payment["id"], **fields)

    if event_type == "payment.failed":
        error = {
            "code": entity.get("error_code"),
            "description": entity.get("error_description"),
            "source": entity.get("error_source"),
            "step": entity.get("error_step"),
            "reason": entity.get("error_reason"),
        }
        return update_payment(
            payment["id"], status="failed", metadata=_with_metadata(payment, entity, failed_at=now, error=error)
        )

    if event_type == "refund.created":
        return update_payment(
            payment["id"], status="refunded", metadata=_with_metadata(payment, entity, refund_created_at=now)
        )

    if event_type == "refund.processed":
        return update_payment(payment["id"], metadata=_with_metadata(payment, entity, refund_processed_at=now))

    log.info("Unhandled webhook event type: %s", event_type)
    return payment


# Routes

@payments_bp.route('/api/pricing-plans', methods=['GET'])
def pricing_plans():
    config = current_app.config
    return jsonify({
        "success": True,
        "plans": config["PRICING_PLANS"],
        "currency": config["PAYMENT_CURRENCY"],
        "paymentRequired": config["REQUIRE_PAYMENT"],
    })


@payments_bp.route('/api/payments/create-order', methods=['POST'])
@limiter.limit("10/minute")
def create_order():
    data = parse_body(CreateOrderRequest)
    user_id, anonymous_user_id = session_identity()
    if user_id is None and not anonymous_user_id:
        return jsonify({"error": "Session required"}), 401

    if data.song_request_id is not None:
        song_request = get_song_request(data.song_request_id)
        if song_request is None:
            return jsonify({"error": "Song request not found"}), 404
        if not owns_request(song_request, user_id, anonymous_user_id):
            return jsonify({"error": "Access denied"}), 403

    currency = current_app.config["PAYMENT_CURRENCY"]
    notes = {
        "songRequestId": str(data.song_request_id or ""),
        "description": current_app.config["PAYMENT_DESCRIPTION"],
    }
    if data.plan_id:
        notes["planId"] = data.plan_id
    try:
        order = get_razorpay_client().create_order(
            data.amount, currency=currency, receipt=f"song_req_{data.song_request_id}", notes=notes
        )
    except PaymentError as e:
        current_app.logger.error("Create order error: %s", e)
        return jsonify({"error": "Failed to create payment order"}), 500

    payment = create_payment(data.song_request_id, user_id, anonymous_user_id, order["id"], data.amount,
                             order["currency"])
    return jsonify({
        "success": True,
        "orderId": order["id"],
        "amount": order["amount"],
        "currency": order["currency"],
        "paymentId": payment["id"],
        "key": current_app.config["RAZORPAY_KEY_ID"],
    })


@payments_bp.route('/api/payments/verify', methods=['POST'])
def verify_payment():
    data = parse_body(VerifyPaymentRequest)
    config = current_app.config
    client = get_razorpay_client()

    if not client.demo_mode and not verify_payment_signature(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature, config["RAZORPAY_KEY_SECRET"]
    ):
        return jsonify({"error": "Invalid payment signature"}), 400

    payment = get_payment_by_order_id(data.razorpay_order_id)
    if payment is None:
        return jsonify({"error": "Payment record not found"}), 404

    fields = {"razorpay_payment_id": data.razorpay_payment_id, "status": "completed"}
    try:
        details = client.fetch_payment(data.razorpay_payment_id)
        if details.get("method"):
            fields["payment_method"] = details["method"]
    except PaymentError as e:
        log.warning("Could not fetch payment %s: %s", data.razorpay_payment_id, e)
    payment = update_payment(payment["id"], **fields)

    email = None
    if payment["user_id"] is not None:
        user = get_user_by_id(payment["user_id"])
        email = user["email"] if user else None
    if email is None and payment["song_request_id"]:
        song_request = get_song_request(payment["song_request_id"])
        email = song_request["email"] if song_request else None
    if email:
        send_payment_confirmation(email, payment["amount"], payment["currency"], payment["razorpay_order_id"])

    return jsonify({"success": True, "message": "Payment verified successfully", "paymentId": payment["id"]})


@payments_bp.route('/api/payments/status/<int:payment_id>', methods=['GET'])
def payment_status(payment_id):
    user_id, anonymous_user_id = session_identity()
    if user_id is None and not anonymous_user_id:
        return jsonify({"error": "Session required"}), 401
    payment = get_payment(payment_id)
    if payment is None:
        return jsonify({"error": "Payment not found"}), 404
    if not _owns_payment(payment, user_id, anonymous_user_id):
        return jsonify({"error": "Access denied"}), 403
    return jsonify({"success": True, "payment": serialize_payment(payment)})


@payments_bp.route('/api/webhooks/razorpay', methods=['POST'])
def razorpay_webhook():
    signature = request.headers.get("X-Razorpay-Signature")
    if not signature:
        log.error("Missing Razorpay signature")
        return jsonify({"success": False, "message": "Missing signature"}), 400

    body = request.get_data()
    if not verify_webhook_signature(body, signature, current_app.config["RAZORPAY_WEBHOOK_SECRET"]):
        log.error("Invalid webhook signature")
        return jsonify({"success": False, "message": "Invalid signature"}), 400

    try:
        event = json.loads(body)
    except ValueError:
        event = None
    if not isinstance(event, dict) or not event.get("event"):
        return jsonify({"success": False, "message": "Invalid webhook data"}), 400

    event_id = request.headers.get("X-Razorpay-Event-Id") or event.get("id")
    if not event_id:
        log.warning("Razorpay %s event without an event id; processing without de-duplication", event["event"])
    elif not record_webhook_event(event_id, event["event"], event):
        return jsonify({"success": True, "message": "Webhook already processed"})

    try:
        process_webhook_event(event)
    except sqlite3.Error as e:
        # Forget the delivery so Razorpay's retry is processed again.
        if event_id:
            forget_webhook_event(event_id)
        current_app.logger.error("Error processing webhook %s: %s", event_id, e)
        return jsonify({"success": False, "message": "Webhook processing failed"}), 500

    if event_id:
        mark_webhook_processed(event_id)
    return jsonify({"success": True, "message": "Webhook processed successfully"})
