"""
Paystack payment adapter

Amounts are sent to Paystack in kobo. Orders are confirmed either by the
signed webhook or by the client calling /api/payments/verify after the
redirect; both paths apply the same success transition, so a repeated
confirmation is a no-op.
"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import httpx
from bson import ObjectId

import config
from auth import CurrentUser
from database import get_collection, utcnow
from errors import APIError, Forbidden, GatewayError, NotFound, ValidationFailed
from notifications import notify_user, order_summary_data
from orders import order_summary, set_payment_status

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
DEFAULT_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money"]
SUPPORTED_WEBHOOK_EVENTS = ("charge.success", "charge.failed", "transfer.success", "transfer.failed", "transfer.reversed")
AMOUNT_TOLERANCE_KOBO = 1


def to_minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> float:
    return float(Decimal(amount or 0) / 100)


class PaystackClient:
    """Thin wrapper over the Paystack REST API."""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        self.client = httpx.Client(
            base_url=base_url or config.PAYSTACK_BASE_URL,
            headers={
                "Authorization": f"Bearer {secret_key or config.PAYSTACK_SECRET_KEY}",
                "Content-Type": "application/json",
            },
            timeout=config.PAYSTACK_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError:
            logger.exception("Paystack %s %s failed", method, path)
            raise GatewayError("Payment gateway is unreachable")
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error or not body.get("status"):
            message = body.get("message") or f"Payment gateway error ({response.status_code})"
            logger.warning("Paystack %s %s rejected: %s", method, path, message)
            raise GatewayError(message)
        return body.get("data") or {}

    def initialize_transaction(self, email: str, amount: int, reference: str, callback_url: str, metadata: dict, channels: List[str]) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": amount,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
                "channels": channels,
            },
        )

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{reference}")

    def refund(self, reference: str, amount: Optional[int] = None) -> Dict[str, Any]:
        payload = {"transaction": reference}
        if amount is not None:
            payload["amount"] = amount
        return self._request("POST", "/refund", json=payload)


_gateway: Optional[PaystackClient] = None


def get_gateway() -> PaystackClient:
    global _gateway
    if _gateway is None:
        _gateway = PaystackClient()
    return _gateway


# Initialization

def validate_payment_data(email: str, amount: int, order_id: str, user_id: str) -> List[str]:
    errors = []
    if not email or "@" not in email or "." not in email.split("@")[-1]:
        errors.append("Valid email is required")
    if not amount or amount <= 0:
        errors.append("Amount must be greater than 0")
    if not order_id or not order_id.strip():
        errors.append("Order ID is required")
    if not user_id or not user_id.strip():
        errors.append("User ID is required")
    return errors


def initialize_payment(order: dict, user: CurrentUser, gateway: PaystackClient, callback_url: Optional[str] = None, channels: Optional[List[str]] = None) -> dict:
    if order.get("user_id") != user.id:
        raise Forbidden("Unauthorized access to order")
    if order["payment_status"] == "paid":
        raise ValidationFailed("Order is already paid")
    if order["status"] == "cancelled":
        raise ValidationFailed("Cannot pay for cancelled order")
    if order["payment_status"] not in ("pending", "failed"):
        raise ValidationFailed(f"Order cannot be paid while payment is {order['payment_status']}")

    order_id = str(order["_id"])
    amount = to_minor_units(order["total"])
    errors = validate_payment_data(user.email, amount, order_id, user.id)
    if errors:
        raise ValidationFailed("Invalid payment data", details=errors)

    reference = f"order_{order_id}_{int(time.time() * 1000)}"
    data = gateway.initialize_transaction(
        email=user.email,
        amount=amount,
        reference=reference,
        callback_url=callback_url or f"{config.APP_URL}/checkout/callback",
        metadata={"order_id": order_id, "user_id": user.id, "order_number": order.get("order_number")},
        channels=channels or DEFAULT_CHANNELS,
    )

    if order["payment_status"] == "failed":
        set_payment_status(order, "pending", paystack_reference=reference)
    else:
        get_collection("order").update_one({"_id": order["_id"]}, {"$set": {"paystack_reference": reference, "updated_at": utcnow()}})
        order["paystack_reference"] = reference
    logger.info("Initialized payment %s for order %s", reference, order.get("order_number"))

    return {
        "authorization_url": data.get("authorization_url"),
        "access_code": data.get("access_code"),
        "reference": data.get("reference") or reference,
        "order_id": order_id,
        "amount": order["total"],
    }


# Webhooks

def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    if secret is None:
        secret = config.PAYSTACK_WEBHOOK_SECRET
    if not secret or not secret.strip():
        if config.is_production():
            logger.error("Webhook secret not configured in production - rejecting webhook")
            return False
        logger.warning("Webhook secret not configured - skipping signature verification")
        return True
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def parse_webhook_payload(payload: bytes) -> Optional[dict]:
    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("Webhook payload is not valid JSON")
        return None
    if not isinstance(event, dict) or not event.get("event") or not isinstance(event.get("data"), dict):
        logger.warning("Webhook payload has no event or data")
        return None
    return event


def validate_webhook_event(event: dict) -> List[str]:
    errors = []
    if not event.get("event"):
        errors.append("Event type is required")
    data = event.get("data")
    if not data:
        errors.append("Event data is required")
        return errors
    if not data.get("reference"):
        errors.append("Transaction reference is required")
    amount = data.get("amount")
    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
        errors.append("Valid amount is required")
    if not data.get("status"):
        errors.append("Transaction status is required")
    return errors


def is_payment_success_event(event: dict) -> bool:
    return event.get("event") == "charge.success" and event.get("data", {}).get("status") == "success"


def is_payment_failure_event(event: dict) -> bool:
    return event.get("event") == "charge.failed" or (
        event.get("event") == "charge.success" and event.get("data", {}).get("status") == "failed"
    )


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return utcnow()


def find_order_for_transaction(data: dict) -> Optional[dict]:
    metadata = data.get("metadata") or {}
    order_id = metadata.get("order_id") or metadata.get("orderId")
    orders = get_collection("order")
    if order_id and ObjectId.is_valid(str(order_id)):
        order = orders.find_one({"_id": ObjectId(str(order_id))})
        if order:
            return order
    if data.get("reference"):
        return orders.find_one({"paystack_reference": data["reference"]})
    return None


def check_reference(order: dict, data: dict) -> None:
    reference = order.get("paystack_reference")
    if reference and data.get("reference") != reference:
        raise ValidationFailed("Payment reference does not match order")


def apply_payment_success(order: dict, data: dict) -> dict:
    if order["payment_status"] == "paid":
        logger.info("Order %s already paid, ignoring repeated confirmation", order.get("order_number"))
        return order
    check_reference(order, data)
    expected = to_minor_units(order["total"])
    if abs(int(data.get("amount") or 0) - expected) > AMOUNT_TOLERANCE_KOBO:
        raise ValidationFailed("Payment amount does not match order total")

    paid_at = _parse_time(data.get("paid_at") or data.get("paidAt"))
    authorization = data.get("authorization") or {}
    set_payment_status(
        order,
        "paid",
        status="confirmed" if order["status"] == "pending" else None,
        paid_at=paid_at,
        paystack_reference=data.get("reference"),
        payment_details={
            "authorization_code": authorization.get("authorization_code"),
            "gateway_response": data.get("gateway_response"),
            "paid_at": paid_at,
            "channel": data.get("channel"),
            "fees": from_minor_units(data.get("fees") or 0),
        },
    )
    if order["status"] == "cancelled":
        logger.warning("Payment received for cancelled order %s, a refund is needed", order.get("order_number"))
    notify_user("payment_confirmation", order["user_id"], order_summary_data(order))
    return order


def apply_payment_failure(order: dict, data: dict) -> dict:
    if order["payment_status"] in ("paid", "failed"):
        logger.info("Ignoring payment failure for order %s with payment %s", order.get("order_number"), order["payment_status"])
        return order
    check_reference(order, data)
    set_payment_status(
        order,
        "failed",
        paystack_reference=data.get("reference"),
        payment_details={
            "gateway_response": data.get("gateway_response"),
            "failure_reason": data.get("message"),
            "failed_at": utcnow(),
        },
    )
    return order


def handle_webhook(raw_body: bytes, signature: Optional[str]) -> dict:
    if not signature:
        logger.error("Missing Paystack signature header")
        raise ValidationFailed("Missing signature header")
    if not verify_webhook_signature(raw_body, signature):
        logger.error("Invalid webhook signature")
        raise APIError("Invalid signature", status_code=401)
    event = parse_webhook_payload(raw_body)
    if event is None:
        raise ValidationFailed("Invalid payload")
    errors = validate_webhook_event(event)
    if errors:
        raise ValidationFailed("Invalid webhook event", details=errors)

    name = event["event"]
    data = event["data"]
    if name not in SUPPORTED_WEBHOOK_EVENTS:
        logger.info("Unhandled webhook event %s", name)
        return {"success": True, "handled": False}
    if name.startswith("transfer."):
        logger.info("Transfer event %s for reference %s", name, data.get("reference"))
        return {"success": True, "handled": False}

    order = find_order_for_transaction(data)
    if not order:
        logger.error("Order not found for webhook reference %s", data.get("reference"))
        return {"success": True, "handled": False}

    try:
        if is_payment_success_event(event):
            apply_payment_success(order, data)
        elif is_payment_failure_event(event):
            apply_payment_failure(order, data)
        else:
            logger.info("Ignoring %s with status %s", name, data.get("status"))
            return {"success": True, "handled": False}
    except APIError as e:
        # The gateway only needs an acknowledgement; keep the order as it is.
        logger.warning("Webhook %s for order %s not applied: %s", name, order.get("order_number"), e.message)
        return {"success": True, "handled": False}
    return {"success": True, "handled": True}


def verify_payment(reference: str, user: CurrentUser, gateway: PaystackClient, order_id: Optional[str] = None) -> dict:
    data = gateway.verify_transaction(reference)
    data["reference"] = data.get("reference") or reference
    order = find_order_for_transaction(data)
    if not order:
        raise NotFound("Order not found")
    if order_id and str(order["_id"]) != order_id:
        raise ValidationFailed("Payment reference does not belong to this order")
    if order.get("user_id") != user.id and not user.is_admin:
        raise Forbidden("Unauthorized access to order")

    status = data.get("status")
    if status == "success":
        apply_payment_success(order, data)
    elif status in ("failed", "abandoned"):
        apply_payment_failure(order, data)
    return {"verified": status == "success", "status": status, "order": order_summary(order)}
