import logging
from datetime import timedelta
from typing import List, Optional

from pymongo.errors import PyMongoError

import config
from auth import CurrentUser
from database import as_utc, create_document, get_collection, parse_object_id, serialize_doc, utcnow
from errors import Forbidden, NotFound, ValidationFailed
from inventory import restore_order_inventory
from notifications import notify_user, order_summary_data
from orders import load_order, set_payment_status, state_of
from payments import PaystackClient, to_minor_units
from schemas import RefundRequest

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
INSTANT_REFUND_STATUSES = ("pending", "confirmed")
INSTANT_REFUND_REASON = "Admin instant refund before processing."


def _refunds():
    return get_collection("refundrequest")


def _find_for_order(order: dict) -> Optional[dict]:
    return _refunds().find_one({"order_id": str(order["_id"]), "user_id": order["user_id"]})


def _load_request(request_id: str) -> dict:
    refund = _refunds().find_one({"_id": parse_object_id(request_id, "refund request")})
    if not refund:
        raise NotFound("Refund request not found")
    if refund["status"] != "pending":
        raise ValidationFailed("Refund request already processed")
    return refund


def _resolve(refund: dict, status: str, admin: CurrentUser, resolution: Optional[str] = None) -> dict:
    changes = {"status": status, "processed_by": admin.id, "processed_at": utcnow(), "updated_at": utcnow()}
    if resolution:
        changes["resolution"] = resolution
    _refunds().update_one({"_id": refund["_id"]}, {"$set": changes})
    refund.update(changes)
    return refund


def _restore_stock(order: dict) -> None:
    try:
        restore_order_inventory(order)
    except PyMongoError:
        logger.exception("Failed to restore inventory for refunded order %s", order["_id"])


def _require_refundable(order: dict) -> None:
    if order["payment_status"] != "paid":
        raise ValidationFailed("Order is not paid")
    if not order.get("paystack_reference"):
        raise ValidationFailed("Order has no payment reference to refund")
    state_of(order, payment_status="refunded")


# Customer side

def request_refund(order: dict, user: CurrentUser, reason: Optional[str] = None) -> dict:
    if order.get("user_id") != user.id:
        raise Forbidden("Unauthorized access to order")
    if order["payment_status"] != "paid":
        raise ValidationFailed("Refund not available for unpaid orders")
    paid_at = as_utc(order.get("paid_at"))
    if not paid_at:
        raise ValidationFailed("Refund window not available")
    if utcnow() - paid_at > timedelta(hours=config.REFUND_WINDOW_HOURS):
        raise ValidationFailed(f"Refund window ({config.REFUND_WINDOW_HOURS} hours) has expired")

    reason = reason.strip()[:MAX_REASON_LENGTH] if reason else None
    existing = _find_for_order(order)
    if existing:
        if existing["status"] == "pending":
            return {"refund_request": serialize_doc(existing), "message": "Refund request already submitted"}
        if existing["status"] == "approved":
            raise ValidationFailed("Refund already approved for this order")
        changes = {"status": "pending", "updated_at": utcnow()}
        if reason:
            changes["reason"] = reason
        _refunds().update_one({"_id": existing["_id"]}, {"$set": changes})
        existing.update(changes)
        logger.info("Refund request resubmitted for order %s", order.get("order_number"))
        return {"refund_request": serialize_doc(existing), "message": "Refund request resubmitted"}

    now = utcnow()
    doc = {
        "order_id": str(order["_id"]),
        "user_id": order["user_id"],
        "reason": reason,
        "status": "pending",
        "resolution": None,
        "created_at": now,
        "updated_at": now,
    }
    doc["_id"] = _refunds().insert_one(doc).inserted_id
    logger.info("Refund requested for order %s", order.get("order_number"))
    return {"refund_request": serialize_doc(doc), "message": "Refund request submitted"}


def get_refund_request(order: dict, user: CurrentUser) -> dict:
    if order.get("user_id") != user.id and not user.is_admin:
        raise Forbidden("Unauthorized access to order")
    existing = _find_for_order(order)
    if not existing:
        return {"exists": False}
    return {"exists": True, "status": existing["status"], "refund_request": serialize_doc(existing)}


# Admin side

def list_refund_requests(status: Optional[str] = "pending", limit: int = 100) -> List[dict]:
    filter_q = {"status": status} if status else {}
    cursor = _refunds().find(filter_q).sort([("created_at", -1)]).limit(limit)
    return [serialize_doc(r) for r in cursor]


def approve(request_id: str, admin: CurrentUser, gateway: PaystackClient) -> dict:
    refund = _load_request(request_id)
    order = load_order(refund["order_id"])
    _require_refundable(order)

    gateway.refund(order["paystack_reference"], to_minor_units(order["total"]))
    _resolve(refund, "approved", admin, "gateway")
    set_payment_status(order, "refunded")
    _restore_stock(order)
    logger.info("Refund approved for order %s by %s", order.get("order_number"), admin.id)
    notify_user("refund_approved", order["user_id"], order_summary_data(order))
    return {"refund_request": serialize_doc(refund), "order_id": str(order["_id"])}


def mark_refunded(request_id: str, admin: CurrentUser) -> dict:
    """Settle a request paid back outside the gateway."""
    refund = _load_request(request_id)
    order = load_order(refund["order_id"])
    if order["payment_status"] != "paid":
        raise ValidationFailed("Order is not paid")
    state_of(order, payment_status="refunded")

    _resolve(refund, "approved", admin, "manual")
    set_payment_status(order, "refunded")
    _restore_stock(order)
    logger.info("Order %s marked refunded manually by %s", order.get("order_number"), admin.id)
    notify_user("refund_approved", order["user_id"], order_summary_data(order))
    return {"refund_request": serialize_doc(refund), "order_id": str(order["_id"])}


def reject(request_id: str, admin: CurrentUser) -> dict:
    refund = _load_request(request_id)
    _resolve(refund, "rejected", admin)
    logger.info("Refund request %s rejected by %s", request_id, admin.id)
    notify_user("refund_rejected", refund["user_id"], {"order_id": refund["order_id"]})
    return {"refund_request": serialize_doc(refund)}


def instant_refund(order_id: str, admin: CurrentUser, gateway: PaystackClient) -> dict:
    order = load_order(order_id)
    if order["payment_status"] != "paid":
        raise ValidationFailed("Order is not paid")
    if order["status"] not in INSTANT_REFUND_STATUSES:
        raise ValidationFailed("Instant refund allowed only before processing")
    if not order.get("paystack_reference"):
        raise ValidationFailed("Order has no payment reference to refund")

    gateway.refund(order["paystack_reference"], to_minor_units(order["total"]))
    now = utcnow()
    set_payment_status(
        order,
        "refunded",
        status="cancelled",
        cancelled_at=now,
        cancel_reason=order.get("cancel_reason") or INSTANT_REFUND_REASON,
    )
    _restore_stock(order)

    try:
        existing = _find_for_order(order)
        if existing:
            _resolve(existing, "approved", admin, "instant")
            if not existing.get("reason"):
                _refunds().update_one({"_id": existing["_id"]}, {"$set": {"reason": INSTANT_REFUND_REASON}})
        else:
            create_document("refundrequest", RefundRequest(
                order_id=str(order["_id"]),
                user_id=order["user_id"],
                reason=INSTANT_REFUND_REASON,
                status="approved",
                resolution="instant",
                processed_by=admin.id,
                processed_at=now,
            ))
    except PyMongoError:
        logger.exception("Failed to write refund audit record for order %s", order["_id"])

    logger.info("Instant refund processed for order %s by %s", order.get("order_number"), admin.id)
    notify_user("refund_approved", order["user_id"], order_summary_data(order))
    return {"order_id": str(order["_id"]), "status": order["status"], "payment_status": order["payment_status"]}
