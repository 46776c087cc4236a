"""
Notification outbox

Email and SMS delivery live outside this service; here we only record what
should be sent and when. Queueing never fails the caller.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.errors import PyMongoError

import config
from database import create_document, get_collection, utcnow
from schemas import Notification

logger = logging.getLogger(__name__)


def queue_notification(kind: str, recipient: str, data: Optional[Dict[str, Any]] = None, send_after: Optional[datetime] = None) -> Optional[str]:
    doc = Notification(kind=kind, recipient=recipient, data=data or {}, send_after=send_after or utcnow())
    try:
        inserted = create_document("notification", doc)
    except PyMongoError:
        logger.exception("Failed to queue %s notification for %s", kind, recipient)
        return None
    logger.info("Queued %s notification for %s", kind, recipient)
    return inserted


def _user_email(user_id: str) -> Optional[str]:
    if not ObjectId.is_valid(user_id):
        return None
    try:
        user = get_collection("user").find_one({"_id": ObjectId(user_id)}, {"email": 1})
    except PyMongoError:
        logger.exception("Failed to look up user %s for notification", user_id)
        return None
    return user.get("email") if user else None


def notify_user(kind: str, user_id: str, data: Optional[Dict[str, Any]] = None, send_after: Optional[datetime] = None) -> Optional[str]:
    email = _user_email(user_id)
    if not email:
        logger.warning("No recipient for %s notification, user %s", kind, user_id)
        return None
    return queue_notification(kind, email, data, send_after)


def order_summary_data(order: dict) -> Dict[str, Any]:
    return {
        "order_id": str(order["_id"]),
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "payment_status": order.get("payment_status"),
        "total": order.get("total"),
    }


def schedule_review_request(order: dict) -> Optional[str]:
    send_after = utcnow() + timedelta(hours=config.REVIEW_REQUEST_DELAY_HOURS)
    data = order_summary_data(order)
    data["product_ids"] = [i["product_id"] for i in order.get("items", [])]
    return notify_user("review_request", order["user_id"], data, send_after=send_after)
