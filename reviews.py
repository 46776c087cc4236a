"""
Review moderation

New reviews wait in `pending` and stay hidden until an admin approves them.
Only approved reviews are visible and counted in the product's cached
rating. Five reports flag a review automatically, whatever its status.
"""
import logging
from typing import Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from auth import CurrentUser
from database import get_collection, parse_object_id, serialize_doc, utcnow
from errors import Conflict, NotFound, ValidationFailed
from inventory import find_product
from schemas import ModerationRequest, Review, ReviewRequest

logger = logging.getLogger(__name__)

MODERATION_STATUSES = ("approved", "rejected", "flagged", "pending")
REASON_REQUIRED = ("rejected", "flagged")
PURCHASE_STATUSES = ["processing", "shipped", "delivered"]
MAX_TITLE_LENGTH = 100
MAX_COMMENT_LENGTH = 2000
MAX_REASON_LENGTH = 500
MAX_PAGE_SIZE = 50
MAX_MODERATION_PAGE_SIZE = 100

SORTS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "highest-rating": [("rating", -1), ("created_at", -1)],
    "lowest-rating": [("rating", 1), ("created_at", -1)],
    "most-helpful": [("helpful_votes", -1), ("created_at", -1)],
    "most-reported": [("report_count", -1), ("created_at", -1)],
}


def _reviews():
    return get_collection("review")


def _load(review_id: str) -> dict:
    review = _reviews().find_one({"_id": parse_object_id(review_id, "review")})
    if not review:
        raise NotFound("Review not found")
    return review


def display_name(name: Optional[str]) -> str:
    """'Ada Lovelace' -> 'Ada L.'"""
    parts = (name or "").split()
    if not parts:
        return "Anonymous"
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]} {parts[1][0]}."


def public_review(review: dict) -> dict:
    data = serialize_doc(review)
    data["user_name"] = display_name(review.get("user_name"))
    for private in ("helpful_voters", "reported_by", "moderated_by", "user_id"):
        data.pop(private, None)
    return data


# Aggregates

def product_rating_stats(product_id: str) -> dict:
    cursor = _reviews().find(
        {"product_id": product_id, "moderation_status": "approved", "is_visible": True},
        {"rating": 1},
    )
    distribution = {str(i): 0 for i in range(1, 6)}
    ratings = []
    for r in cursor:
        ratings.append(r["rating"])
        distribution[str(r["rating"])] += 1
    average = round(sum(ratings) / len(ratings), 1) if ratings else 0.0
    return {"average_rating": average, "total_reviews": len(ratings), "rating_distribution": distribution}


def refresh_product_rating(product_id: str) -> dict:
    stats = product_rating_stats(product_id)
    product = find_product(product_id)
    if product:
        get_collection("product").update_one(
            {"_id": product["_id"]},
            {"$set": {
                "rating": stats["average_rating"],
                "review_count": stats["total_reviews"],
                "rating_distribution": stats["rating_distribution"],
                "updated_at": utcnow(),
            }},
        )
    return stats


def _refresh_quietly(product_id: str) -> None:
    try:
        refresh_product_rating(product_id)
    except PyMongoError:
        logger.exception("Failed to refresh rating for product %s", product_id)


# Submission

def _purchase_order(user_id: str, product_id: str) -> Optional[dict]:
    return get_collection("order").find_one({
        "user_id": user_id,
        "items.product_id": product_id,
        "payment_status": "paid",
        "status": {"$in": PURCHASE_STATUSES},
    })


def submit_review(user: CurrentUser, payload: ReviewRequest) -> dict:
    if not payload.product_id or payload.rating is None:
        raise ValidationFailed("Product ID and rating are required")
    if not float(payload.rating).is_integer() or not 1 <= payload.rating <= 5:
        raise ValidationFailed("Rating must be an integer between 1 and 5")
    title = (payload.title or "").strip() or None
    comment = (payload.comment or "").strip() or None
    if not title and not comment:
        raise ValidationFailed("Review must have either a title or comment")
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValidationFailed(f"Review title cannot exceed {MAX_TITLE_LENGTH} characters")
    if comment and len(comment) > MAX_COMMENT_LENGTH:
        raise ValidationFailed(f"Review comment cannot exceed {MAX_COMMENT_LENGTH} characters")

    product = find_product(payload.product_id)
    if not product:
        raise NotFound("Product not found")
    if _reviews().find_one({"user_id": user.id, "product_id": payload.product_id}):
        raise Conflict("You have already reviewed this product")

    order = _purchase_order(user.id, payload.product_id)
    now = utcnow()
    review = {
        "user_id": user.id,
        "user_name": user.name,
        "product_id": payload.product_id,
        "order_id": str(order["_id"]) if order else None,
        "rating": int(payload.rating),
        "title": title,
        "comment": comment,
        "is_verified_purchase": order is not None,
        "moderation_status": "pending",
        "moderation_reason": None,
        "moderated_by": None,
        "moderated_at": None,
        "helpful_votes": 0,
        "helpful_voters": [],
        "report_count": 0,
        "reported_by": [],
        "is_visible": False,
        "created_at": now,
        "updated_at": now,
    }
    Review.model_validate(review)
    try:
        review["_id"] = _reviews().insert_one(review).inserted_id
    except DuplicateKeyError:
        raise Conflict("You have already reviewed this product")
    logger.info("Review %s submitted for product %s", review["_id"], payload.product_id)
    return public_review(review)


def review_eligibility(user: Optional[CurrentUser], product_id: str) -> dict:
    parse_object_id(product_id, "product")
    if user is None:
        return {"can_review": False, "reason": "not_authenticated"}
    has_paid_order = get_collection("order").find_one(
        {"user_id": user.id, "payment_status": "paid", "items.product_id": product_id}
    )
    if not has_paid_order:
        return {"can_review": False, "reason": "no_paid_order"}
    mine = _reviews().find_one({"user_id": user.id, "product_id": product_id})
    return {"can_review": mine is None, "my_review": public_review(mine) if mine else None}


# Moderation

def moderate(review_id: str, payload: ModerationRequest, admin: CurrentUser) -> dict:
    status = payload.status
    if status not in MODERATION_STATUSES:
        raise ValidationFailed("Valid moderation status is required")
    reason = (payload.reason or "").strip() or None
    if status in REASON_REQUIRED and not reason:
        raise ValidationFailed("Reason is required for rejection or flagging")
    if reason and len(reason) > MAX_REASON_LENGTH:
        raise ValidationFailed(f"Moderation reason cannot exceed {MAX_REASON_LENGTH} characters")

    review = _load(review_id)
    changes = {
        "moderation_status": status,
        "moderation_reason": reason,
        "moderated_by": admin.id,
        "moderated_at": utcnow(),
        "is_visible": status == "approved",
        "updated_at": utcnow(),
    }
    _reviews().update_one({"_id": review["_id"]}, {"$set": changes})
    review.update(changes)
    logger.info("Review %s moderated to %s by %s", review_id, status, admin.id)
    _refresh_quietly(review["product_id"])
    data = serialize_doc(review)
    data.pop("helpful_voters", None)
    return data


def report(review_id: str, user: CurrentUser, reason: Optional[str]) -> dict:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("Report reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationFailed(f"Report reason cannot exceed {MAX_REASON_LENGTH} characters")
    review = _load(review_id)
    if review["user_id"] == user.id:
        raise ValidationFailed("Cannot report your own review")

    result = _reviews().update_one(
        {"_id": review["_id"], "reported_by": {"$ne": user.id}},
        {"$addToSet": {"reported_by": user.id}, "$inc": {"report_count": 1}, "$set": {"updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise Conflict("You have already reported this review")

    review = _reviews().find_one({"_id": review["_id"]})
    flagged = False
    if review["report_count"] >= config.REVIEW_AUTO_FLAG_REPORTS and review["moderation_status"] != "flagged":
        changes = {
            "moderation_status": "flagged",
            "is_visible": False,
            "moderation_reason": f"Automatically flagged after {review['report_count']} reports",
            "updated_at": utcnow(),
        }
        _reviews().update_one({"_id": review["_id"]}, {"$set": changes})
        review.update(changes)
        flagged = True
        logger.info("Review %s auto-flagged after %d reports", review_id, review["report_count"])
        _refresh_quietly(review["product_id"])
    return {"report_count": review["report_count"], "flagged": flagged, "moderation_status": review["moderation_status"]}


def mark_helpful(review_id: str, user: CurrentUser) -> dict:
    review = _load(review_id)
    if review.get("moderation_status") != "approved" or not review.get("is_visible"):
        raise NotFound("Review not found")
    if review["user_id"] == user.id:
        raise ValidationFailed("Cannot vote on your own review")
    result = _reviews().update_one(
        {"_id": review["_id"], "helpful_voters": {"$ne": user.id}},
        {"$addToSet": {"helpful_voters": user.id}, "$inc": {"helpful_votes": 1}},
    )
    if result.modified_count == 0:
        raise Conflict("You have already marked this review as helpful")
    return {"helpful_votes": review.get("helpful_votes", 0) + 1}


# Listings

def _paginate(filter_q: dict, sort: str, page: int, limit: int, max_limit: int, render) -> dict:
    limit = max(1, min(limit, max_limit))
    page = max(1, page)
    total = _reviews().count_documents(filter_q)
    cursor = _reviews().find(filter_q).sort(SORTS.get(sort, SORTS["newest"])).skip((page - 1) * limit).limit(limit)
    return {
        "reviews": [render(r) for r in cursor],
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


def list_product_reviews(product_id: str, page: int = 1, limit: int = 10, sort: str = "newest", rating: Optional[int] = None, verified: Optional[bool] = None) -> dict:
    parse_object_id(product_id, "product")
    filter_q = {"product_id": product_id, "moderation_status": "approved", "is_visible": True}
    if rating:
        filter_q["rating"] = rating
    if verified is not None:
        filter_q["is_verified_purchase"] = verified
    data = _paginate(filter_q, sort, page, limit, MAX_PAGE_SIZE, public_review)
    data["stats"] = product_rating_stats(product_id)
    return data


def list_for_moderation(status: Optional[str] = "pending", sort: str = "newest", page: int = 1, limit: int = 20) -> dict:
    filter_q = {"moderation_status": status} if status and status != "all" else {}
    return _paginate(filter_q, sort, page, limit, MAX_MODERATION_PAGE_SIZE, serialize_doc)
