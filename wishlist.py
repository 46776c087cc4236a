import logging
import uuid
from typing import List, Optional

from auth import CurrentUser
from database import as_utc, get_collection, parse_object_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from images import preset_image_url
from inventory import find_product

logger = logging.getLogger(__name__)


def _user(current: CurrentUser) -> dict:
    user = get_collection("user").find_one({"_id": parse_object_id(current.id, "user")}, {"wishlist": 1})
    if not user:
        raise NotFound("User not found")
    return user


def _card(entry: dict, product: dict) -> dict:
    images = product.get("images") or []
    return {
        "id": entry["id"],
        "product_id": entry["product_id"],
        "added_at": as_utc(entry["added_at"]).isoformat(),
        "name": product.get("name"),
        "price": product.get("price"),
        "brand": product.get("brand"),
        "image": preset_image_url(images[0], "card", width=400) if images else None,
        "rating": product.get("rating", 0),
        "in_stock": product.get("inventory", 0) > 0,
    }


def list_wishlist(current: CurrentUser) -> List[dict]:
    items = []
    for entry in _user(current).get("wishlist", []):
        product = find_product(entry["product_id"])
        if product and product.get("is_active", True):
            items.append(_card(entry, product))
    return items


def add_to_wishlist(current: CurrentUser, product_id: Optional[str]) -> dict:
    if not product_id:
        raise ValidationFailed("Product ID is required")
    product = find_product(product_id)
    if not product:
        raise NotFound("Product not found")
    entry = {"id": uuid.uuid4().hex, "product_id": product_id, "added_at": utcnow()}
    result = get_collection("user").update_one(
        {"_id": parse_object_id(current.id, "user"), "wishlist.product_id": {"$ne": product_id}},
        {"$push": {"wishlist": entry}},
    )
    if result.modified_count == 0:
        raise Conflict("Product already in wishlist")
    logger.info("User %s added %s to wishlist", current.id, product_id)
    return _card(entry, product)


def remove_from_wishlist(current: CurrentUser, item_id: str) -> None:
    result = get_collection("user").update_one(
        {"_id": parse_object_id(current.id, "user")},
        {"$pull": {"wishlist": {"id": item_id}}},
    )
    if result.modified_count == 0:
        raise NotFound("Wishlist item not found")
