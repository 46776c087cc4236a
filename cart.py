"""
Cart aggregate

A cart belongs to exactly one owner: a signed in user or a guest session
id kept in the `sessionId` cookie. Every mutation re-checks live stock and
recomputes `subtotal` and `item_count` before the cart is written back.
"""
import logging
import secrets
import time
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from pydantic import BaseModel

import config
from database import get_collection, serialize_doc, utcnow
from errors import NotFound, ValidationFailed
from inventory import check_availability, find_product, find_variant, stock_level, unit_price
from schemas import Cart

logger = logging.getLogger(__name__)

SESSION_COOKIE = "sessionId"
PRICE_TOLERANCE = 0.01


class CartOwner(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def query(self) -> dict:
        if self.user_id:
            return {"user_id": self.user_id}
        return {"session_id": self.session_id}


class CartValidation(BaseModel):
    is_valid: bool = True
    removed_items: List[dict] = []
    updated_items: List[dict] = []
    errors: List[str] = []


def new_session_id() -> str:
    return f"guest_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def empty_cart() -> dict:
    return {"items": [], "subtotal": 0.0, "item_count": 0}


def recalculate(cart: dict) -> dict:
    items = cart.get("items", [])
    cart["subtotal"] = round(sum(i["price"] * i["quantity"] for i in items), 2)
    cart["item_count"] = sum(i["quantity"] for i in items)
    return cart


def load_cart(owner: CartOwner) -> Optional[dict]:
    if not owner.user_id and not owner.session_id:
        return None
    return get_collection("cart").find_one(owner.query())


def save_cart(cart: dict) -> dict:
    recalculate(cart)
    Cart.model_validate(cart)
    now = utcnow()
    cart["updated_at"] = now
    cart["expires_at"] = now + timedelta(days=config.CART_TTL_DAYS)
    carts = get_collection("cart")
    if cart.get("_id") is None:
        cart["created_at"] = now
        cart["_id"] = carts.insert_one(cart).inserted_id
    else:
        carts.replace_one({"_id": cart["_id"]}, cart)
    return cart


def cart_snapshot(cart: Optional[dict]) -> dict:
    if not cart:
        return empty_cart()
    return serialize_doc(cart)


def _new_cart(owner: CartOwner) -> dict:
    return {"user_id": owner.user_id, "session_id": None if owner.user_id else owner.session_id, "items": []}


def _line_for(product: dict, variant: Optional[dict], quantity: int) -> dict:
    images = product.get("images") or []
    return {
        "id": uuid.uuid4().hex,
        "product_id": str(product["_id"]),
        "variant_id": variant.get("id") if variant else None,
        "quantity": quantity,
        "price": unit_price(product, variant),
        "name": product.get("name"),
        "image": images[0] if images else None,
        "size": variant.get("size") if variant else None,
        "color": variant.get("color") if variant else None,
    }


def _find_line(cart: dict, item_id: str) -> Optional[dict]:
    for line in cart.get("items", []):
        if line.get("id") == item_id:
            return line
    return None


def get_cart(owner: CartOwner) -> dict:
    return cart_snapshot(load_cart(owner))


def add_item(owner: CartOwner, product_id: Optional[str], quantity: Optional[int], variant_id: Optional[str] = None) -> dict:
    if not product_id or quantity is None:
        raise ValidationFailed("Product ID and quantity are required")
    if quantity < 1 or quantity > config.MAX_QUANTITY_PER_ITEM:
        raise ValidationFailed(f"Quantity must be between 1 and {config.MAX_QUANTITY_PER_ITEM}")

    product = find_product(product_id)
    if not product or not product.get("is_active", True):
        raise NotFound("Product not found")
    variant = None
    if variant_id:
        variant = find_variant(product, variant_id)
        if variant is None:
            raise NotFound("Product variant not found")

    availability = check_availability(product_id, quantity, variant_id, product=product)
    if not availability.available:
        raise ValidationFailed(availability.error)

    cart = load_cart(owner) or _new_cart(owner)
    existing = next(
        (i for i in cart["items"] if i["product_id"] == product_id and i.get("variant_id") == variant_id),
        None,
    )
    if existing:
        combined = existing["quantity"] + quantity
        if combined > config.MAX_QUANTITY_PER_ITEM:
            raise ValidationFailed(f"Cannot add more items. Maximum quantity per item is {config.MAX_QUANTITY_PER_ITEM}")
        if combined > availability.max_quantity:
            raise ValidationFailed(f"Cannot add more items. Only {availability.max_quantity} items available in stock")
        existing["quantity"] = combined
        existing["price"] = unit_price(product, variant)
    else:
        cart["items"].append(_line_for(product, variant, quantity))

    return cart_snapshot(save_cart(cart))


def update_quantity(owner: CartOwner, item_id: Optional[str], quantity: Optional[int]) -> dict:
    if not item_id or quantity is None:
        raise ValidationFailed("Item ID and quantity are required")
    if quantity < 0 or quantity > config.MAX_QUANTITY_PER_ITEM:
        raise ValidationFailed(f"Quantity must be between 0 and {config.MAX_QUANTITY_PER_ITEM}")

    cart = load_cart(owner)
    line = _find_line(cart, item_id) if cart else None
    if line is None:
        raise NotFound("Item not found in cart")

    if quantity == 0:
        cart["items"] = [i for i in cart["items"] if i["id"] != item_id]
    else:
        availability = check_availability(line["product_id"], quantity, line.get("variant_id"))
        if not availability.available:
            raise ValidationFailed(availability.error)
        line["quantity"] = quantity
    return cart_snapshot(save_cart(cart))


def remove_item(owner: CartOwner, item_id: str) -> dict:
    cart = load_cart(owner)
    if not cart or _find_line(cart, item_id) is None:
        raise NotFound("Item not found in cart")
    cart["items"] = [i for i in cart["items"] if i["id"] != item_id]
    return cart_snapshot(save_cart(cart))


def reconcile_items(items: List[dict]) -> Tuple[List[dict], CartValidation]:
    """Re-price and re-check lines against live products.

    Returns the surviving lines and a report of what was removed or changed.
    """
    result = CartValidation()
    valid = []
    for item in items:
        name = item.get("name")
        product = find_product(item["product_id"])
        if not product or not product.get("is_active", True):
            result.removed_items.append(item)
            result.errors.append(f'Product "{name}" is no longer available')
            continue

        variant = None
        if item.get("variant_id"):
            variant = find_variant(product, item["variant_id"])
            if variant is None:
                result.removed_items.append(item)
                result.errors.append(f'Variant for "{name}" is no longer available')
                continue

        stock = stock_level(product, item.get("variant_id"))
        if stock <= 0:
            result.removed_items.append(item)
            result.errors.append(f'"{name}" is out of stock')
            continue

        updated = dict(item)
        changed = False
        if updated["quantity"] > stock:
            updated["quantity"] = stock
            result.errors.append(f'Quantity for "{name}" reduced to {stock} (maximum available)')
            changed = True
        current_price = unit_price(product, variant)
        if abs(updated["price"] - current_price) > PRICE_TOLERANCE:
            updated["price"] = current_price
            result.errors.append(f'Price for "{name}" has been updated')
            changed = True
        if changed:
            result.updated_items.append(updated)
        valid.append(updated)

    result.is_valid = not result.errors
    return valid, result


def validate_cart(owner: CartOwner) -> dict:
    cart = load_cart(owner)
    if not cart:
        return {**CartValidation().model_dump(), "cart": empty_cart()}
    items, result = reconcile_items(cart.get("items", []))
    if not result.is_valid:
        cart["items"] = items
        save_cart(cart)
        logger.info("Cart %s reconciled: %d removed, %d updated", cart["_id"], len(result.removed_items), len(result.updated_items))
    return {**result.model_dump(), "cart": cart_snapshot(cart)}


def merge_guest_cart(session_id: Optional[str], user_id: str) -> Optional[dict]:
    """Fold a guest cart into the user's cart and drop the guest cart.

    Quantities for the same product and variant are summed, then clamped to
    live stock and the per-item cap. Returns None when there was nothing to
    merge.
    """
    if not session_id:
        return None
    carts = get_collection("cart")
    guest = carts.find_one({"session_id": session_id})
    if not guest:
        return None

    owner = CartOwner(user_id=user_id)
    cart = load_cart(owner) or _new_cart(owner)
    for item in guest.get("items", []):
        existing = next(
            (i for i in cart["items"] if i["product_id"] == item["product_id"] and i.get("variant_id") == item.get("variant_id")),
            None,
        )
        if existing:
            existing["quantity"] += item["quantity"]
        else:
            cart["items"].append(dict(item))
    for line in cart["items"]:
        line["quantity"] = min(line["quantity"], config.MAX_QUANTITY_PER_ITEM)

    items, result = reconcile_items(cart["items"])
    cart["items"] = items
    save_cart(cart)
    carts.delete_one({"_id": guest["_id"]})
    logger.info("Merged guest cart %s into cart of user %s", session_id, user_id)
    return {**result.model_dump(), "cart": cart_snapshot(cart)}
