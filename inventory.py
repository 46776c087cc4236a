"""
Inventory ledger

Stock lives on the product document: `inventory` for plain products and
`variants[].inventory` for products with variants, where the product total
is kept equal to the variant sum. Every write is a compare-and-swap on the
product's `stock_version`, so two concurrent checkouts of the last unit
cannot both succeed.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from database import get_collection, utcnow
from errors import Conflict, InventoryError, NotFound

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


class Availability(BaseModel):
    available: bool
    max_quantity: int = 0
    error: Optional[str] = None


def find_product(product_id: str) -> Optional[dict]:
    if not product_id or not ObjectId.is_valid(product_id):
        return None
    return get_collection("product").find_one({"_id": ObjectId(product_id)})


def find_variant(product: dict, variant_id: Optional[str]) -> Optional[dict]:
    for variant in product.get("variants") or []:
        if variant.get("id") == variant_id:
            return variant
    return None


def unit_price(product: dict, variant: Optional[dict] = None) -> float:
    if variant and variant.get("price") is not None:
        return float(variant["price"])
    return float(product.get("price", 0))


def stock_level(product: dict, variant_id: Optional[str] = None) -> Optional[int]:
    """Current counter for the product or one of its variants, None when the variant is unknown."""
    if variant_id:
        variant = find_variant(product, variant_id)
        return None if variant is None else int(variant.get("inventory", 0))
    return int(product.get("inventory", 0))


def check_availability(product_id: str, quantity: int, variant_id: Optional[str] = None, product: Optional[dict] = None) -> Availability:
    product = product or find_product(product_id)
    if not product or not product.get("is_active", True):
        return Availability(available=False, error="Product not found")
    if not variant_id and product.get("variants"):
        return Availability(available=False, error="Product variant is required")
    stock = stock_level(product, variant_id)
    if stock is None:
        return Availability(available=False, error="Product variant not found")
    if stock <= 0:
        return Availability(available=False, max_quantity=0, error="Product is out of stock")
    if quantity > stock:
        return Availability(available=False, max_quantity=stock, error=f"Only {stock} items available in stock")
    return Availability(available=True, max_quantity=stock)


def _adjust(product_id: str, delta: int, variant_id: Optional[str] = None) -> dict:
    products = get_collection("product")
    for _ in range(MAX_CAS_ATTEMPTS):
        product = find_product(product_id)
        if not product:
            raise InventoryError("Product not found", product_id)
        variants = product.get("variants") or []
        if variant_id:
            variant = find_variant(product, variant_id)
            if variant is None:
                raise InventoryError("Product variant not found", product_id)
            current = int(variant.get("inventory", 0))
            if current + delta < 0:
                raise InventoryError(f"Insufficient inventory for {product.get('name')} variant", product_id)
            variant["inventory"] = current + delta
            changes = {"variants": variants, "inventory": sum(int(v.get("inventory", 0)) for v in variants)}
        else:
            current = int(product.get("inventory", 0))
            if current + delta < 0:
                raise InventoryError(f"Insufficient inventory for {product.get('name')}", product_id)
            changes = {"inventory": current + delta}

        changes["updated_at"] = utcnow()
        result = products.update_one(
            {"_id": product["_id"], "stock_version": product.get("stock_version")},
            {"$set": changes, "$inc": {"stock_version": 1}},
        )
        if result.modified_count == 1:
            product.update(changes)
            product["stock_version"] = (product.get("stock_version") or 0) + 1
            return product
        logger.debug("Stock version moved on product %s, retrying", product_id)
    raise InventoryError("Inventory is busy, please try again", product_id)


def reserve(product_id: str, quantity: int, variant_id: Optional[str] = None) -> dict:
    if quantity <= 0:
        raise InventoryError("Quantity must be positive", product_id)
    return _adjust(product_id, -quantity, variant_id)


def release(product_id: str, quantity: int, variant_id: Optional[str] = None) -> Optional[dict]:
    try:
        return _adjust(product_id, quantity, variant_id)
    except InventoryError as e:
        logger.warning("Could not release %s units of %s: %s", quantity, product_id, e.message)
        return None


def reserve_items(items: Iterable[dict]) -> None:
    """Reserve every line or none of them."""
    taken: List[dict] = []
    try:
        for item in items:
            reserve(item["product_id"], item["quantity"], item.get("variant_id"))
            taken.append(item)
    except (InventoryError, PyMongoError):
        for item in reversed(taken):
            release(item["product_id"], item["quantity"], item.get("variant_id"))
        raise


def restore_order_inventory(order: dict) -> bool:
    """Put an order's items back on the shelf, at most once per order.

    Returns False when the order had already been restored.
    """
    claimed = get_collection("order").update_one(
        {"_id": order["_id"], "inventory_restored": {"$ne": True}},
        {"$set": {"inventory_restored": True, "updated_at": utcnow()}},
    )
    if claimed.modified_count == 0:
        return False
    for item in order.get("items", []):
        try:
            release(item["product_id"], item["quantity"], item.get("variant_id"))
        except PyMongoError:
            logger.exception("Failed to restore inventory for product %s on order %s", item.get("product_id"), order["_id"])
    order["inventory_restored"] = True
    logger.info("Restored inventory for order %s", order.get("order_number", order["_id"]))
    return True


def restock(product_id: str, quantity: int, variant_id: Optional[str] = None) -> dict:
    try:
        return _adjust(product_id, quantity, variant_id)
    except InventoryError as e:
        if e.message.endswith("not found"):
            raise NotFound(e.message)
        raise Conflict(e.message)
