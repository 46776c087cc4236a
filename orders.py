"""
Order state machine

An order moves along two axes: fulfilment `status` and `payment_status`.
Only the (status, payment_status) pairs listed in VALID_STATES can be
stored; every write in this module goes through OrderState first.
"""
import logging
import re
import secrets
from datetime import timedelta
from typing import Dict, List, Optional, Set

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from pymongo.errors import PyMongoError

from auth import CurrentUser
from database import as_utc, get_collection, parse_object_id, serialize_doc, utcnow
from errors import Conflict, Forbidden, InventoryError, NotFound, ValidationFailed
from inventory import check_availability, find_product, find_variant, reserve_items, release, restore_order_inventory, unit_price
from notifications import notify_user, order_summary_data, schedule_review_request
from schemas import PAYMENT_METHODS, AdminOrderUpdateRequest, CreateOrderRequest, Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "partially_refunded")
TERMINAL_STATUSES = {"delivered", "cancelled"}

VALID_STATES: Dict[str, Set[str]] = {
    "pending": {"pending", "paid", "failed", "refunded"},
    "confirmed": {"pending", "paid", "failed", "refunded"},
    "processing": {"pending", "paid", "refunded", "partially_refunded"},
    "shipped": {"pending", "paid", "refunded", "partially_refunded"},
    "delivered": {"paid", "refunded", "partially_refunded"},
    "cancelled": set(PAYMENT_STATUSES),
}

# What a customer may do to their own order.
USER_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"cancelled"},
    "confirmed": {"cancelled"},
}

PAYMENT_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"paid", "failed"},
    "failed": {"paid", "pending"},
    "paid": {"refunded", "partially_refunded"},
    "partially_refunded": {"refunded"},
    "refunded": set(),
}

ADDRESS_FIELDS = ("street", "city", "state", "zip_code", "country", "recipient_name", "recipient_phone")
PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-()]{7,20}$")
DEFAULT_DELIVERY_DAYS = 4


class OrderState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OrderStatus
    payment_status: PaymentStatus

    @model_validator(mode="after")
    def check_pair(self):
        if self.payment_status not in VALID_STATES[self.status]:
            raise ValueError(f"An order cannot be {self.status} with payment {self.payment_status}")
        return self


class OrderCreationResult(BaseModel):
    success: bool
    order: Optional[dict] = None
    errors: List[str] = []


def state_of(order: dict, status: Optional[str] = None, payment_status: Optional[str] = None) -> OrderState:
    try:
        return OrderState(status=status or order["status"], payment_status=payment_status or order["payment_status"])
    except ValidationError as e:
        raise ValidationFailed("Invalid order state", details=[err["msg"] for err in e.errors()])


def order_summary(order: dict) -> dict:
    return {
        "id": str(order["_id"]),
        "order_number": order.get("order_number"),
        "total": order.get("total"),
        "status": order.get("status"),
        "payment_status": order.get("payment_status"),
        "created_at": as_utc(order["created_at"]).isoformat() if order.get("created_at") else None,
    }


def generate_order_number() -> str:
    orders = get_collection("order")
    prefix = f"ORD-{utcnow():%Y%m%d}-"
    while True:
        candidate = f"{prefix}{secrets.randbelow(10 ** 6):06d}"
        if orders.count_documents({"order_number": candidate}, limit=1) == 0:
            return candidate


# Creation

def _validate_request(request: CreateOrderRequest) -> List[str]:
    errors = []
    address = request.shipping_address
    if address is None:
        errors.append("Shipping address is required")
    else:
        for field in ADDRESS_FIELDS:
            value = getattr(address, field)
            if not value or not value.strip():
                errors.append(f"Shipping address {field} is required")
        if address.recipient_phone and not PHONE_PATTERN.match(address.recipient_phone.strip()):
            errors.append("Shipping address recipient_phone is invalid")
    if request.payment_method not in PAYMENT_METHODS:
        errors.append("Valid payment method is required")
    for field in ("tax", "shipping", "discount"):
        if getattr(request, field) < 0:
            errors.append(f"{field.capitalize()} cannot be negative")
    if not request.cart_id and not request.items:
        errors.append("Either cartId or items must be provided")
    return errors


def _snapshot_line(product_id: str, variant_id: Optional[str], quantity: int, errors: List[str]) -> Optional[dict]:
    """Price a line from the live product, never from what the client sent."""
    product = find_product(product_id)
    if not product or not product.get("is_active", True):
        errors.append(f"Product {product_id} not found")
        return None
    variant = None
    if variant_id:
        variant = find_variant(product, variant_id)
        if variant is None:
            errors.append(f"Variant {variant_id} not found for product {product.get('name')}")
            return None
    price = unit_price(product, variant)
    images = product.get("images") or []
    return {
        "product_id": product_id,
        "variant_id": variant_id,
        "product_name": product.get("name"),
        "product_image": images[0] if images else None,
        "size": variant.get("size") if variant else None,
        "color": variant.get("color") if variant else None,
        "quantity": quantity,
        "unit_price": price,
        "total_price": round(price * quantity, 2),
    }


def _collect_items(request: CreateOrderRequest, user: CurrentUser, errors: List[str]):
    cart = None
    lines = []
    if request.cart_id:
        if ObjectId.is_valid(request.cart_id):
            cart = get_collection("cart").find_one({"_id": ObjectId(request.cart_id), "user_id": user.id})
        if not cart or not cart.get("items"):
            errors.append("Cart not found or empty")
            return None, []
        source = [(i["product_id"], i.get("variant_id"), i["quantity"]) for i in cart["items"]]
    else:
        source = [(i.product_id, i.variant_id, i.quantity) for i in request.items]
    for product_id, variant_id, quantity in source:
        line = _snapshot_line(product_id, variant_id, quantity, errors)
        if line:
            lines.append(line)
    return cart, lines


def create_order(request: CreateOrderRequest, user: CurrentUser) -> OrderCreationResult:
    errors = _validate_request(request)
    if errors:
        return OrderCreationResult(success=False, errors=errors)

    cart, items = _collect_items(request, user, errors)
    if errors:
        return OrderCreationResult(success=False, errors=errors)

    for item in items:
        availability = check_availability(item["product_id"], item["quantity"], item["variant_id"])
        if not availability.available:
            errors.append(f"{item['product_name']}: {availability.error}")
    if errors:
        return OrderCreationResult(success=False, errors=errors)

    subtotal = round(sum(i["total_price"] for i in items), 2)
    total = round(subtotal + request.tax + request.shipping - request.discount, 2)
    if total < 0:
        return OrderCreationResult(success=False, errors=["Discount cannot exceed the order value"])

    try:
        reserve_items(items)
    except InventoryError as e:
        return OrderCreationResult(success=False, errors=[e.message])

    now = utcnow()
    order = {
        "order_number": generate_order_number(),
        "user_id": user.id,
        "items": items,
        "subtotal": subtotal,
        "tax": request.tax,
        "shipping": request.shipping,
        "discount": request.discount,
        "total": total,
        "status": "pending",
        "payment_status": "pending",
        "payment_method": request.payment_method,
        "paystack_reference": None,
        "shipping_address": {f: getattr(request.shipping_address, f).strip() for f in ADDRESS_FIELDS},
        "inventory_restored": False,
        "created_at": now,
        "updated_at": now,
    }
    Order.model_validate(order)
    try:
        order["_id"] = get_collection("order").insert_one(order).inserted_id
    except PyMongoError:
        logger.exception("Failed to persist order for user %s", user.id)
        for item in items:
            release(item["product_id"], item["quantity"], item["variant_id"])
        return OrderCreationResult(success=False, errors=["Failed to create order"])

    if cart is not None:
        get_collection("cart").delete_one({"_id": cart["_id"]})

    logger.info("Created order %s for user %s, total %.2f", order["order_number"], user.id, total)
    notify_user("order_confirmation", user.id, order_summary_data(order))
    return OrderCreationResult(success=True, order=order)


# Lookups

def load_order(order_id: str) -> dict:
    order = get_collection("order").find_one({"_id": parse_object_id(order_id, "order")})
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_for(user: CurrentUser, order_id: str) -> dict:
    order = load_order(order_id)
    if order.get("user_id") != user.id and not user.is_admin:
        raise Forbidden("Unauthorized access to order")
    return order


def _page(filter_q: dict, page: int, limit: int) -> dict:
    orders = get_collection("order")
    total = orders.count_documents(filter_q)
    cursor = orders.find(filter_q).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {
        "orders": [serialize_doc(o) for o in cursor],
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


def list_user_orders(user_id: str, page: int = 1, limit: int = 10) -> dict:
    return _page({"user_id": user_id}, page, limit)


def list_orders(status: Optional[str] = None, payment_status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
    filter_q = {}
    if status:
        filter_q["status"] = status
    if payment_status:
        filter_q["payment_status"] = payment_status
    return _page(filter_q, page, limit)


# Transitions

def _write(order: dict, changes: dict, guard: dict) -> dict:
    changes["updated_at"] = utcnow()
    result = get_collection("order").update_one({"_id": order["_id"], **guard}, {"$set": changes})
    if result.matched_count == 0:
        raise Conflict("Order was updated by another request, please retry")
    order.update(changes)
    return order


def _status_changes(
    order: dict,
    status: str,
    actor: CurrentUser,
    cancel_reason: Optional[str] = None,
    tracking_number: Optional[str] = None,
    estimated_delivery=None,
) -> dict:
    """Check a status move and return the fields it sets; empty for an admin no-op."""
    current = order["status"]
    if status not in ORDER_STATUSES:
        raise ValidationFailed("Invalid order status")
    if status == current:
        if not actor.is_admin:
            raise ValidationFailed("Invalid status transition")
        return {}
    if actor.is_admin:
        if current in TERMINAL_STATUSES:
            raise ValidationFailed(f"Order is already {current}")
    elif status not in USER_TRANSITIONS.get(current, set()):
        raise ValidationFailed("Invalid status transition")
    if status == "cancelled" and not (cancel_reason or "").strip():
        raise ValidationFailed("Cancel reason is required when cancelling an order")

    now = utcnow()
    changes = {"status": status}
    if status == "cancelled":
        changes["cancelled_at"] = now
        changes["cancel_reason"] = cancel_reason.strip()
    elif status == "shipped":
        if tracking_number:
            changes["tracking_number"] = tracking_number
        changes["estimated_delivery"] = estimated_delivery or now + timedelta(days=DEFAULT_DELIVERY_DAYS)
    elif status == "delivered":
        changes["delivered_at"] = now
    return changes


def _check_payment_change(order: dict, payment_status: str) -> None:
    current = order["payment_status"]
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationFailed("Invalid payment status")
    if payment_status not in PAYMENT_TRANSITIONS.get(current, set()):
        raise ValidationFailed(f"Cannot change payment status from {current} to {payment_status}")


def _after_status_change(order: dict, previous: str, actor: CurrentUser) -> None:
    status = order["status"]
    logger.info("Order %s moved %s -> %s by %s", order.get("order_number"), previous, status, actor.id)
    if status == "cancelled":
        try:
            restore_order_inventory(order)
        except PyMongoError:
            logger.exception("Inventory restoration failed for order %s", order["_id"])
    notify_user("order_status", order["user_id"], order_summary_data(order))
    if status == "delivered":
        schedule_review_request(order)


def update_order_status(
    order: dict,
    status: str,
    actor: CurrentUser,
    cancel_reason: Optional[str] = None,
    tracking_number: Optional[str] = None,
    estimated_delivery=None,
) -> dict:
    current = order["status"]
    changes = _status_changes(order, status, actor, cancel_reason, tracking_number, estimated_delivery)
    if not changes:
        return order
    state_of(order, status=status)
    _write(order, changes, {"status": current})
    _after_status_change(order, current, actor)
    return order


def set_payment_status(order: dict, payment_status: str, status: Optional[str] = None, **fields) -> dict:
    """Move the payment axis, optionally together with the fulfilment status."""
    current = order["payment_status"]
    _check_payment_change(order, payment_status)
    state_of(order, status=status, payment_status=payment_status)

    changes = {"payment_status": payment_status, **fields}
    guard = {"payment_status": current}
    if status and status != order["status"]:
        changes["status"] = status
        guard["status"] = order["status"]
    _write(order, changes, guard)
    logger.info("Order %s payment %s -> %s", order.get("order_number"), current, payment_status)
    return order


def admin_update_order(order: dict, payload: AdminOrderUpdateRequest, admin: CurrentUser) -> dict:
    """Apply both axes of an admin edit in one guarded write, after checking all of it."""
    current = order["status"]
    current_payment = order["payment_status"]
    changes = {}
    guard = {}
    if payload.status:
        changes.update(_status_changes(
            order,
            payload.status,
            admin,
            cancel_reason=payload.cancel_reason,
            tracking_number=payload.tracking_number,
            estimated_delivery=payload.estimated_delivery,
        ))
        if "status" in changes:
            guard["status"] = current
    if payload.payment_status and payload.payment_status != current_payment:
        _check_payment_change(order, payload.payment_status)
        changes["payment_status"] = payload.payment_status
        guard["payment_status"] = current_payment
    state_of(order, status=changes.get("status"), payment_status=changes.get("payment_status"))

    if payload.tracking_number and order.get("tracking_number") != payload.tracking_number:
        changes["tracking_number"] = payload.tracking_number
    if payload.estimated_delivery and not payload.status:
        changes["estimated_delivery"] = payload.estimated_delivery
    if not changes:
        return order

    _write(order, changes, guard)
    if "payment_status" in changes:
        logger.info("Order %s payment %s -> %s", order.get("order_number"), current_payment, changes["payment_status"])
    if "status" in changes:
        _after_status_change(order, current, admin)
    return order
