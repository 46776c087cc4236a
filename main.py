import logging
import os
import re
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart as carts
import config
import database
import orders
import payments
import refunds
import reviews
import wishlist
from auth import CurrentUser, get_current_user, get_optional_user, require_admin
from cart import SESSION_COOKIE, CartOwner
from database import get_collection, parse_object_id, serialize_doc, utcnow
from errors import NotFound, ValidationFailed
from inventory import restock
from payments import PaystackClient, get_gateway
from schemas import (
    COLLECTIONS,
    AddressRequest,
    AdminOrderUpdateRequest,
    CartAddRequest,
    CartUpdateRequest,
    CreateOrderRequest,
    LoginRequest,
    ModerationRequest,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    PaymentInitializeRequest,
    PaymentVerifyRequest,
    Product as ProductSchema,
    ProductRequest,
    ProfileUpdateRequest,
    RefundRequestBody,
    RegisterRequest,
    ReportRequest,
    RestockRequest,
    ReviewRequest,
    StatusUpdateRequest,
    WishlistAddRequest,
)

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)

app = FastAPI(title="Fashion Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error rendering

@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = {"error": exc.detail}
    details = getattr(exc, "details", None)
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        details.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    return JSONResponse({"error": "Validation failed", "details": details}, status_code=400)


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# Cart owner

def get_cart_owner(request: Request, response: Response, current: Optional[CurrentUser] = Depends(get_optional_user)) -> CartOwner:
    if current:
        return CartOwner(user_id=current.id)
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        session_id = carts.new_session_id()
        response.set_cookie(
            SESSION_COOKIE,
            session_id,
            max_age=config.CART_TTL_DAYS * 24 * 60 * 60,
            httponly=True,
            samesite="lax",
            secure=config.is_production(),
        )
    return CartOwner(session_id=session_id)


@app.get("/")
def read_root():
    return {"message": "Fashion storefront backend is running"}


@app.get("/schema")
def get_schema():
    """Expose collection schemas for the database viewer."""
    return {
        "collections": [model.__name__.lower() for model in COLLECTIONS],
        "schemas": {model.__name__.lower(): model.model_json_schema() for model in COLLECTIONS},
    }


# Auth

@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    user = auth.register_user(payload)
    return {"message": "User registered successfully", "user": user}


@app.post("/api/auth/login")
def login(payload: LoginRequest, request: Request, response: Response):
    user = auth.authenticate(payload.email, payload.password)
    token = auth.issue_token(user)
    body = {**token.model_dump(), "user": auth.public_user(user)}
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        merged = carts.merge_guest_cart(session_id, str(user["_id"]))
        if merged:
            body["cart"] = merged
        response.delete_cookie(SESSION_COOKIE)
    return body


@app.get("/api/auth/me")
def me(current: CurrentUser = Depends(get_current_user)):
    return auth.get_profile(current)


@app.put("/api/auth/profile")
def update_profile(payload: ProfileUpdateRequest, current: CurrentUser = Depends(get_current_user)):
    user = auth.update_profile(current, payload)
    return {"message": "Profile updated successfully", "user": user}


@app.post("/api/auth/change-password")
def change_password(payload: PasswordChangeRequest, current: CurrentUser = Depends(get_current_user)):
    auth.change_password(current, payload)
    return {"message": "Password updated successfully"}


@app.post("/api/auth/reset-password")
def request_password_reset(payload: PasswordResetRequest):
    auth.request_password_reset(payload.email)
    return {"message": "If an account with that email exists, we have sent a password reset link."}


@app.post("/api/auth/reset-password/confirm")
def confirm_password_reset(payload: PasswordResetConfirmRequest):
    auth.reset_password(payload.token, payload.password)
    return {"message": "Password has been reset"}


@app.get("/api/auth/addresses")
def list_addresses(current: CurrentUser = Depends(get_current_user)):
    return auth.list_addresses(current)


@app.post("/api/auth/addresses", status_code=201)
def add_address(payload: AddressRequest, current: CurrentUser = Depends(get_current_user)):
    return auth.add_address(current, payload)


@app.delete("/api/auth/addresses/{address_id}")
def delete_address(address_id: str, current: CurrentUser = Depends(get_current_user)):
    return auth.delete_address(current, address_id)


@app.put("/api/auth/addresses/{address_id}/default")
def set_default_address(address_id: str, current: CurrentUser = Depends(get_current_user)):
    return auth.set_default_address(current, address_id)


# Catalog

@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort: Optional[str] = Query(None, description="price_asc|price_desc|rating_desc|newest"),
):
    filter_q = {"is_active": {"$ne": False}}
    if q:
        filter_q["searchable_text"] = {"$regex": re.escape(q.lower())}
    if category:
        filter_q["category"] = category
    if brand:
        filter_q["brand"] = brand
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        filter_q["price"] = price_filter

    sort_spec = {
        "price_asc": [("price", 1)],
        "price_desc": [("price", -1)],
        "rating_desc": [("rating", -1)],
    }.get(sort, [("created_at", -1)])

    products = get_collection("product")
    total = products.count_documents(filter_q)
    cursor = products.find(filter_q).sort(sort_spec).skip((page - 1) * limit).limit(limit)
    return {"items": [serialize_doc(p) for p in cursor], "page": page, "limit": limit, "total": total}


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = get_collection("product").find_one({"_id": parse_object_id(product_id, "product")})
    if not product or product.get("is_active") is False:
        raise NotFound("Product not found")
    return serialize_doc(product)


def _build_product(payload: ProductRequest, existing: Optional[dict] = None) -> dict:
    data = payload.model_dump()
    for variant in data["variants"]:
        variant["id"] = variant.get("id") or uuid.uuid4().hex
    if existing:
        for kept in ("rating", "review_count", "rating_distribution"):
            if kept in existing:
                data[kept] = existing[kept]
    try:
        product = ProductSchema(**data)
    except ValidationError as e:
        raise ValidationFailed("Invalid product", details=[err["msg"].removeprefix("Value error, ") for err in e.errors()])
    return product.model_dump()


@app.post("/api/admin/products", status_code=201)
def create_product(payload: ProductRequest, admin: CurrentUser = Depends(require_admin)):
    data = _build_product(payload)
    now = utcnow()
    data.update({"created_at": now, "updated_at": now})
    data["_id"] = get_collection("product").insert_one(data).inserted_id
    logger.info("Product %s created by %s", data["_id"], admin.id)
    return serialize_doc(data)


@app.put("/api/admin/products/{product_id}")
def update_product(product_id: str, payload: ProductRequest, admin: CurrentUser = Depends(require_admin)):
    products = get_collection("product")
    existing = products.find_one({"_id": parse_object_id(product_id, "product")})
    if not existing:
        raise NotFound("Product not found")
    data = _build_product(payload, existing)
    data.pop("stock_version", None)
    data["updated_at"] = utcnow()
    # Bumping the version makes in-flight reservations re-read the new counters.
    products.update_one({"_id": existing["_id"]}, {"$set": data, "$inc": {"stock_version": 1}})
    logger.info("Product %s updated by %s", product_id, admin.id)
    return serialize_doc(products.find_one({"_id": existing["_id"]}))


@app.post("/api/admin/products/{product_id}/restock")
def restock_product(product_id: str, payload: RestockRequest, admin: CurrentUser = Depends(require_admin)):
    product = restock(product_id, payload.quantity, payload.variant_id)
    logger.info("Product %s restocked with %d units by %s", product_id, payload.quantity, admin.id)
    return serialize_doc(product)


# Reviews

@app.get("/api/products/{product_id}/reviews")
def get_product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=reviews.MAX_PAGE_SIZE),
    sort: str = "newest",
    rating: Optional[int] = Query(None, ge=1, le=5),
    verified: Optional[bool] = None,
):
    return reviews.list_product_reviews(product_id, page, limit, sort, rating, verified)


@app.get("/api/products/{product_id}/reviews/eligibility")
def get_review_eligibility(product_id: str, current: Optional[CurrentUser] = Depends(get_optional_user)):
    return reviews.review_eligibility(current, product_id)


@app.post("/api/reviews", status_code=201)
def submit_review(payload: ReviewRequest, current: CurrentUser = Depends(get_current_user)):
    return {"message": "Review submitted successfully", "review": reviews.submit_review(current, payload)}


@app.post("/api/reviews/{review_id}/helpful")
def mark_review_helpful(review_id: str, current: CurrentUser = Depends(get_current_user)):
    return reviews.mark_helpful(review_id, current)


@app.post("/api/reviews/{review_id}/report")
def report_review(review_id: str, payload: ReportRequest, current: CurrentUser = Depends(get_current_user)):
    return reviews.report(review_id, current, payload.reason)


@app.get("/api/admin/reviews")
def list_reviews_for_moderation(
    status: Optional[str] = "pending",
    sort: str = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=reviews.MAX_MODERATION_PAGE_SIZE),
    admin: CurrentUser = Depends(require_admin),
):
    return reviews.list_for_moderation(status, sort, page, limit)


@app.put("/api/admin/reviews/{review_id}/moderate")
def moderate_review(review_id: str, payload: ModerationRequest, admin: CurrentUser = Depends(require_admin)):
    return reviews.moderate(review_id, payload, admin)


# Cart

@app.get("/api/cart")
def get_cart(owner: CartOwner = Depends(get_cart_owner)):
    return carts.get_cart(owner)


@app.post("/api/cart/add")
def add_to_cart(payload: CartAddRequest, owner: CartOwner = Depends(get_cart_owner)):
    return carts.add_item(owner, payload.product_id, payload.quantity, payload.variant_id)


@app.put("/api/cart/update")
def update_cart_item(payload: CartUpdateRequest, owner: CartOwner = Depends(get_cart_owner)):
    return carts.update_quantity(owner, payload.item_id, payload.quantity)


@app.delete("/api/cart/items/{item_id}")
def remove_cart_item(item_id: str, owner: CartOwner = Depends(get_cart_owner)):
    return carts.remove_item(owner, item_id)


@app.post("/api/cart/validate")
def validate_cart(owner: CartOwner = Depends(get_cart_owner)):
    return carts.validate_cart(owner)


@app.post("/api/cart/merge")
def merge_cart(request: Request, response: Response, current: CurrentUser = Depends(get_current_user)):
    merged = carts.merge_guest_cart(request.cookies.get(SESSION_COOKIE), current.id)
    response.delete_cookie(SESSION_COOKIE)
    return merged or {"cart": carts.get_cart(CartOwner(user_id=current.id)), "errors": []}


# Orders

@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, current: CurrentUser = Depends(get_current_user)):
    result = orders.create_order(payload, current)
    if not result.success:
        raise ValidationFailed("Failed to create order", details=result.errors)
    return {"message": "Order created successfully", "order": orders.order_summary(result.order)}


@app.get("/api/orders")
def list_my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50), current: CurrentUser = Depends(get_current_user)):
    return orders.list_user_orders(current.id, page, limit)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current: CurrentUser = Depends(get_current_user)):
    return serialize_doc(orders.get_order_for(current, order_id))


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateRequest, current: CurrentUser = Depends(get_current_user)):
    order = orders.get_order_for(current, order_id)
    order = orders.update_order_status(order, payload.status, current, cancel_reason=payload.cancel_reason)
    return {"message": "Order status updated", "order": serialize_doc(order)}


@app.post("/api/orders/{order_id}/refund-request")
def request_refund(order_id: str, payload: Optional[RefundRequestBody] = None, current: CurrentUser = Depends(get_current_user)):
    order = orders.load_order(order_id)
    return refunds.request_refund(order, current, payload.reason if payload else None)


@app.get("/api/orders/{order_id}/refund-request")
def get_refund_request(order_id: str, response: Response, current: CurrentUser = Depends(get_current_user)):
    response.headers["Cache-Control"] = "no-store"
    return refunds.get_refund_request(orders.load_order(order_id), current)


@app.get("/api/admin/orders")
def admin_list_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: CurrentUser = Depends(require_admin),
):
    return orders.list_orders(status, payment_status, page, limit)


@app.patch("/api/admin/orders/{order_id}")
def admin_update_order(order_id: str, payload: AdminOrderUpdateRequest, admin: CurrentUser = Depends(require_admin)):
    order = orders.admin_update_order(orders.load_order(order_id), payload, admin)
    return {"message": "Order updated", "order": serialize_doc(order)}


@app.post("/api/admin/orders/{order_id}/instant-refund")
def admin_instant_refund(order_id: str, admin: CurrentUser = Depends(require_admin), gateway: PaystackClient = Depends(get_gateway)):
    return {"message": "Instant refund processed", **refunds.instant_refund(order_id, admin, gateway)}


# Refunds

@app.get("/api/admin/refunds")
def admin_list_refunds(status: Optional[str] = "pending", admin: CurrentUser = Depends(require_admin)):
    return refunds.list_refund_requests(status)


@app.post("/api/admin/refunds/{request_id}/approve")
def admin_approve_refund(request_id: str, admin: CurrentUser = Depends(require_admin), gateway: PaystackClient = Depends(get_gateway)):
    return {"message": "Refund approved", **refunds.approve(request_id, admin, gateway)}


@app.post("/api/admin/refunds/{request_id}/mark-refunded")
def admin_mark_refunded(request_id: str, admin: CurrentUser = Depends(require_admin)):
    return {"message": "Refund marked as completed", **refunds.mark_refunded(request_id, admin)}


@app.post("/api/admin/refunds/{request_id}/reject")
def admin_reject_refund(request_id: str, admin: CurrentUser = Depends(require_admin)):
    return {"message": "Refund request rejected", **refunds.reject(request_id, admin)}


# Payments

@app.post("/api/payments/initialize")
def initialize_payment(payload: PaymentInitializeRequest, current: CurrentUser = Depends(get_current_user), gateway: PaystackClient = Depends(get_gateway)):
    if not payload.order_id:
        raise ValidationFailed("Order ID is required")
    order = orders.load_order(payload.order_id)
    return payments.initialize_payment(order, current, gateway, payload.callback_url, payload.channels)


@app.post("/api/payments/verify")
def verify_payment(payload: PaymentVerifyRequest, current: CurrentUser = Depends(get_current_user), gateway: PaystackClient = Depends(get_gateway)):
    return payments.verify_payment(payload.reference, current, gateway, payload.order_id)


@app.post("/api/payments/webhook")
async def payment_webhook(request: Request):
    body = await request.body()
    return await run_in_threadpool(payments.handle_webhook, body, request.headers.get(payments.SIGNATURE_HEADER))


# Wishlist

@app.get("/api/wishlist")
def get_wishlist(current: CurrentUser = Depends(get_current_user)):
    return wishlist.list_wishlist(current)


@app.post("/api/wishlist", status_code=201)
def add_wishlist_item(payload: WishlistAddRequest, current: CurrentUser = Depends(get_current_user)):
    return wishlist.add_to_wishlist(current, payload.product_id)


@app.delete("/api/wishlist/{item_id}")
def remove_wishlist_item(item_id: str, current: CurrentUser = Depends(get_current_user)):
    wishlist.remove_from_wishlist(current, item_id)
    return {"message": "Removed from wishlist"}


@app.get("/test")
def health_check():
    """Database connectivity and which of our collections exist yet."""
    report = {"backend": "running", "database": "not configured", "collections": []}
    if database.db is None:
        return report
    try:
        existing = set(database.db.list_collection_names())
    except PyMongoError:
        logger.exception("Database health check failed")
        report["database"] = "error"
        return report
    report["database"] = "connected"
    report["collections"] = [m.__name__.lower() for m in COLLECTIONS if m.__name__.lower() in existing]
    return report


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
