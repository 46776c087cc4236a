"""
Database Schemas for the fashion storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

Request bodies (the *Request models) accept both snake_case and camelCase
field names, so `productId` and `product_id` are the same field.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
PaymentMethod = Literal["card", "bank_transfer", "wallet", "cash_on_delivery"]
ModerationStatus = Literal["pending", "approved", "rejected", "flagged"]
RefundStatus = Literal["pending", "approved", "rejected"]

PAYMENT_METHODS = ("card", "bank_transfer", "wallet", "cash_on_delivery")


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# Collections

class Address(BaseModel):
    id: str
    recipient_name: str
    recipient_phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "Nigeria"
    is_default: bool = False


class WishlistItem(BaseModel):
    id: str
    product_id: str
    added_at: datetime


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lower-cased")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["user", "admin"] = "user"
    addresses: List[Address] = []
    wishlist: List[WishlistItem] = []
    is_active: bool = True
    last_login: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires: Optional[datetime] = None


class Variant(BaseModel):
    id: str
    size: Optional[str] = None
    color: Optional[str] = None
    sku: str
    price: Optional[float] = Field(None, ge=0, description="Overrides the product price")
    inventory: int = Field(0, ge=0)


class Product(BaseModel):
    name: str = Field(..., max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    price: float = Field(..., ge=0)
    images: List[str] = Field(..., min_length=1, max_length=10)
    category: str
    brand: str
    inventory: int = Field(0, ge=0)
    variants: List[Variant] = []
    rating: float = 0.0
    review_count: int = 0
    rating_distribution: Dict[str, int] = Field(default_factory=lambda: {str(i): 0 for i in range(1, 6)})
    searchable_text: str = ""
    stock_version: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def check_variants(self):
        skus = [v.sku for v in self.variants]
        if len(skus) != len(set(skus)):
            raise ValueError("All variant SKUs must be unique within a product")
        if self.variants:
            self.inventory = sum(v.inventory for v in self.variants)
        parts = [self.name, self.description or "", self.brand]
        for v in self.variants:
            parts.extend([v.size or "", v.color or ""])
        self.searchable_text = " ".join(p for p in parts if p).lower()
        return self


class CartItem(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1, le=99)
    price: float = Field(..., ge=0)
    name: str
    image: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None


class Cart(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItem] = []
    subtotal: float = 0.0
    item_count: int = 0
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_owner(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValueError("Cart must belong to either a user or a guest session")
        return self


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    product_image: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)


class ShippingAddress(BaseModel):
    recipient_name: str
    recipient_phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod
    paystack_reference: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    paid_at: Optional[datetime] = None
    shipping_address: ShippingAddress
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    inventory_restored: bool = False


class RefundRequest(BaseModel):
    order_id: str
    user_id: str
    reason: Optional[str] = Field(None, max_length=500)
    status: RefundStatus = "pending"
    resolution: Optional[Literal["gateway", "manual", "instant"]] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None


class Review(BaseModel):
    user_id: str
    user_name: str
    product_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=2000)
    is_verified_purchase: bool = False
    moderation_status: ModerationStatus = "pending"
    moderation_reason: Optional[str] = Field(None, max_length=500)
    moderated_by: Optional[str] = None
    moderated_at: Optional[datetime] = None
    helpful_votes: int = 0
    helpful_voters: List[str] = []
    report_count: int = 0
    reported_by: List[str] = []
    is_visible: bool = False


class Notification(BaseModel):
    kind: str
    recipient: str
    data: Dict[str, Any] = {}
    status: Literal["queued", "sent", "failed"] = "queued"
    send_after: datetime


COLLECTIONS = (User, Product, Cart, Order, RefundRequest, Review, Notification)


# Request bodies

class RegisterRequest(RequestModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(RequestModel):
    email: str
    password: str


class ProfileUpdateRequest(RequestModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class PasswordChangeRequest(RequestModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class PasswordResetRequest(RequestModel):
    email: Optional[str] = None


class PasswordResetConfirmRequest(RequestModel):
    token: Optional[str] = None
    password: Optional[str] = None


class AddressRequest(RequestModel):
    recipient_name: str = Field(..., min_length=1)
    recipient_phone: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "Nigeria"
    is_default: bool = False


class VariantRequest(RequestModel):
    id: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    sku: str
    price: Optional[float] = Field(None, ge=0)
    inventory: int = Field(0, ge=0)


class ProductRequest(RequestModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    images: List[str]
    category: str
    brand: str
    inventory: int = Field(0, ge=0)
    variants: List[VariantRequest] = []
    is_active: bool = True


class RestockRequest(RequestModel):
    quantity: int = Field(..., ge=1)
    variant_id: Optional[str] = None


class CartAddRequest(RequestModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: Optional[int] = None


class CartUpdateRequest(RequestModel):
    item_id: Optional[str] = None
    quantity: Optional[int] = None


class OrderItemRequest(RequestModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1, le=99)


class ShippingAddressRequest(RequestModel):
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class CreateOrderRequest(RequestModel):
    cart_id: Optional[str] = None
    items: Optional[List[OrderItemRequest]] = None
    shipping_address: Optional[ShippingAddressRequest] = None
    payment_method: Optional[str] = None
    tax: float = 0
    shipping: float = 0
    discount: float = 0


class StatusUpdateRequest(RequestModel):
    status: str
    cancel_reason: Optional[str] = None


class AdminOrderUpdateRequest(RequestModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    cancel_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class PaymentInitializeRequest(RequestModel):
    order_id: Optional[str] = None
    callback_url: Optional[str] = None
    channels: Optional[List[str]] = None


class PaymentVerifyRequest(RequestModel):
    reference: str
    order_id: Optional[str] = None


class RefundRequestBody(RequestModel):
    reason: Optional[str] = None


class ReviewRequest(RequestModel):
    product_id: Optional[str] = None
    rating: Optional[float] = None
    title: Optional[str] = None
    comment: Optional[str] = None


class ModerationRequest(RequestModel):
    status: Optional[str] = None
    reason: Optional[str] = None


class ReportRequest(RequestModel):
    reason: Optional[str] = None


class WishlistAddRequest(RequestModel):
    product_id: Optional[str] = None
