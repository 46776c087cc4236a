import uuid
from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
from auth import create_access_token, get_password_hash
from database import utcnow
from main import app
from payments import get_gateway

PASSWORD = "Secret1!"
_PASSWORD_HASH = None


class FakeGateway:
    """Stands in for PaystackClient and records what it was asked to do."""

    def __init__(self):
        self.initialized = []
        self.refunds = []
        self.verify_result = {}

    def initialize_transaction(self, email, amount, reference, callback_url, metadata, channels):
        self.initialized.append({
            "email": email,
            "amount": amount,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
            "channels": channels,
        })
        return {
            "authorization_url": f"https://checkout.paystack.com/{reference}",
            "access_code": "access_123",
            "reference": reference,
        }

    def verify_transaction(self, reference):
        return dict(self.verify_result, reference=reference)

    def refund(self, reference, amount=None):
        self.refunds.append({"transaction": reference, "amount": amount})
        return {"status": "pending", "transaction": {"reference": reference}}


class StaleReads:
    """Collection whose lookups miss, as when a concurrent request inserts first."""

    def __init__(self, collection):
        self.collection = collection

    def find_one(self, *args, **kwargs):
        return None

    def __getattr__(self, name):
        return getattr(self.collection, name)


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    monkeypatch.setattr(config, "PAYSTACK_WEBHOOK_SECRET", "")
    monkeypatch.setattr(config, "APP_ENV", "development")
    return mock_db


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture
def client(db):
    with TestClient(app) as test_client:
        yield test_client


def _password_hash():
    global _PASSWORD_HASH
    if _PASSWORD_HASH is None:
        _PASSWORD_HASH = get_password_hash(PASSWORD)
    return _PASSWORD_HASH


@pytest.fixture
def make_user(db):
    def _make(email=None, name="Ada Lovelace", role="user"):
        now = utcnow()
        doc = {
            "name": name,
            "email": email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            "phone": None,
            "password_hash": _password_hash(),
            "role": role,
            "addresses": [],
            "wishlist": [],
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        token = create_access_token({"sub": str(doc["_id"]), "role": role})
        doc["headers"] = {"Authorization": f"Bearer {token}"}
        doc["id"] = str(doc["_id"])
        return doc

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(name="Store Admin", role="admin")


@pytest.fixture
def make_product(db):
    def _make(name="Linen Shirt", price=5000.0, inventory=10, variants=None, brand="Adire", category="shirts"):
        variants = [
            {"id": v.get("id", uuid.uuid4().hex), "sku": v.get("sku", uuid.uuid4().hex[:8]), "size": v.get("size"),
             "color": v.get("color"), "price": v.get("price"), "inventory": v.get("inventory", 0)}
            for v in (variants or [])
        ]
        now = utcnow()
        doc = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "images": [f"https://res.cloudinary.com/demo/image/upload/v1/{uuid.uuid4().hex}.jpg"],
            "category": category,
            "brand": brand,
            "inventory": sum(v["inventory"] for v in variants) if variants else inventory,
            "variants": variants,
            "rating": 0.0,
            "review_count": 0,
            "searchable_text": name.lower(),
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        return doc

    return _make


@pytest.fixture
def make_order(db):
    def _make(owner, product, quantity=1, status="pending", payment_status="pending", paid_hours_ago=None, reference=None, variant_id=None):
        now = utcnow()
        price = product["price"]
        doc = {
            "order_number": f"ORD-{now:%Y%m%d}-{uuid.uuid4().int % 10 ** 6:06d}",
            "user_id": owner["id"],
            "items": [{
                "product_id": product["id"],
                "variant_id": variant_id,
                "product_name": product["name"],
                "product_image": product["images"][0],
                "quantity": quantity,
                "unit_price": price,
                "total_price": price * quantity,
            }],
            "subtotal": price * quantity,
            "tax": 0,
            "shipping": 0,
            "discount": 0,
            "total": price * quantity,
            "status": status,
            "payment_status": payment_status,
            "payment_method": "card",
            "paystack_reference": reference,
            "paid_at": now - timedelta(hours=paid_hours_ago) if paid_hours_ago is not None else None,
            "shipping_address": {
                "recipient_name": owner["name"],
                "recipient_phone": "+234 801 234 5678",
                "street": "12 Admiralty Way",
                "city": "Lagos",
                "state": "Lagos",
                "zip_code": "101233",
                "country": "Nigeria",
            },
            "inventory_restored": False,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["order"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        return doc

    return _make


@pytest.fixture
def address():
    return {
        "recipientName": "Ada Lovelace",
        "recipientPhone": "+234 801 234 5678",
        "street": "12 Admiralty Way",
        "city": "Lagos",
        "state": "Lagos",
        "zipCode": "101233",
        "country": "Nigeria",
    }
