"""
MongoDB connection and document helpers

`db` is None when DATABASE_URL / DATABASE_NAME are not set; handlers then
answer with "Database not configured".
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands datetimes back naive; treat those as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def get_collection(name: str):
    if db is None:
        raise HTTPException(500, "Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    return str(get_collection(collection_name).insert_one(doc).inserted_id)


def parse_object_id(value: str, label: str = "") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        name = f"{label} ID" if label else "ID"
        raise HTTPException(400, f"Invalid {name} format")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return _serialize_value(doc)


def ensure_indexes() -> None:
    """Unique keys backing the one-account-per-email and one-review-per-product rules."""
    if db is None:
        return
    db["user"].create_index("email", unique=True)
    db["review"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)


ensure_indexes()
