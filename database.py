"""
MongoDB access for the order API.

The client is created once at import from DATABASE_URL / DATABASE_NAME. When
either is missing `db` stays None and get_db() reports the store as
unavailable instead of failing at startup.
"""
import os
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import InfrastructureError, ValidationError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL and DATABASE_NAME else None
db = client[DATABASE_NAME] if client is not None else None


def get_db():
    if db is None:
        raise InfrastructureError("Database is not configured")
    return db


def ensure_indexes(database) -> None:
    database["orders"].create_index("orderNumber", unique=True)
    database["orders"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database["stock_movements"].create_index(
        [("orderNumber", ASCENDING), ("productId", ASCENDING), ("variantId", ASCENDING), ("reason", ASCENDING)],
        unique=True,
    )
    database["loyalty_transactions"].create_index(
        [("orderNumber", ASCENDING), ("reason", ASCENDING)],
        unique=True,
    )


def to_object_id(value: Any, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {field}: {value!r}")
    return ObjectId(value)


def serialize_document(value: Any) -> Any:
    """Make a MongoDB document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(value, dict):
        return {("id" if k == "_id" else k): serialize_document(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_document(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    return value


def utcnow() -> datetime:
    # BSON dates carry no zone; keep everything naive UTC so stored and queried values compare.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
