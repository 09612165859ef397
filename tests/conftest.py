import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from helpers import issue_token
from main import app
from orders import OrderService


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["orders_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def service(db):
    return OrderService(db)


@pytest.fixture
def product(db):
    """A sneaker with two variants; X-42 starts with 5 units."""
    doc = {
        "_id": ObjectId(),
        "name": "Court Classic",
        "slug": "court-classic",
        "variants": [
            {"_id": ObjectId(), "color": "White", "size": 42, "stock": 5, "sku": "X-42"},
            {"_id": ObjectId(), "color": "White", "size": 43, "stock": 1, "sku": "X-43"},
        ],
    }
    db["products"].insert_one(doc)
    return doc


@pytest.fixture
def customer(db):
    doc = {"_id": ObjectId(), "email": "an@example.com", "fullName": "Nguyen An", "role": "customer",
           "loyaltyPoints": 300}
    db["users"].insert_one(doc)
    return doc


@pytest.fixture
def make_payload(product):
    def _make(variant_index=0, quantity=2, **overrides):
        variant = product["variants"][variant_index]
        payload = {
            "customer": {"name": "Nguyen An", "email": "an@example.com", "phone": "0901234567"},
            "shippingAddress": {
                "recipientName": "Nguyen An",
                "phone": "0901234567",
                "address": "123 Le Loi",
                "ward": "Ward 7",
                "district": "District 3",
                "city": "Ho Chi Minh City",
            },
            "items": [{
                "productId": str(product["_id"]),
                "variantId": str(variant["_id"]),
                "productName": product["name"],
                "sku": variant["sku"],
                "color": variant["color"],
                "size": variant["size"],
                "price": 100.0,
                "quantity": quantity,
                "subtotal": 100.0 * quantity,
            }],
            "subtotal": 100.0 * quantity,
            "shippingFee": 10.0,
            "totalAmount": 100.0 * quantity + 10.0,
            "paymentMethod": "cod",
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def admin(db):
    doc = {"_id": ObjectId(), "email": "admin@example.com", "fullName": "Admin", "role": "admin"}
    db["users"].insert_one(doc)
    doc["token"] = issue_token(db, doc)
    return doc


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
