from datetime import datetime, timedelta, timezone

import jwt

from main import JWT_SECRET


def stock_of(db, product, variant_index=0):
    doc = db["products"].find_one({"_id": product["_id"]})
    return doc["variants"][variant_index]["stock"]


def points_of(db, user):
    return db["users"].find_one({"_id": user["_id"]})["loyaltyPoints"]


def issue_token(db, user):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
        "exp": now + timedelta(minutes=60),
        "iat": now,
    }
    token = jwt.encode(payload, JWT_SECRET, algorithm="HS256")
    db["users"].update_one({"_id": user["_id"]}, {"$set": {"token": token}})
    return token


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
