import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import jwt
import structlog
from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from database import ensure_indexes, get_db, serialize_document
from errors import OrderError
from orders import OrderService
from schemas import OrderCreate, ShippingInfo

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
        logger.info("Database indexes ready", database=database.DATABASE_NAME)
    yield


# App setup
app = FastAPI(title="Order API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
VERIFY_ORDER_TOTALS = os.getenv("VERIFY_ORDER_TOTALS", "").lower() in ("1", "true", "yes")
security = HTTPBearer(auto_error=False)


# Utilities
def envelope(status_code: int, **data) -> dict:
    return {"status": status_code, "data": data}


def error_response(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    data = {"message": message}
    if error:
        data["error"] = error
    return JSONResponse(status_code=status_code, content={"status": status_code, "data": data})


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired. Please login again")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _authenticate(credentials: Optional[HTTPAuthorizationCredentials], db) -> Optional[dict]:
    if credentials is None:
        return None
    token = credentials.credentials
    uid = decode_token(token).get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    # Only the token last issued to the account is accepted.
    user = db["users"].find_one({"_id": ObjectId(uid), "token": token})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token. Please login again")
    return user


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db=Depends(get_db)):
    return _authenticate(credentials, db)


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db=Depends(get_db)):
    user = _authenticate(credentials, db)
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in. Please login to continue")
    return user


def get_admin_user(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied. Admin permission required")
    return user


def get_order_service(db=Depends(get_db)) -> OrderService:
    return OrderService(db, verify_totals=VERIFY_ORDER_TOTALS)


# Error envelope
@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    logger.warning("Request failed", path=request.url.path, error=exc.code, message=exc.message)
    return error_response(exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid request")
    logger.warning("Request rejected", path=request.url.path, message=message)
    return error_response(400, message, "validation_error")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = {401: "unauthorized", 403: "forbidden", 404: "not_found"}.get(exc.status_code)
    return error_response(exc.status_code, str(exc.detail), error)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error", path=request.url.path)
    return error_response(500, "Database unavailable", "infrastructure_error")


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return error_response(500, "Server error", "server_error")


# Request bodies
class CancelOrderRequest(BaseModel):
    cancelReason: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: str
    note: Optional[str] = None


class PaymentStatusRequest(BaseModel):
    paymentStatus: str


# Health
@app.get("/")
def root():
    return {"message": "Order API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Orders (public / customer)
@app.post("/orders")
def create_order(payload: OrderCreate, service: OrderService = Depends(get_order_service)):
    order = service.create_order(payload)
    return envelope(200, message="Order created successfully", order=serialize_document(order))


@app.get("/orders/my_orders")
def my_orders(status: Optional[str] = None, page: int = 1, limit: int = 20,
              user: dict = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    orders, pagination = service.list_orders(user_id=user["_id"], status=status, page=page, limit=limit)
    return envelope(200, orders=serialize_document(orders), pagination=pagination)


@app.get("/orders/number/{order_number}")
def get_order_by_number(order_number: str, service: OrderService = Depends(get_order_service)):
    return envelope(200, order=serialize_document(service.get_order_by_number(order_number)))


@app.get("/orders/{order_id}")
def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    return envelope(200, order=serialize_document(service.get_order(order_id)))


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelOrderRequest] = None,
                 user: Optional[dict] = Depends(get_optional_user),
                 service: OrderService = Depends(get_order_service)):
    if user is None or user.get("role") == "admin":
        requester_id = None
    else:
        requester_id = user["_id"]
    reason = payload.cancelReason if payload else None
    order = service.cancel_order(order_id, requester_id=requester_id, cancel_reason=reason)
    return envelope(200, message="Order cancelled successfully", order=serialize_document(order))


# Orders (admin)
@app.get("/admin/orders")
def list_orders(status: Optional[str] = None, paymentStatus: Optional[str] = None,
                paymentMethod: Optional[str] = None, search: Optional[str] = None,
                startDate: Optional[datetime] = None, endDate: Optional[datetime] = None,
                page: int = 1, limit: int = 20, sortBy: str = "createdAt", order: str = "desc",
                admin: dict = Depends(get_admin_user), service: OrderService = Depends(get_order_service)):
    orders, pagination = service.list_orders(
        status=status,
        payment_status=paymentStatus,
        payment_method=paymentMethod,
        search=search,
        start_date=startDate,
        end_date=endDate,
        page=page,
        limit=limit,
        sort_by=sortBy,
        order=order,
    )
    return envelope(200, orders=serialize_document(orders), pagination=pagination)


@app.get("/admin/orders/user/{user_id}")
def list_user_orders(user_id: str, status: Optional[str] = None, page: int = 1, limit: int = 20,
                     admin: dict = Depends(get_admin_user), service: OrderService = Depends(get_order_service)):
    orders, pagination = service.list_orders(user_id=user_id, status=status, page=page, limit=limit)
    return envelope(200, orders=serialize_document(orders), pagination=pagination)


@app.put("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusRequest, admin: dict = Depends(get_admin_user),
                        service: OrderService = Depends(get_order_service)):
    order = service.update_order_status(order_id, payload.status, note=payload.note, updated_by=admin["_id"])
    return envelope(200, message="Order status updated successfully", order=serialize_document(order))


@app.put("/admin/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, payload: PaymentStatusRequest, admin: dict = Depends(get_admin_user),
                          service: OrderService = Depends(get_order_service)):
    order = service.update_payment_status(order_id, payload.paymentStatus)
    return envelope(200, message="Payment status updated successfully", order=serialize_document(order))


@app.put("/admin/orders/{order_id}/shipping")
def update_shipping_info(order_id: str, payload: ShippingInfo, admin: dict = Depends(get_admin_user),
                         service: OrderService = Depends(get_order_service)):
    order = service.update_shipping_info(order_id, payload)
    return envelope(200, message="Shipping info updated successfully", order=serialize_document(order))


@app.delete("/admin/orders/{order_id}")
def delete_order(order_id: str, admin: dict = Depends(get_admin_user),
                 service: OrderService = Depends(get_order_service)):
    service.delete_order(order_id)
    return envelope(200, message="Order deleted successfully")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
