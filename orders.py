"""
Order lifecycle engine.

Creation reserves stock and debits loyalty points before the order is
written, and compensates both if a later step fails. Cancellation first claims
the order with a status-conditioned update; only the caller that wins the
claim returns stock and points, so compensation runs once per order.
"""
import math
import re
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import as_naive_utc, to_object_id, utcnow
from errors import (
    ForbiddenError,
    InfrastructureError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from inventory import Inventory, ROLLED_BACK as STOCK_ROLLED_BACK
from loyalty import LoyaltyPoints, ROLLED_BACK as POINTS_ROLLED_BACK
from schemas import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    OrderCreate,
    OrderStatus,
    PaymentStatus,
    ShippingInfo,
)

logger = structlog.get_logger(__name__)

DEFAULT_CANCEL_REASON = "Customer cancelled"
SORTABLE_FIELDS = {"createdAt", "updatedAt", "totalAmount", "orderNumber", "status"}
MONEY_TOLERANCE = 0.01


def generate_order_number() -> str:
    return f"ORD{int(time.time() * 1000)}{secrets.randbelow(10 ** 6):06d}"


def _actor_id(value):
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _history_entry(status: str, note: Optional[str], updated_by=None) -> Dict[str, Any]:
    return {"status": status, "note": note, "updatedBy": _actor_id(updated_by), "updatedAt": utcnow()}


def _validation_message(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid input")


class OrderService:
    def __init__(self, db, verify_totals: bool = False, order_number_attempts: int = 5):
        self.orders = db["orders"]
        self.inventory = Inventory(db)
        self.loyalty = LoyaltyPoints(db)
        self.verify_totals = verify_totals
        self.order_number_attempts = order_number_attempts

    # Creation

    def create_order(self, payload: Union[OrderCreate, Dict[str, Any]]) -> Dict[str, Any]:
        if not isinstance(payload, OrderCreate):
            try:
                payload = OrderCreate.model_validate(payload)
            except PydanticValidationError as exc:
                raise ValidationError(_validation_message(exc))

        self._check_order(payload)
        user_id = to_object_id(payload.user_id, "userId") if payload.user_id else None
        items = [self._item_document(item) for item in payload.items]
        order_number = self._allocate_order_number()

        self.inventory.reserve(order_number, items)
        try:
            if user_id is not None:
                self.loyalty.debit(user_id, payload.loyalty_points_used, order_number)
        except Exception:
            self.inventory.release(order_number, items, reason=STOCK_ROLLED_BACK)
            raise

        now = utcnow()
        order = payload.model_dump(by_alias=True, exclude={"items", "user_id"})
        order.update({
            "orderNumber": order_number,
            "userId": user_id,
            "items": items,
            "paymentStatus": PaymentStatus.PENDING.value,
            "paidAt": None,
            "status": OrderStatus.PENDING.value,
            "statusHistory": [_history_entry(OrderStatus.PENDING.value, "Order created")],
            "createdAt": now,
            "updatedAt": now,
        })

        try:
            order["_id"] = self.orders.insert_one(order).inserted_id
        except Exception as exc:
            logger.error("Order insert failed, compensating", order_number=order_number, error=str(exc))
            if user_id is not None:
                self.loyalty.credit(user_id, payload.loyalty_points_used, order_number, reason=POINTS_ROLLED_BACK)
            self.inventory.release(order_number, items, reason=STOCK_ROLLED_BACK)
            if isinstance(exc, DuplicateKeyError):
                raise InfrastructureError(f"Order number {order_number} is already taken")
            raise

        logger.info(
            "Order created",
            order_id=str(order["_id"]),
            order_number=order_number,
            items=len(items),
            total_amount=order["totalAmount"],
        )
        return order

    def _check_order(self, payload: OrderCreate) -> None:
        for index, item in enumerate(payload.items):
            if abs(item.subtotal - item.price * item.quantity) > MONEY_TOLERANCE:
                raise ValidationError(
                    f"items.{index}.subtotal must equal price x quantity ({item.price * item.quantity})"
                )

        if not self.verify_totals:
            return
        items_total = sum(item.subtotal for item in payload.items)
        if abs(items_total - payload.subtotal) > MONEY_TOLERANCE:
            raise ValidationError(f"subtotal must equal the sum of item subtotals ({items_total})")
        expected = (
            payload.subtotal + payload.shipping_fee - payload.discount - payload.loyalty_points_discount
        )
        if abs(expected - payload.total_amount) > MONEY_TOLERANCE:
            raise ValidationError(f"totalAmount does not match the order breakdown ({expected})")

    @staticmethod
    def _item_document(item) -> Dict[str, Any]:
        document = item.model_dump(by_alias=True)
        document["productId"] = to_object_id(item.product_id, "productId")
        document["variantId"] = to_object_id(item.variant_id, "variantId")
        return document

    def _allocate_order_number(self) -> str:
        for _ in range(self.order_number_attempts):
            order_number = generate_order_number()
            if self.orders.find_one({"orderNumber": order_number}, {"_id": 1}) is None:
                return order_number
        raise InfrastructureError("Could not allocate a unique order number")

    # Reads

    def get_order(self, order_id) -> Dict[str, Any]:
        order = self.orders.find_one({"_id": to_object_id(order_id, "order id")})
        if not order:
            raise NotFoundError("Order not found")
        return order

    def get_order_by_number(self, order_number: str) -> Dict[str, Any]:
        order = self.orders.find_one({"orderNumber": order_number})
        if not order:
            raise NotFoundError("Order not found")
        return order

    def list_orders(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        payment_method: Optional[str] = None,
        search: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        user_id=None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "createdAt",
        order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by}")

        query: Dict[str, Any] = {}
        if user_id is not None:
            query["userId"] = to_object_id(user_id, "userId")
        if status:
            query["status"] = status
        if payment_status:
            query["paymentStatus"] = payment_status
        if payment_method:
            query["paymentMethod"] = payment_method
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [
                {"orderNumber": pattern},
                {"customer.name": pattern},
                {"customer.email": pattern},
                {"customer.phone": pattern},
            ]
        if start_date or end_date:
            created = {}
            if start_date:
                created["$gte"] = as_naive_utc(start_date)
            if end_date:
                created["$lte"] = as_naive_utc(end_date)
            query["createdAt"] = created

        direction = ASCENDING if order == "asc" else DESCENDING
        cursor = self.orders.find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
        orders = list(cursor)
        total = self.orders.count_documents(query)
        pagination = {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        }
        return orders, pagination

    # Transitions

    def update_order_status(self, order_id, new_status: str, note: Optional[str] = None, updated_by=None):
        """Move an open order to another non-cancelled status and append it to the history."""
        try:
            new_status = OrderStatus(new_status).value
        except ValueError:
            raise ValidationError(f"Invalid status value: {new_status!r}")
        if new_status == OrderStatus.CANCELLED.value:
            raise InvalidStateError("Use the cancel operation to cancel an order")

        current = self.get_order(order_id)
        if current["status"] in TERMINAL_STATUSES:
            raise InvalidStateError(f"Cannot update a closed order ({current['status']})")

        updated = self.orders.find_one_and_update(
            {"_id": current["_id"], "status": {"$nin": list(TERMINAL_STATUSES)}},
            {
                "$set": {"status": new_status, "updatedAt": utcnow()},
                "$push": {
                    "statusHistory": _history_entry(
                        new_status, note or f"Order status updated to {new_status}", updated_by
                    )
                },
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidStateError("Cannot update a closed order")

        logger.info(
            "Order status updated",
            order_number=updated["orderNumber"],
            previous=current["status"],
            status=new_status,
        )
        return updated

    def cancel_order(self, order_id, requester_id=None, cancel_reason: Optional[str] = None):
        """
        Cancel a pending or confirmed order and return its stock and loyalty points.

        With a requester_id the caller must own the order; without one the call
        is treated as coming from staff or the system.
        """
        current = self.get_order(order_id)
        owner = current.get("userId")
        if requester_id is not None and owner is not None and str(owner) != str(requester_id):
            raise ForbiddenError("You do not have permission to cancel this order")
        if current["status"] not in CANCELLABLE_STATUSES:
            raise InvalidStateError(f"Cannot cancel an order that is {current['status']}")

        reason = cancel_reason or DEFAULT_CANCEL_REASON
        cancelled = self.orders.find_one_and_update(
            {"_id": current["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
            {
                "$set": {
                    "status": OrderStatus.CANCELLED.value,
                    "cancelReason": reason,
                    "updatedAt": utcnow(),
                },
                "$push": {"statusHistory": _history_entry(OrderStatus.CANCELLED.value, reason, requester_id)},
            },
            return_document=ReturnDocument.AFTER,
        )
        if cancelled is None:
            raise InvalidStateError("Order was updated concurrently and can no longer be cancelled")

        order_number = cancelled["orderNumber"]
        try:
            self.inventory.release(order_number, cancelled["items"])
            if owner is not None:
                self.loyalty.credit(owner, cancelled.get("loyaltyPointsUsed", 0), order_number)
        except Exception as exc:
            logger.error(
                "Order cancelled but refund incomplete, needs reconciliation",
                order_number=order_number,
                error=str(exc),
            )
            raise

        logger.info("Order cancelled", order_number=order_number, reason=reason)
        return cancelled

    def update_payment_status(self, order_id, payment_status: str):
        try:
            payment_status = PaymentStatus(payment_status).value
        except ValueError:
            raise ValidationError(f"Invalid payment status value: {payment_status!r}")

        update: Dict[str, Any] = {"paymentStatus": payment_status, "updatedAt": utcnow()}
        if payment_status == PaymentStatus.PAID.value:
            update["paidAt"] = update["updatedAt"]

        updated = self.orders.find_one_and_update(
            {"_id": to_object_id(order_id, "order id")},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundError("Order not found")
        logger.info("Payment status updated", order_number=updated["orderNumber"], payment_status=payment_status)
        return updated

    # Admin maintenance

    def update_shipping_info(self, order_id, shipping: ShippingInfo):
        current = self.get_order(order_id)
        merged = dict(current.get("shipping") or {})
        merged.update(shipping.model_dump(by_alias=True, exclude_none=True))

        updated = self.orders.find_one_and_update(
            {"_id": current["_id"]},
            {"$set": {"shipping": merged, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundError("Order not found")
        return updated

    def delete_order(self, order_id) -> None:
        result = self.orders.delete_one({"_id": to_object_id(order_id, "order id")})
        if result.deleted_count == 0:
            raise NotFoundError("Order not found")
        logger.warning("Order purged", order_id=str(order_id))
