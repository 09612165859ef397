"""
Loyalty point coordination for orders.

Balances live on `users.loyaltyPoints`. Each debit/credit made for an order is
recorded in `loyalty_transactions` (unique on orderNumber + reason) before the
balance moves, so it is applied at most once.
"""

import structlog
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import InsufficientPointsError, NotFoundError

logger = structlog.get_logger(__name__)

DEBITED = "order_created"
CREDITED = "order_cancelled"
ROLLED_BACK = "order_rolled_back"


class LoyaltyPoints:
    def __init__(self, db):
        self.users = db["users"]
        self.transactions = db["loyalty_transactions"]

    def debit(self, user_id, points: int, order_number: str) -> None:
        if points <= 0:
            return
        if not self._record(user_id, -points, order_number, DEBITED):
            return

        result = self.users.update_one(
            {"_id": user_id, "loyaltyPoints": {"$gte": points}},
            {"$inc": {"loyaltyPoints": -points}},
        )
        if result.modified_count == 1:
            return

        self.transactions.delete_one({"orderNumber": order_number, "reason": DEBITED})
        user = self.users.find_one({"_id": user_id}, {"loyaltyPoints": 1})
        if not user:
            raise NotFoundError(f"Account {user_id} not found")
        raise InsufficientPointsError(
            f"Insufficient loyalty points: requested {points}, available {user.get('loyaltyPoints', 0)}"
        )

    def credit(self, user_id, points: int, order_number: str, reason: str = CREDITED) -> None:
        if points <= 0:
            return
        if not self._record(user_id, points, order_number, reason):
            return

        result = self.users.update_one({"_id": user_id}, {"$inc": {"loyaltyPoints": points}})
        if result.modified_count == 0:
            logger.warning(
                "Loyalty credit found no account",
                order_number=order_number,
                user_id=str(user_id),
                points=points,
            )

    def _record(self, user_id, points: int, order_number: str, reason: str) -> bool:
        try:
            self.transactions.insert_one({
                "orderNumber": order_number,
                "userId": user_id,
                "points": points,
                "reason": reason,
                "createdAt": utcnow(),
            })
        except DuplicateKeyError:
            logger.info("Loyalty transaction already applied", order_number=order_number, reason=reason)
            return False
        return True
