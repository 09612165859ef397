"""
Variant stock coordination for orders.

Stock lives on `products.variants[].stock`. Every adjustment made on behalf of
an order is first written to `stock_movements`, whose unique index on
(orderNumber, productId, variantId, reason) makes a replayed adjustment a
no-op. Decrements are conditional so stock never goes below zero.
"""
from collections import OrderedDict
from typing import Dict, Iterable, List, Tuple

import structlog
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import InsufficientStockError, NotFoundError

logger = structlog.get_logger(__name__)

RESERVED = "order_created"
RELEASED = "order_cancelled"
ROLLED_BACK = "order_rolled_back"


def group_items(items: Iterable[dict]) -> List[dict]:
    """Collapse order lines that point at the same variant into one adjustment."""
    grouped: "OrderedDict[Tuple, dict]" = OrderedDict()
    for item in items:
        key = (item["productId"], item["variantId"])
        if key in grouped:
            grouped[key]["quantity"] += item["quantity"]
        else:
            grouped[key] = {
                "productId": item["productId"],
                "variantId": item["variantId"],
                "sku": item.get("sku"),
                "quantity": item["quantity"],
            }
    return list(grouped.values())


class Inventory:
    def __init__(self, db):
        self.products = db["products"]
        self.movements = db["stock_movements"]

    def reserve(self, order_number: str, items: Iterable[dict]) -> None:
        """Decrement stock for every line or for none of them."""
        reserved: List[dict] = []
        for line in group_items(items):
            try:
                if self._decrement(order_number, line):
                    reserved.append(line)
            except Exception:
                if reserved:
                    self.release(order_number, reserved, reason=ROLLED_BACK)
                raise

    def release(self, order_number: str, items: Iterable[dict], reason: str = RELEASED) -> None:
        for line in group_items(items):
            if not self._record(order_number, line, line["quantity"], reason):
                continue
            result = self.products.update_one(
                {"_id": line["productId"], "variants": {"$elemMatch": {"_id": line["variantId"]}}},
                {"$inc": {"variants.$.stock": line["quantity"]}},
            )
            if result.modified_count == 0:
                logger.warning(
                    "Stock release found no variant",
                    order_number=order_number,
                    product_id=str(line["productId"]),
                    variant_id=str(line["variantId"]),
                    quantity=line["quantity"],
                )

    def _decrement(self, order_number: str, line: dict) -> bool:
        if not self._record(order_number, line, -line["quantity"], RESERVED):
            return False

        result = self.products.update_one(
            {
                "_id": line["productId"],
                "variants": {"$elemMatch": {"_id": line["variantId"], "stock": {"$gte": line["quantity"]}}},
            },
            {"$inc": {"variants.$.stock": -line["quantity"]}},
        )
        if result.modified_count == 1:
            return True

        self.movements.delete_one(self._movement_key(order_number, line, RESERVED))
        variant = self._find_variant(line["productId"], line["variantId"])
        if variant is None:
            raise NotFoundError(f"Variant {line['variantId']} of product {line['productId']} not found")
        sku = variant.get("sku") or line.get("sku")
        raise InsufficientStockError(
            f"Insufficient stock for {sku}: requested {line['quantity']}, available {variant.get('stock', 0)}",
            sku=sku,
        )

    def _record(self, order_number: str, line: dict, quantity: int, reason: str) -> bool:
        entry = self._movement_key(order_number, line, reason)
        entry.update({"sku": line.get("sku"), "quantity": quantity, "createdAt": utcnow()})
        try:
            self.movements.insert_one(entry)
        except DuplicateKeyError:
            logger.info(
                "Stock movement already applied",
                order_number=order_number,
                product_id=str(line["productId"]),
                variant_id=str(line["variantId"]),
                reason=reason,
            )
            return False
        return True

    @staticmethod
    def _movement_key(order_number: str, line: dict, reason: str) -> Dict:
        return {
            "orderNumber": order_number,
            "productId": line["productId"],
            "variantId": line["variantId"],
            "reason": reason,
        }

    def _find_variant(self, product_id, variant_id):
        product = self.products.find_one({"_id": product_id})
        if not product:
            return None
        for variant in product.get("variants", []):
            if variant.get("_id") == variant_id:
                return variant
        return None
