"""
Order schemas

Field names are snake_case in Python and camelCase on the wire and in MongoDB
(the `orders` collection stores exactly what `model_dump(by_alias=True)` gives).
"""
from enum import Enum
from datetime import datetime
from typing import Annotated, List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value}
CANCELLABLE_STATUSES = {OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value}


class PaymentMethod(str, Enum):
    COD = "cod"
    MOMO = "momo"
    ZALOPAY = "zalopay"
    BANKING = "banking"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Carrier(str, Enum):
    GHN = "GHN"
    GHTK = "GHTK"
    VIETTEL_POST = "ViettelPost"
    OTHER = "Other"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)


# Snapshots embedded in an order

class Customer(CamelModel):
    name: NonEmptyStr
    email: EmailStr
    phone: NonEmptyStr


class ShippingAddress(CamelModel):
    recipient_name: NonEmptyStr
    phone: NonEmptyStr
    address: NonEmptyStr
    ward: NonEmptyStr
    district: NonEmptyStr
    city: NonEmptyStr


class OrderItem(CamelModel):
    product_id: NonEmptyStr
    variant_id: NonEmptyStr
    product_name: NonEmptyStr
    sku: NonEmptyStr
    color: NonEmptyStr
    size: Union[int, float]
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: float = Field(..., ge=0)
    image: Optional[str] = None


class ShippingInfo(CamelModel):
    carrier: Optional[Carrier] = None
    tracking_number: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None


# Requests

class OrderCreate(CamelModel):
    user_id: Optional[str] = None
    customer: Customer
    shipping_address: ShippingAddress
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    shipping_fee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    voucher_code: Optional[str] = None
    loyalty_points_used: int = Field(0, ge=0)
    loyalty_points_discount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    payment_method: PaymentMethod
    note: Optional[str] = None
