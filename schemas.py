"""
Database Schemas for the Clothing Storefront

Each Pydantic model represents a collection in MongoDB. The collection name is the
lowercase of the class name (e.g., User -> "user", CouponUsage -> "coupon_usage").
Money fields are integer minor units (paise).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    COD = "COD"
    ONLINE = "ONLINE"
    UPI = "UPI"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    id: Optional[str] = None
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field(Role.CUSTOMER, description="CUSTOMER or ADMIN")
    is_active: bool = Field(True, description="Whether user is active")


class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    id: Optional[str] = None
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: int = Field(..., ge=0, description="Price in paise")
    stock: int = Field(0, ge=0, description="Units available")
    category: str = Field(..., description="Product category")
    images: List[ProductImage] = Field(default_factory=list)
    is_active: bool = Field(True, description="Whether product is listed")


class StockAndPrice(BaseModel):
    product_id: str
    name: str
    stock: int
    price: int


class Address(BaseModel):
    """
    Addresses collection schema
    Collection name: "address"
    """
    id: Optional[str] = None
    user_id: str
    full_name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"
    is_default: bool = False


class CartItem(BaseModel):
    """
    One line of a shopping cart
    Collection name: "cart" (one document per user_id holding `items`)
    """
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: int = Field(..., ge=0, description="Unit price frozen at purchase time")
    size: Optional[str] = None
    color: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"

    `shipping_address` is a snapshot of the address at checkout; `address_id`
    is never changed after creation.
    """
    id: Optional[str] = None
    order_number: str
    user_id: str
    address_id: str
    shipping_address: Optional[Address] = None
    items: List[OrderItem]
    subtotal: int
    shipping_cost: int
    discount: int = 0
    total: int
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.COD
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection name: "coupon"

    Codes are stored upper-cased, which makes lookups case-insensitive.
    """
    id: Optional[str] = None
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: int = Field(..., gt=0)
    min_order_amount: Optional[int] = Field(None, ge=0)
    max_discount: Optional[int] = Field(None, ge=0, description="Cap for percentage coupons")
    usage_limit: Optional[int] = Field(None, ge=0)
    per_user_limit: int = Field(1, ge=1)
    usage_count: int = Field(0, ge=0)
    is_active: bool = True
    valid_from: datetime = Field(default_factory=utcnow)
    valid_to: datetime
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("valid_from", "valid_to")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v


class CouponUsage(BaseModel):
    """
    Coupon usage collection schema
    Collection name: "coupon_usage"
    """
    id: Optional[str] = None
    coupon_id: str
    user_id: str
    order_id: str
    created_at: datetime = Field(default_factory=utcnow)


# Admin order commands. Each one names exactly one transition so the allowed
# moves of the order state machine live in one table (see orders.TRANSITIONS).

class ConfirmOrder(BaseModel):
    action: Literal["confirm"] = "confirm"


class StartProcessing(BaseModel):
    action: Literal["start_processing"] = "start_processing"


class MarkShipped(BaseModel):
    action: Literal["ship"] = "ship"
    tracking_number: str = Field(..., min_length=1, max_length=100)


class MarkDelivered(BaseModel):
    action: Literal["deliver"] = "deliver"


class MarkReturned(BaseModel):
    action: Literal["return"] = "return"


class CancelOrder(BaseModel):
    action: Literal["cancel"] = "cancel"


class SetPaymentStatus(BaseModel):
    action: Literal["set_payment_status"] = "set_payment_status"
    payment_status: PaymentStatus


OrderCommand = Annotated[
    Union[
        ConfirmOrder,
        StartProcessing,
        MarkShipped,
        MarkDelivered,
        MarkReturned,
        CancelOrder,
        SetPaymentStatus,
    ],
    Field(discriminator="action"),
]
