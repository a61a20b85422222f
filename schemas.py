"""
Database Schemas for the Storefront

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: customers and admins, with embedded addresses and a wishlist
- product: catalog entries with stock and rating summary
- order: placed orders with item snapshots and a shipping address
- review: one rating per product per user, tied to a delivered order
- cart: one cart per user

References to other documents are stored as the string form of their _id.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, EmailStr, Field

Role = Literal["customer", "admin"]
OrderStatus = Literal["pending", "shipped", "delivered"]
ORDER_STATUSES = ("pending", "shipped", "delivered")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


class Timestamped(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    street_address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)


class Address(ShippingAddress):
    id: str = Field(default_factory=new_id)
    label: str = Field(..., min_length=1)
    is_default: bool = False


class User(Timestamped):
    name: str = Field(..., min_length=1, max_length=60)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    image_url: str = ""
    role: Role = Field("customer")
    addresses: List[Address] = Field(default_factory=list)
    wishlist: List[str] = Field(default_factory=list, description="Product ids")


class Product(Timestamped):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = Field(..., min_length=1)
    images: List[str] = Field(default_factory=list)
    average_rating: float = Field(0, ge=0, le=5)
    total_reviews: int = Field(0, ge=0)


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Reference to product _id")
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: str = ""


class PaymentResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None


class Order(Timestamped):
    user_id: str = Field(..., description="Reference to user _id")
    order_items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_result: Optional[PaymentResult] = None
    total_price: float = Field(..., ge=0)
    status: OrderStatus = Field("pending")
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class Review(Timestamped):
    product_id: str = Field(..., description="Reference to product _id")
    user_id: str = Field(..., description="Reference to user _id")
    order_id: str = Field(..., description="Reference to order _id")
    rating: int = Field(..., ge=1, le=5)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(Timestamped):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
