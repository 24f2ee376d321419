"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Collection names are given on each model; references between
collections are stored as id strings.

We store:
- User (with optional postal address and password-reset challenge)
- Product
- CartLine
- Order (with optional tracking fields)
- OrderLine
- Coupon
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "shipped",
    "out-for-delivery",
    "delivered",
    "return-requested",
    "returned",
    "cancelled",
)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


class ResetChallenge(BaseModel):
    code: str
    expires_at: datetime
    attempts: int = Field(0, ge=0)


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: Optional[EmailStr] = Field(None, description="Email address, absent for phone-only accounts")
    phone: Optional[str] = None

    # Auth fields (stored in DB, but not returned in public responses)
    password_hash: str = Field(..., description="Hashed password")
    reset_otp: Optional[ResetChallenge] = None

    role: Literal["customer", "admin"] = "customer"
    address: Optional[Address] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    category: str = Field(..., description="Free-text category")
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0, description="Available inventory")
    description: Optional[str] = None
    image: str = Field(..., description="Image URL or stored object path")
    images: List[str] = Field(default_factory=list, description="Gallery")
    colors: List[str] = Field(default_factory=list, description="Color variants")


class CartLine(BaseModel):
    """
    Cart collection schema
    Collection name: "cart"
    """
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    selected_color: Optional[str] = None


class TrackingUpdate(BaseModel):
    status: str
    location: Optional[str] = None
    timestamp: datetime
    message: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    total_amount: float = Field(..., ge=0)
    status: str = Field("pending", description=" | ".join(ORDER_STATUSES))
    shipping_address: Optional[dict] = None
    shipping_cost: Optional[float] = Field(None, ge=0)
    coupon_code: Optional[str] = None
    discount_amount: Optional[float] = Field(None, ge=0)

    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    current_location: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    tracking_updates: Optional[List[TrackingUpdate]] = None


class OrderLine(BaseModel):
    """
    Order items collection schema
    Collection name: "order_item"
    """
    order_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price snapshot at order time")
    selected_color: Optional[str] = None


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    code: str = Field(..., description="Upper-cased, unique")
    discount_percent: float = Field(..., ge=0, le=100)
    expiry_date: datetime
    max_uses: Optional[int] = Field(None, ge=1, description="Absent means unlimited")
    current_uses: int = Field(0, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
