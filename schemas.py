"""
Database Schemas for BargainMart

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase
class name (e.g., Product -> "product"). References to other documents are stored
as string ids.
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    customer = "customer"
    vendor = "vendor"
    admin = "admin"


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str
    role: Role = Role.customer
    # Vendor-only shop metadata
    shop_name: Optional[str] = None
    shop_description: Optional[str] = None
    shop_address: Optional[str] = None
    gst_number: Optional[str] = Field(None, description="Tax id")
    balance: float = Field(0, description="Vendor earnings")


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(ge=0)
    stock: int = Field(0, ge=0)
    vendor_id: str
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)


class BargainStatus(str, Enum):
    pending = "pending"
    ongoing = "ongoing"
    accepted = "accepted"
    rejected = "rejected"


class Sender(str, Enum):
    customer = "customer"
    vendor = "vendor"


class BargainMessage(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    sender: Sender
    text: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)


class Bargain(BaseModel):
    """A negotiation thread between one customer and one vendor about one product"""
    model_config = ConfigDict(use_enum_values=True)

    product_id: str
    customer_id: str
    vendor_id: str
    messages: List[BargainMessage] = Field(default_factory=list)
    status: BargainStatus = BargainStatus.pending
    final_price: Optional[float] = None


class PaymentMethod(str, Enum):
    cod = "COD"
    upi = "UPI"
    card = "Card"


class OrderStatus(str, Enum):
    pending = "Pending"
    shipped = "Shipped"
    delivered = "Delivered"
    cancelled = "Cancelled"


class OrderItem(BaseModel):
    """Line item snapshot; name/price/category are copied at order time"""
    product_id: Optional[str] = None
    vendor_id: Optional[str] = None
    name: Optional[str] = None
    price: float = Field(ge=0)
    quantity: int = Field(1, ge=1)
    image: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None


class ShippingAddress(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    pincode: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    products: List[OrderItem]
    total_amount: float = Field(ge=0)
    shipping: ShippingAddress = Field(default_factory=ShippingAddress)
    payment: PaymentMethod = PaymentMethod.cod
    status: OrderStatus = OrderStatus.pending
    bargain_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None


class CartItem(BaseModel):
    product_id: str
    vendor_id: Optional[str] = None
    name: Optional[str] = None
    price: float = Field(ge=0)
    quantity: int = Field(1, ge=1)
    bargain_id: Optional[str] = None


class Cart(BaseModel):
    """Server-side cart, one per account"""
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
