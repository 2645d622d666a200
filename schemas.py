"""
Database Schemas for the storefront

Each Pydantic model corresponds to one MongoDB collection, except the
request bodies at the bottom which only describe API input.
Collection name is the lowercase of the class name.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


# Forward order of the lifecycle, used for the timeline and transition logging.
STATUS_FLOW = [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    is_admin: bool = False


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    image_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class Order(BaseModel):
    customer_name: str
    customer_email: str
    status: OrderStatus = OrderStatus.PENDING
    total: float = Field(..., ge=0)


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)


class StockStats(BaseModel):
    totalProducts: int = 0
    lowStockCount: int = 0
    outOfStockCount: int = 0
    totalValue: float = 0.0


# ----------------------- Request bodies -----------------------
class SignupBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    redirect: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None


class CartLineBody(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class CartQuantityBody(BaseModel):
    quantity: int = Field(..., ge=0)


class CustomerBody(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr

    @field_validator("customer_name")
    @classmethod
    def customer_name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("customer_name must not be blank")
        return v


class OrderCreateBody(CustomerBody):
    items: List[CartLineBody]


class StatusUpdateBody(BaseModel):
    status: OrderStatus
