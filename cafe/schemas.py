from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic.config import ConfigDict


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    password: Optional[str] = Field(default=None, max_length=128)


class UserCreate(RegisterIn):
    role: Optional[str] = None


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[str] = None


class UserRead(BaseModel):
    id: int
    name: str
    email: str
    role: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user) -> "UserRead":
        return cls(id=user.id, name=user.name, email=user.email, role=user.role_name, created_at=user.created_at)


class AuthResponse(BaseModel):
    token: str
    user: UserRead


class CategoryIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    parent_id: Optional[int] = None


class CategoryRead(BaseModel):
    id: int
    name: str
    parent_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


def _non_negative(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is not None and v < 0:
        raise ValueError("price must be non-negative")
    return v


class ProductItemIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    sku: Optional[str] = Field(default=None, max_length=64)
    price: Optional[Decimal] = None
    available: Optional[bool] = None

    @field_validator("price")
    def non_negative(cls, v: Optional[Decimal]):
        return _non_negative(v)


class ProductOptionIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    value: Optional[str] = Field(default=None, max_length=120)
    extra_price: Optional[Decimal] = None

    @field_validator("extra_price")
    def non_negative(cls, v: Optional[Decimal]):
        return _non_negative(v)


class ProductIn(BaseModel):
    category_id: Optional[int] = None
    name: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = None
    base_price: Optional[Decimal] = None
    image_url: Optional[str] = Field(default=None, max_length=500)
    available: Optional[bool] = None
    items: Optional[List[ProductItemIn]] = None
    options: Optional[List[ProductOptionIn]] = None

    @field_validator("base_price")
    def non_negative(cls, v: Optional[Decimal]):
        return _non_negative(v)


class ProductItemRead(BaseModel):
    id: int
    product_id: int
    name: str
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    available: bool

    model_config = ConfigDict(from_attributes=True)


class ProductOptionRead(BaseModel):
    id: int
    product_id: int
    name: str
    value: str
    extra_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class ProductRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    base_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    available: bool
    category_id: Optional[int] = None
    category_name: Optional[str] = None


class ProductDetail(ProductRead):
    items: List[ProductItemRead] = []
    options: List[ProductOptionRead] = []


class Created(BaseModel):
    id: int


class OrderLineRead(BaseModel):
    id: int
    product_item_id: Optional[int] = None
    product_id: Optional[int] = None
    name: Optional[str] = None
    quantity: int
    price: Decimal


class OrderCreated(BaseModel):
    id: int
    total: Decimal
    status: str


class OrderRead(BaseModel):
    id: int
    user_id: int
    total: Decimal
    status: str
    created_at: datetime
    items: List[OrderLineRead] = []


class OrderDetail(OrderRead):
    order_number: int


class StaffOrderRead(OrderRead):
    user_name: Optional[str] = None
    user_email: Optional[str] = None
