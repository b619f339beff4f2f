"""
Database Schemas

MongoDB collection schemas as Pydantic models.
Each Pydantic model represents a collection in the database.
Model name lowercased is the collection name.
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class User(BaseModel):
    name: str = Field(..., min_length=2, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Literal["user", "admin"] = Field("user", description="Role: user | admin")
    is_verified: bool = False
    phone: Optional[str] = None
    address: Optional[str] = None


class Category(BaseModel):
    slug: str = Field(..., min_length=2, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=2)


class Discount(BaseModel):
    type: Literal["percentage", "fixed"]
    value: float = Field(..., ge=0, allow_inf_nan=False)
    active: bool = True

    @model_validator(mode="after")
    def check_percentage_range(self):
        if self.type == "percentage" and self.value > 100:
            raise ValueError("percentage discount must be between 0 and 100")
        return self


class Inventory(BaseModel):
    track: bool = False
    stock: int = Field(0, ge=0)


class ProductImage(BaseModel):
    hash: str = Field(..., min_length=1, description="Content hash returned by the media store")
    alt: Optional[str] = None
    primary: bool = False


class Product(BaseModel):
    slug: str = Field(..., min_length=2, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=2)
    price: float = Field(..., ge=0, allow_inf_nan=False)
    description: Optional[str] = None
    images: List[ProductImage] = Field(default_factory=list)
    published: bool = False
    inventory: Inventory = Field(default_factory=Inventory)
    discount: Optional[Discount] = None
    category: str = Field(..., description="Category slug")

    @field_validator("images")
    @classmethod
    def at_most_one_primary(cls, images: List[ProductImage]) -> List[ProductImage]:
        if sum(1 for img in images if img.primary) > 1:
            raise ValueError("at most one image may be marked primary")
        return images


class OrderItem(BaseModel):
    product_id: str
    slug: str
    name: str
    quantity: int = Field(..., ge=1)
    base_price: float = Field(..., ge=0, description="List price at purchase, before discount")
    unit_price: float = Field(..., ge=0, description="Effective price at purchase")


class StatusChange(BaseModel):
    status: str
    at: datetime
    by: Optional[str] = None


class Order(BaseModel):
    user_id: str
    user_email: Optional[str] = None
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    delivery_fee: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    status: str = Field("placed")
    address: str
    phone: str
    payment_method: Literal["COD"] = "COD"
    idempotency_key: Optional[str] = None
    status_history: List[StatusChange] = Field(default_factory=list)


class Setting(BaseModel):
    key: str
    value: Any = None
    type: Literal["string", "number", "boolean", "json"]
    category: Literal["checkout", "delivery", "fees", "business", "loyalty", "notifications"]
    label: str
    description: Optional[str] = None
    editable: bool = True
    public: bool = Field(False, description="Exposed to anonymous storefront callers")


class AuthToken(BaseModel):
    user_id: str
    purpose: Literal["verify_email", "reset_password"]
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None


class Media(BaseModel):
    hash: str
    content_type: str
    size: int = Field(..., ge=0)
    data: bytes
