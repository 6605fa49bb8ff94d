from __future__ import annotations
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Stored and transported shapes use camelCase keys


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Product(ApiModel):
    id: str
    name: str
    brand: str
    product_type: str = Field(alias="type")
    material: str
    stock: int = Field(ge=0)
    original_price: float = Field(ge=0)
    sale_price: float = Field(ge=0, default=0)
    image_url: Optional[str] = None
    version: int = Field(ge=0, default=0)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.name, self.brand, self.material)

    @property
    def unit_price(self) -> float:
        return self.sale_price if self.sale_price > 0 else self.original_price


class ProductDeleted(ApiModel):
    id: str
    deleted: bool = True
    message: str


class CartItem(ApiModel):
    name: str
    brand: str
    material: str
    quantity: int = Field(ge=1)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.name, self.brand, self.material)


class Cart(ApiModel):
    user_id: Optional[str] = None
    guest_id: Optional[str] = None
    items: list[CartItem] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class OrderItem(CartItem):
    product_id: str
    unit_price: float


class Order(ApiModel):
    id: str
    user_id: Optional[str] = None
    guest_id: Optional[str] = None
    full_name: str
    phone: str
    address: str
    payment_method: str
    payment_details: dict[str, Any] = Field(default_factory=dict)
    cart_items: list[OrderItem]
    total_price: float
    created_at: datetime


# Request bodies are deliberately loose: the domain layer reports which
# field is missing or invalid.


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class LoginResponse(BaseModel):
    success: bool
    token: str


class CartItemRequest(ApiModel):
    guest_id: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    material: Optional[str] = None
    quantity: Any = None


class OrderLineRequest(ApiModel):
    name: Optional[str] = None
    brand: Optional[str] = None
    material: Optional[str] = None
    quantity: Any = None


class OrderRequest(ApiModel):
    guest_id: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_method: Optional[str] = None
    payment_details: dict[str, Any] = Field(default_factory=dict)
    cart_items: list[OrderLineRequest] = Field(default_factory=list)
    total_price: Any = None


class ImportResult(ApiModel):
    imported: int
    products: list[Product]
