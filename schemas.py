"""
Database Schemas for Curated Crate

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase of the class name.
Documents are stored with camelCase keys (orderStatus, zipCode, ...), the same keys the API speaks.
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, ConfigDict, Field, EmailStr, model_validator
from pydantic.alias_generators import to_camel
from datetime import datetime

ProductCategory = Literal["Gourmet", "Wellness", "Stationery", "Home Goods", "Apparel"]
DiscountType = Literal["percentage", "fixed", "free-shipping"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "refunded", "completed"]
PaymentStatus = Literal["pending", "paid", "failed"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Embedded in users
class Address(CamelModel):
    id: Optional[str] = None
    street: str = Field(..., min_length=1)
    apartment: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    label: Literal["Home", "Work", "Other"] = "Home"
    is_default: bool = False


# Users collection
class User(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{1,14}$")
    password_hash: str = Field(..., min_length=10)
    role: Literal["user", "admin"] = "user"
    addresses: List[Address] = Field(default_factory=list)


# Products collection
class Product(CamelModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(default_factory=list)
    category: ProductCategory
    stock: int = Field(0, ge=0)
    dimensions: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0, description="Weight in grams")
    materials: List[str] = Field(default_factory=list)
    is_active: bool = True


# Curated bundles sold as one purchasable item
class ThemedBox(CamelModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(0, ge=0)
    image: str
    products: List[str] = Field(default_factory=list, description="Product ids")
    features: List[str] = Field(default_factory=list)
    is_active: bool = True


# Cart collection, one document per user
class CartItem(CamelModel):
    id: str
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    stock: int = Field(0, ge=0)
    quantity: int = Field(..., ge=1)


class Cart(CamelModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


# Discount codes
class Discount(CamelModel):
    code: str = Field(..., min_length=1)
    type: DiscountType
    value: float = Field(..., ge=0)
    description: Optional[str] = None
    uses: int = Field(0, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    is_active: bool = True


# Orders collection
class OrderItem(CamelModel):
    product_id: str
    themed_box_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image_url: Optional[str] = None


class ShippingAddress(CamelModel):
    full_name: Optional[str] = None
    street: str = Field(..., min_length=1)
    apartment: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class Order(CamelModel):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: str
    payment_status: PaymentStatus = "pending"
    payment_result: dict = Field(default_factory=dict)
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    items_price: float = Field(..., ge=0)
    discount_price: float = Field(0, ge=0)
    shipping_price: float = Field(..., ge=0)
    tax_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    applied_discount_code: Optional[str] = None
    order_status: OrderStatus = "pending"
    delivered_at: Optional[datetime] = None


# Reviews target either a product or a themed box
class Review(CamelModel):
    product_id: Optional[str] = None
    themed_box_id: Optional[str] = None
    user_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_single_target(self):
        if bool(self.product_id) == bool(self.themed_box_id):
            raise ValueError("A review must be for either a product or a themed box, but not both.")
        return self


# People behind the boxes, shown on the about page
class Curator(CamelModel):
    name: str
    role: str
    bio: str
    image: str
    is_active: bool = True
