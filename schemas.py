"""
Database and API schemas for the Royals & Radiant storefront.

Each persisted model maps to a MongoDB collection named after the lowercased
class name (``Product`` -> "product", ``ShippingRule`` -> "shippingrule").
Request/response bodies live at the bottom of the module.
"""
from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

ShippingCategory = Literal["clothes", "jewelry"]


# ------------------------- Cart -------------------------
class CartItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    image: str = ""
    color: Optional[str] = None
    size: Optional[str] = None
    shipping_category: Optional[ShippingCategory] = None
    combo_group_id: Optional[str] = None
    original_product_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, Optional[str], Optional[str]]:
        return (self.product_id, self.color, self.size)

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity


# ------------------------- Catalog -------------------------
class Category(BaseModel):
    """
    Category tree node
    Collection: "category"
    """
    name: str = Field(..., min_length=1)
    slug: str = ""
    slug_path: str = ""
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_visible: bool = True
    sort_order: int = Field(0, ge=0)
    parent_id: Optional[str] = None


class Product(BaseModel):
    """
    Product catalog schema
    Collection: "product"
    """
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0, description="Price in USD")
    images: list[str] = Field(default_factory=list, description="Image URLs, first one is the thumbnail")
    category_id: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    is_on_sale: bool = False
    sale_price: Optional[float] = Field(None, gt=0)
    sale_percentage: Optional[float] = Field(None, ge=0, le=100)
    is_featured: bool = False
    is_combo: bool = False
    size_chart_url: Optional[str] = None


class HeroImage(BaseModel):
    image_url: str
    alt_text: str = ""
    sort_order: int = 0
    is_visible: bool = True


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class Coupon(BaseModel):
    """
    Coupon codes
    Collection: "coupon"
    """
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    is_active: bool = True
    expires_at: Optional[datetime] = None


class ShippingRule(BaseModel):
    """
    Subtotal bracket -> delivery price
    Collection: "shippingrule"
    """
    min_amount: float = Field(..., ge=0)
    max_amount: Optional[float] = Field(None, ge=0, description="None means unbounded")
    price: float = Field(..., ge=0)
    category: Optional[ShippingCategory] = None

    @model_validator(mode="after")
    def _check_bracket(self):
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise ValueError("max_amount must be greater than or equal to min_amount")
        return self

    def contains(self, amount: float) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount <= self.max_amount


class StoreSettings(BaseModel):
    """
    Process-wide store configuration, a single document with _id "global"
    Collection: "settings"
    """
    combo_price: float = Field(99.0, gt=0, description="Flat price of a 3-item combo")
    estimated_delivery_min: int = Field(2, ge=0)
    estimated_delivery_max: int = Field(4, ge=0)
    allow_store_pickup: bool = False
    pickup_address: Optional[str] = None


# ------------------------- Orders -------------------------
class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ShippingAddress(BaseModel):
    line1: str = ""
    line2: Optional[str] = None
    city: str = ""
    postal_code: str = ""
    country: str = ""


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Referenced product id (the original product for combo members)")
    name: str = Field(..., description="Snapshot of name at purchase time")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    combo_group_id: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None


class Order(BaseModel):
    """
    Orders schema
    Collection: "order"
    """
    id: str
    stripe_session_id: str
    payment_id: Optional[str] = None
    customer_name: str
    customer_email: str
    shipping_address: ShippingAddress
    items: list[OrderItem]
    subtotal: float = Field(..., ge=0)
    discount_amount: float = Field(0, ge=0)
    coupon_code: Optional[str] = None
    shipping_cost: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    is_pickup: bool = False
    status: OrderStatus = OrderStatus.PENDING
    created_at: Optional[datetime] = None


# ------------------------- Requests / responses -------------------------
class ContactInfo(BaseModel):
    customer_name: str = ""
    customer_email: str = ""
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    postal_code: str = ""
    country: str = ""


class AppliedCoupon(BaseModel):
    code: str
    discount_amount: float = Field(..., ge=0)


class PriceBreakdown(BaseModel):
    subtotal: float
    discount: float
    discounted_subtotal: float
    shipping_cost: float
    total: float
    coupon_code: Optional[str] = None


class QuoteRequest(BaseModel):
    items: list[CartItem]
    coupon_code: Optional[str] = None
    is_pickup: bool = False


class CouponCheck(BaseModel):
    code: str
    order_amount: float = Field(..., ge=0)


class CheckoutRequest(BaseModel):
    items: list[CartItem]
    contact: ContactInfo
    coupon_code: Optional[str] = None
    is_pickup: bool = False


class CheckoutSession(BaseModel):
    url: str
    order_id: str
    session_id: Optional[str] = None


class ComboRequest(BaseModel):
    items: list[CartItem] = Field(default_factory=list, description="Current cart contents")
    product_ids: list[str]


class CartSummary(BaseModel):
    items: list[CartItem]
    combos: dict[str, list[CartItem]]
    item_count: int
    total: float


class ContactMessage(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=10)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class ReorderEntry(BaseModel):
    id: str
    sort_order: int = Field(..., ge=0)


class StoreSettingsUpdate(BaseModel):
    combo_price: Optional[float] = Field(None, gt=0)
    estimated_delivery_min: Optional[int] = Field(None, ge=0)
    estimated_delivery_max: Optional[int] = Field(None, ge=0)
    allow_store_pickup: Optional[bool] = None
    pickup_address: Optional[str] = None


ProductSort = Literal["newest", "price-asc", "price-desc", "featured"]


class BulkProductRequest(BaseModel):
    # rows stay raw so one bad row is reported instead of rejecting the batch
    products: list[dict] = Field(..., min_length=1)


class BulkProductResult(BaseModel):
    success: bool
    name: str
    error: Optional[str] = None


class BulkCreateResult(BaseModel):
    success: bool
    results: list[BulkProductResult]
    message: str
