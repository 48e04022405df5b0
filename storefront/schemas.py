from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import date, datetime
from shared.security_config import sanitize_input
from storefront.discounts import DiscountType
from storefront.models import OrderStatus

# Catalog
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    price: Decimal = Field(..., ge=0, decimal_places=2)
    image_url: str
    is_digital: bool = False
    digital_file_path: Optional[str] = None

    @field_validator('name', 'description', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    image_url: Optional[str] = None
    is_digital: Optional[bool] = None
    digital_file_path: Optional[str] = None

    @field_validator('name', 'description', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductResponse(BaseModel):
    id: int
    name: str
    description: str
    price: Decimal
    image_url: str
    is_digital: bool
    created_at: datetime

    model_config = {"from_attributes": True}

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    page: int
    limit: int

# Cart
class CartItemAdd(BaseModel):
    product_id: int
    quantity: int = Field(1, gt=0)

class CartItemUpdate(BaseModel):
    # Zero or less removes the line
    quantity: int

class CouponApply(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)

    @field_validator('code')
    def sanitize_code(cls, v):
        return sanitize_input(v)

class CartLineResponse(BaseModel):
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    is_digital: bool

class CartResponse(BaseModel):
    items: List[CartLineResponse]
    total_quantity: int
    subtotal: Decimal
    coupon_code: Optional[str] = None
    discount: Decimal
    final_price: Decimal

# Checkout
class CheckoutRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    # Total the customer confirmed; checkout aborts if current prices disagree
    expected_total: Optional[Decimal] = Field(None, ge=0)

    @field_validator('name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

class OrderItemResponse(BaseModel):
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal
    is_digital: bool = False

class OrderResponse(BaseModel):
    id: int
    customer_email: str
    customer_name: Optional[str] = None
    items: List[OrderItemResponse]
    subtotal: Decimal
    coupon_code: Optional[str] = None
    discount_amount: Decimal
    total_amount: Decimal
    status: OrderStatus
    payment_reference: Optional[str] = None
    ordered_at: datetime
    updated_at: Optional[datetime] = None

class DownloadLink(BaseModel):
    product_id: int
    name: str
    url: str

class CheckoutResponse(BaseModel):
    order: OrderResponse
    downloads: List[DownloadLink] = []

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

# Coupons
class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0, decimal_places=2)
    expiry_date: date
    is_active: bool = True

    @field_validator('code')
    def sanitize_code(cls, v):
        return sanitize_input(v).upper()

class CouponResponse(BaseModel):
    id: int
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    expiry_date: date
    is_active: bool

    model_config = {"from_attributes": True}

# Admin
class AdminLogin(BaseModel):
    username: str
    password: str
