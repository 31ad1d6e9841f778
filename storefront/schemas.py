from pydantic import BaseModel, Field, field_validator
from pydantic_core import PydanticCustomError
from typing import Optional, List, Dict, Literal
from decimal import Decimal
import re

from shared.security_config import sanitize_input
from storefront.models import Amount, CartItem, Category

# Optional "+", then 254, then exactly nine digits
KENYAN_PHONE = re.compile(r"\+?254[0-9]{9}")

# --- Cart ---

class CartItemAdd(BaseModel):
    product_id: str

class CartItemUpdate(BaseModel):
    # zero or negative removes the line
    quantity: int

class CartResponse(BaseModel):
    items: List[CartItem]
    is_open: bool
    total_price: Amount
    total_items: int

# --- Checkout ---

class CheckoutFormData(BaseModel):
    name: str
    phone: str
    location: str

    @field_validator('name', 'phone', 'location', mode='before')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('name')
    def check_name(cls, v):
        if len(v) < 2:
            raise PydanticCustomError('name_too_short', 'Name must be at least 2 characters')
        if len(v) > 100:
            raise PydanticCustomError('name_too_long', 'Name must be at most 100 characters')
        return v

    @field_validator('phone')
    def check_phone(cls, v):
        if not KENYAN_PHONE.fullmatch(v):
            raise PydanticCustomError('phone_invalid', 'Enter valid Kenyan phone (+254...)')
        return v

    @field_validator('location')
    def check_location(cls, v):
        if len(v) < 5:
            raise PydanticCustomError('location_too_short', 'Please provide your location')
        if len(v) > 200:
            raise PydanticCustomError('location_too_long', 'Location must be at most 200 characters')
        return v

class CheckoutFormInput(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None

class CheckoutTotals(BaseModel):
    subtotal: Amount
    delivery_fee: Amount
    total: Amount
    free_delivery: bool

class CheckoutStateResponse(BaseModel):
    step: Literal["form", "preview", "sent"]
    form: Dict[str, str]
    errors: Dict[str, str] = {}
    totals: CheckoutTotals
    message: Optional[str] = None

class CheckoutConfirmResponse(BaseModel):
    order_id: str
    chat_url: str
    target: str = "_blank"
    total: Amount

# --- Admin ---

class AdminLogin(BaseModel):
    username: str
    password: str

class AdminSessionToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int

class AdminStats(BaseModel):
    total_products: int
    low_stock: int
    total_value: Amount
    featured: int

class AdminProductForm(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(Decimal(0), ge=0)
    category: Category = "jewelry"
    subcategory: Optional[str] = None
    stock: int = Field(0, ge=0)
    featured: bool = False
    image_url: Optional[str] = None
    tags: Optional[List[str]] = None

    @field_validator('name', 'description', 'subcategory', 'image_url', mode='before')
    def sanitize_fields(cls, v):
        return sanitize_input(v)
