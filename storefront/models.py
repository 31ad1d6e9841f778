from datetime import datetime
from typing import Optional, List, Literal, Union, Annotated
from decimal import Decimal
from pydantic import BaseModel, Field, PlainSerializer

Category = Literal["jewelry", "bags", "makeup"]
CATEGORIES = ("jewelry", "bags", "makeup")

def _amount_to_number(value: Decimal) -> Union[int, float]:
    # Sheets and the storefront UI expect JSON numbers, not strings
    if value == value.to_integral_value():
        return int(value)
    return float(value)

Amount = Annotated[Decimal, PlainSerializer(_amount_to_number, when_used="json")]

class Product(BaseModel):
    id: str
    name: str
    description: str = ""
    price: Amount = Field(..., ge=0)
    category: Category
    subcategory: str = ""
    images: List[str] = []
    stock: int = Field(0, ge=0)
    featured: bool = False
    tags: List[str] = []

class CategoryInfo(BaseModel):
    id: Category
    name: str
    icon: str
    description: str
    image: str

class CartItem(Product):
    quantity: int = Field(..., ge=1)

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    session_id: str
    items: List[CartItem] = []
    is_open: bool = False
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

class OrderItem(BaseModel):
    id: str
    name: str
    quantity: int
    price: Amount

class Order(BaseModel):
    """Record sent to the order log. Wire names are camelCase."""
    order_id: str = Field(..., alias="orderId")
    name: str
    phone: str
    location: str
    items: List[OrderItem] = []
    subtotal: Amount = Decimal(0)
    delivery_fee: Amount = Field(Decimal(0), alias="deliveryFee")
    total: Amount = Decimal(0)
    status: str = "new"
    notes: Optional[str] = None
    created_at: str = Field(..., alias="createdAt")

    class Config:
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
