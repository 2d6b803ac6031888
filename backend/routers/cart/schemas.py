from pydantic import BaseModel, Field
from typing import Optional, List
from decimal import Decimal
import uuid


class CartItemAdd(BaseModel):
    product_id: uuid.UUID
    # Zero or negative quantities are rejected by the cart service itself
    quantity: int = 1


class CartItemUpdate(BaseModel):
    quantity: int


class CartLineResponse(BaseModel):
    id: str
    product_id: str
    vendor_id: Optional[str] = None
    product_name: str
    image: Optional[str] = None
    unit_price: Decimal
    quantity: int
    is_available: bool


class CartResponse(BaseModel):
    items: List[CartLineResponse]
    item_count: int = Field(ge=0)
    subtotal: Decimal
