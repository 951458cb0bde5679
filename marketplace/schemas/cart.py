from typing import Annotated, List
from pydantic import BaseModel, Field, UUID4
from decimal import Decimal


class CartProductAdd(BaseModel):
    product_id: UUID4
    quantity: Annotated[int, Field(ge=1)] = 1


class CartServiceAdd(BaseModel):
    service_id: UUID4
    quantity: Annotated[int, Field(ge=1)] = 1


class CartLineUpdate(BaseModel):
    quantity: Annotated[int, Field(ge=0)]


class CartLine(BaseModel):
    id: UUID4
    kind: str  # product, service
    item_id: UUID4
    seller_id: UUID4
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class CartSellerGroup(BaseModel):
    seller_id: UUID4
    business_name: str
    subtotal: Decimal
    lines: List[CartLine]


class Cart(BaseModel):
    groups: List[CartSellerGroup]
    subtotal: Decimal
