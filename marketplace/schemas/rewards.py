from typing import Annotated, List, Optional
from pydantic import BaseModel, Field, UUID4
from decimal import Decimal
from datetime import datetime


class PointsBalance(BaseModel):
    balance: Decimal
    total_earned: Decimal
    total_redeemed: Decimal

    class Config:
        from_attributes = True


class PointsTransaction(BaseModel):
    id: UUID4
    order_id: Optional[UUID4] = None
    transaction_type: str
    amount: Decimal
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Discount codes
class DiscountValidateRequest(BaseModel):
    code: str
    subtotal: Annotated[Decimal, Field(ge=0)]
    seller_ids: List[UUID4] = []


class DiscountValidateResponse(BaseModel):
    valid: bool
    message: Optional[str] = None
    code: Optional[str] = None
    discount_type: Optional[str] = None
    amount: Decimal = Decimal("0")
    participating_seller_ids: List[UUID4] = []


class DiscountCodeCreate(BaseModel):
    code: Annotated[str, Field(min_length=3, max_length=50)]
    discount_type: str  # percentage, fixed
    discount_value: Annotated[Decimal, Field(gt=0)]
    min_purchase_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    valid_until: Optional[datetime] = None
    applies_to_all_sellers: bool = False
    seller_ids: List[UUID4] = []


class DiscountCode(BaseModel):
    id: UUID4
    code: str
    discount_type: str
    discount_value: Decimal
    min_purchase_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    used_count: int
    valid_until: Optional[datetime] = None
    applies_to_all_sellers: bool
    is_active: bool
    seller_ids: List[UUID4] = []
