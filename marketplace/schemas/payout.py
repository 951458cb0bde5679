from typing import Annotated, Optional
from pydantic import BaseModel, Field, UUID4
from decimal import Decimal
from datetime import datetime


class PayoutRequest(BaseModel):
    amount: Annotated[Decimal, Field(gt=0, decimal_places=2)]
    currency: Optional[str] = None
    notes: Optional[str] = None


class Payout(BaseModel):
    id: UUID4
    amount: Decimal
    currency: str
    amount_base: Decimal
    status: str
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Balance(BaseModel):
    currency: str
    total_revenue: Decimal
    completed_payouts: Decimal
    pending_payouts: Decimal
    available_balance: Decimal


# Admin: per-seller commission terms
class SellerCommissionUpdate(BaseModel):
    commission_rate_override: Optional[Annotated[Decimal, Field(ge=0, le=1)]] = None
    trial_ends_at: Optional[datetime] = None


class SellerCommission(BaseModel):
    seller_id: UUID4
    commission_rate_override: Optional[Decimal] = None
    trial_ends_at: Optional[datetime] = None
    effective_rate: Decimal
