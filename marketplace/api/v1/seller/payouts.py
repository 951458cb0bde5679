from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_seller, get_payment_processor
from marketplace.models.seller import Seller
from marketplace.schemas.payout import Balance, Payout, PayoutRequest
from marketplace.services import payouts
from marketplace.services.payment_processor import PaymentProcessor

router = APIRouter(prefix="/seller/payouts", tags=["Seller - Payouts"])


@router.get("/balance", response_model=Balance)
def get_balance(seller: Seller = Depends(get_current_seller), db: Session = Depends(get_db)):
    """Frozen revenue minus completed and in-flight payouts, in the base currency."""
    return payouts.get_balance(db, seller.id)


@router.get("/", response_model=List[Payout])
def list_payouts(seller: Seller = Depends(get_current_seller), db: Session = Depends(get_db)):
    return payouts.list_payouts(db, seller.id)


@router.post("/", response_model=Payout, status_code=status.HTTP_201_CREATED)
def request_payout(
    body: PayoutRequest,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Withdraw from the available balance. Returns 409 `insufficient_balance`
    with the available amount when the request exceeds it.
    """
    return payouts.request_payout(db, processor, seller, body.amount, body.currency, body.notes)
