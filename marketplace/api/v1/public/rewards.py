from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_customer
from marketplace.models.user import User
from marketplace.schemas.rewards import DiscountValidateRequest, DiscountValidateResponse
from marketplace.services import rewards
from marketplace.services.cart import load_cart
from marketplace.services.money import quantize

router = APIRouter(prefix="/discount-codes", tags=["Rewards"])


def _cart_subtotals(db: Session, user_id) -> dict:
    products, services = load_cart(db, user_id)
    subtotals = {}
    for row in products:
        item = row.product
        subtotals[item.seller_id] = subtotals.get(item.seller_id, Decimal("0")) + Decimal(item.price) * row.quantity
    for row in services:
        item = row.service
        subtotals[item.seller_id] = subtotals.get(item.seller_id, Decimal("0")) + Decimal(item.price) * row.quantity
    return {sid: quantize(v) for sid, v in subtotals.items()}


@router.post("/validate", response_model=DiscountValidateResponse)
def validate_discount_code(
    body: DiscountValidateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    """
    Preview a discount code. With `seller_ids` the code is checked against the
    given subtotal; otherwise it is priced against the customer's cart exactly
    as checkout would.
    """
    if body.seller_ids:
        result = rewards.preview_discount(db, body.code, body.subtotal, body.seller_ids)
    else:
        subtotals = _cart_subtotals(db, current_user.id)
        if subtotals:
            result = rewards.resolve_discount(db, body.code, subtotals)
        else:
            result = rewards.preview_discount(db, body.code, body.subtotal)

    return DiscountValidateResponse(
        valid=result.valid,
        message=result.message,
        code=result.code.code if result.code else None,
        discount_type=result.code.discount_type if result.code else None,
        amount=result.amount,
        participating_seller_ids=result.participating,
    )
