from uuid import UUID
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_admin_user
from marketplace.models.user import User
from marketplace.models.rewards import DiscountCode
from marketplace.schemas.rewards import DiscountCode as DiscountCodeSchema, DiscountCodeCreate
from marketplace.services import rewards

router = APIRouter(prefix="/admin/discount-codes", tags=["Admin - Discount Codes"])


def _to_schema(code: DiscountCode) -> DiscountCodeSchema:
    return DiscountCodeSchema(
        id=code.id,
        code=code.code,
        discount_type=code.discount_type,
        discount_value=code.discount_value,
        min_purchase_amount=code.min_purchase_amount,
        max_discount_amount=code.max_discount_amount,
        usage_limit=code.usage_limit,
        used_count=code.used_count or 0,
        valid_until=code.valid_until,
        applies_to_all_sellers=code.applies_to_all_sellers,
        is_active=code.is_active,
        seller_ids=[row.seller_id for row in code.sellers],
    )


@router.post("/", response_model=DiscountCodeSchema, status_code=status.HTTP_201_CREATED)
def create_discount_code(
    body: DiscountCodeCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """
    Create a code. Set `applies_to_all_sellers`, or list the participating
    sellers in `seller_ids`; a code with neither is never valid.
    """
    code = rewards.create_code(
        db,
        body.code,
        body.discount_type,
        body.discount_value,
        seller_ids=body.seller_ids,
        applies_to_all_sellers=body.applies_to_all_sellers,
        min_purchase_amount=body.min_purchase_amount,
        max_discount_amount=body.max_discount_amount,
        usage_limit=body.usage_limit,
        valid_until=body.valid_until,
    )
    return _to_schema(code)


@router.get("/", response_model=List[DiscountCodeSchema])
def list_discount_codes(
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    query = db.query(DiscountCode)
    if active_only:
        query = query.filter(DiscountCode.is_active == True)  # noqa: E712
    return [_to_schema(c) for c in query.order_by(DiscountCode.created_at.desc()).all()]


@router.post("/{code_id}/deactivate", response_model=DiscountCodeSchema)
def deactivate_discount_code(
    code_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return _to_schema(rewards.deactivate_code(db, code_id))
