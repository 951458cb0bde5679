from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_admin_user
from marketplace.core.errors import NotFoundError
from marketplace.models.user import User
from marketplace.models.seller import Seller
from marketplace.schemas.order import BackfillResponse
from marketplace.schemas.payout import Balance, SellerCommission, SellerCommissionUpdate
from marketplace.services import payouts
from marketplace.services.fulfillment import backfill_commissions, resolve_commission_rate

router = APIRouter(prefix="/admin", tags=["Admin - Commissions"])


def _get_seller(db: Session, seller_id: UUID) -> Seller:
    seller = db.query(Seller).filter(Seller.id == seller_id).first()
    if not seller:
        raise NotFoundError("Seller not found", seller_id=str(seller_id))
    return seller


def _commission(seller: Seller) -> SellerCommission:
    return SellerCommission(
        seller_id=seller.id,
        commission_rate_override=seller.commission_rate_override,
        trial_ends_at=seller.trial_ends_at,
        effective_rate=resolve_commission_rate(seller),
    )


@router.post("/commissions/backfill", response_model=BackfillResponse)
def run_backfill(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """
    Freeze the commission split on paid or fulfilled orders that predate the
    freeze. Safe to run more than once.
    """
    return BackfillResponse(frozen_orders=backfill_commissions(db))


@router.get("/sellers/{seller_id}/commission", response_model=SellerCommission)
def get_commission(
    seller_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return _commission(_get_seller(db, seller_id))


@router.patch("/sellers/{seller_id}/commission", response_model=SellerCommission)
def update_commission(
    seller_id: UUID,
    body: SellerCommissionUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Set or clear a seller's commission override and trial end. Frozen orders keep their split."""
    seller = _get_seller(db, seller_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(seller, field, value)
    db.commit()
    db.refresh(seller)
    return _commission(seller)


@router.get("/sellers/{seller_id}/balance", response_model=Balance)
def get_seller_balance(
    seller_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return payouts.get_balance(db, _get_seller(db, seller_id).id)
