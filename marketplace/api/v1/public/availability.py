from uuid import UUID
from typing import Optional
from datetime import date, datetime, time, timezone, timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_customer
from marketplace.core.config import settings
from marketplace.core.errors import NotFoundError, SlotUnavailableError, ValidationError
from marketplace.models.user import User
from marketplace.models.seller import Seller
from marketplace.schemas.availability import (
    AvailabilityResponse,
    AvailableSlot,
    CutoffStatus,
    SlotLockRequest,
    SlotLockResponse,
)
from marketplace.services import slot_ledger
from marketplace.services.cutoff import is_same_day_allowed

seller_public_router = APIRouter(prefix="/sellers", tags=["Availability"])
slot_lock_router = APIRouter(prefix="/slot-locks", tags=["Availability"])

MAX_RANGE_DAYS = 62


def _load_seller(db: Session, seller_id: UUID) -> Seller:
    seller = db.query(Seller).filter(Seller.id == seller_id).first()
    if not seller:
        raise NotFoundError("Seller not found")
    return seller


# ---------------------------------------------------------------------------
# Public: bookable slots (date/time picker)
# ---------------------------------------------------------------------------


@seller_public_router.get("/{seller_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    seller_id: UUID,
    start_date: date = Query(..., description="First date (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Last date, defaults to start_date"),
    duration: int = Query(settings.DEFAULT_SLOT_DURATION_MINUTES, ge=5, le=24 * 60),
    interval: int = Query(settings.DEFAULT_SLOT_INTERVAL_MINUTES, ge=5, le=24 * 60),
    db: Session = Depends(get_db),
):
    """
    Bookable start times for a seller over a date range.

    Blocked, booked and locked slots are removed, and today's slots honour the
    seller's same-day cutoff. Does not require authentication.
    """
    end_date = end_date or start_date
    if (end_date - start_date).days > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")

    seller = _load_seller(db, seller_id)
    slots = slot_ledger.get_available_slots(db, seller, start_date, end_date, duration, interval)
    return AvailabilityResponse(
        seller_id=seller.id,
        duration_minutes=duration,
        interval_minutes=interval,
        slots=[AvailableSlot(date=d, time=t) for d, t in slots],
    )


@seller_public_router.get("/{seller_id}/same-day", response_model=CutoffStatus)
def get_same_day_status(seller_id: UUID, db: Session = Depends(get_db)):
    """Whether the seller currently accepts same-day bookings and pickups."""
    return is_same_day_allowed(_load_seller(db, seller_id))


# ---------------------------------------------------------------------------
# Slot locks (held while the customer completes checkout)
# ---------------------------------------------------------------------------


@slot_lock_router.post("/", response_model=SlotLockResponse)
def lock_slot(
    body: SlotLockRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    """
    Lock a seller slot for the authenticated customer. Locking a slot the
    customer already holds extends its TTL.
    """
    seller = _load_seller(db, body.seller_id)
    slots = slot_ledger.get_available_slots(
        db, seller, body.slot_date, body.slot_date, customer_id=current_user.id,
    )
    if (body.slot_date, body.slot_time) not in slots:
        raise SlotUnavailableError("The selected time slot is not available")

    now = datetime.now(timezone.utc)
    if not slot_ledger.lock_slot(db, seller.id, body.slot_date, body.slot_time, current_user.id, now=now):
        db.rollback()
        raise SlotUnavailableError("The selected time slot is being booked by another customer")
    db.commit()

    return SlotLockResponse(
        locked=True,
        seller_id=seller.id,
        slot_date=body.slot_date,
        slot_time=body.slot_time,
        expires_at=now + timedelta(minutes=settings.SLOT_LOCK_MINUTES),
        ttl_seconds=settings.SLOT_LOCK_MINUTES * 60,
    )


@slot_lock_router.delete("/", response_model=SlotLockResponse)
def release_slot_lock(
    seller_id: UUID,
    slot_date: date,
    slot_time: time,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    """Release the caller's lock on a slot. Releasing a missing lock succeeds."""
    slot_ledger.release_lock(db, seller_id, slot_date, slot_time, customer_id=current_user.id)
    db.commit()
    return SlotLockResponse(
        locked=False,
        seller_id=seller_id,
        slot_date=slot_date,
        slot_time=slot_time,
        ttl_seconds=0,
    )
