from uuid import UUID
from typing import List, Optional
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_seller
from marketplace.core.config import settings
from marketplace.models.seller import Seller
from marketplace.schemas.availability import (
    Block,
    BlockCreate,
    ExplicitSlot,
    ExplicitSlotsUpdate,
    GridSlot,
    ScheduleDay,
    ScheduleUpdate,
    SellerSettings,
    SellerSettingsUpdate,
    SlotGridResponse,
)
from marketplace.services import slot_ledger
from marketplace.services.cutoff import parse_cutoff

router = APIRouter(prefix="/seller/availability", tags=["Seller - Availability"])


# ---------------------------------------------------------------------------
# Weekly schedule
# ---------------------------------------------------------------------------


@router.get("/schedule", response_model=List[ScheduleDay])
def get_schedule(seller: Seller = Depends(get_current_seller), db: Session = Depends(get_db)):
    """Seven entries, 0 = Sunday ... 6 = Saturday."""
    return slot_ledger.get_weekly_schedule(db, seller.id)


@router.put("/schedule", response_model=List[ScheduleDay])
def update_schedule(
    body: ScheduleUpdate,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """Upsert the given weekdays; days not sent are left as they are."""
    return slot_ledger.set_weekly_schedule(db, seller.id, [d.model_dump() for d in body.days])


# ---------------------------------------------------------------------------
# Explicit slot times
# ---------------------------------------------------------------------------


@router.get("/explicit-slots", response_model=List[ExplicitSlot])
def list_explicit_slots(
    day_of_week: Optional[int] = Query(None, ge=0, le=6),
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    return slot_ledger.list_explicit_slots(db, seller.id, day_of_week)


@router.put("/explicit-slots/{day_of_week}", response_model=List[ExplicitSlot])
def replace_explicit_slots(
    day_of_week: int,
    body: ExplicitSlotsUpdate,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """
    Replace the explicit start times for one weekday. An empty list returns
    the day to the generated interval grid.
    """
    return slot_ledger.set_explicit_slots(db, seller.id, day_of_week, [s.model_dump() for s in body.slots])


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


@router.get("/blocks", response_model=List[Block])
def list_blocks(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    return slot_ledger.list_blocks(db, seller.id, start_date, end_date)


@router.post("/blocks", response_model=Block, status_code=status.HTTP_201_CREATED)
def create_block(
    body: BlockCreate,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    return slot_ledger.create_block(
        db, seller.id, body.block_date, body.start_time, body.end_time, body.is_all_day, body.reason,
    )


@router.delete("/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_block(
    block_id: UUID,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    slot_ledger.delete_block(db, seller.id, block_id)


# ---------------------------------------------------------------------------
# Grid and same-day settings
# ---------------------------------------------------------------------------


@router.get("/grid", response_model=SlotGridResponse)
def get_grid(
    start_date: date,
    end_date: Optional[date] = None,
    duration: int = Query(settings.DEFAULT_SLOT_DURATION_MINUTES, ge=5, le=24 * 60),
    interval: int = Query(settings.DEFAULT_SLOT_INTERVAL_MINUTES, ge=5, le=24 * 60),
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """Every candidate slot in the range with its status (available, booked, blocked, locked)."""
    grid = slot_ledger.get_slot_grid(
        db, seller, start_date, end_date or start_date, interval_minutes=interval, duration_minutes=duration,
    )
    return SlotGridResponse(seller_id=seller.id, slots=[GridSlot(**slot) for slot in grid])


@router.get("/settings", response_model=SellerSettings)
def get_settings(seller: Seller = Depends(get_current_seller)):
    return seller


@router.patch("/settings", response_model=SellerSettings)
def update_settings(
    body: SellerSettingsUpdate,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """Toggle same-day pickups and set the same-day cutoff time."""
    data = body.model_dump(exclude_unset=True)
    if "cutoff_time" in data:
        value = (data["cutoff_time"] or "").strip()
        if value:
            parse_cutoff(value)
        seller.cutoff_time = value or None
    if data.get("same_day_pickup_allowed") is not None:
        seller.same_day_pickup_allowed = data["same_day_pickup_allowed"]
    db.commit()
    db.refresh(seller)
    return seller
