from typing import Annotated, List, Optional
from pydantic import BaseModel, Field, UUID4, model_validator
from datetime import date, datetime, time


# --- Weekly schedule (0 = Sunday ... 6 = Saturday) ---

class ScheduleDay(BaseModel):
    day_of_week: Annotated[int, Field(ge=0, le=6)]
    is_available: bool = False
    start_time: Optional[time] = None
    end_time: Optional[time] = None


class ScheduleUpdate(BaseModel):
    days: Annotated[List[ScheduleDay], Field(min_length=1, max_length=7)]


# --- Explicit slots ---

class ExplicitSlotIn(BaseModel):
    slot_time: time
    enabled: bool = True


class ExplicitSlotsUpdate(BaseModel):
    slots: List[ExplicitSlotIn]


class ExplicitSlot(BaseModel):
    id: UUID4
    day_of_week: int
    slot_time: time
    enabled: bool

    class Config:
        from_attributes = True


# --- Blocks ---

class BlockCreate(BaseModel):
    block_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_all_day: bool = False
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_times(self):
        if not self.is_all_day and self.start_time is None:
            raise ValueError("start_time is required unless is_all_day is set")
        return self


class Block(BaseModel):
    id: UUID4
    block_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_all_day: bool
    reason: Optional[str] = None
    order_id: Optional[UUID4] = None

    class Config:
        from_attributes = True


# --- Availability ---

class AvailableSlot(BaseModel):
    date: date
    time: time


class AvailabilityResponse(BaseModel):
    seller_id: UUID4
    duration_minutes: int
    interval_minutes: int
    slots: List[AvailableSlot]


class GridSlot(BaseModel):
    date: date
    time: time
    status: str  # available, booked, blocked, locked


class SlotGridResponse(BaseModel):
    seller_id: UUID4
    slots: List[GridSlot]


class CutoffStatus(BaseModel):
    allowed: bool
    reason: Optional[str] = None


# --- Locks ---

class SlotLockRequest(BaseModel):
    seller_id: UUID4
    slot_date: date
    slot_time: time


class SlotLockResponse(BaseModel):
    locked: bool
    seller_id: UUID4
    slot_date: date
    slot_time: time
    expires_at: Optional[datetime] = None
    ttl_seconds: int


# --- Seller same-day settings ---

class SellerSettingsUpdate(BaseModel):
    same_day_pickup_allowed: Optional[bool] = None
    cutoff_time: Optional[str] = None  # "HH:MM" or "HH:MM:SS", empty string clears


class SellerSettings(BaseModel):
    same_day_pickup_allowed: bool
    cutoff_time: Optional[str] = None

    class Config:
        from_attributes = True
