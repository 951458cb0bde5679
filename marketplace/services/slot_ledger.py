"""
Slot ledger: weekly schedules, explicit slot lists, availability blocks and
short-lived slot locks for bookable services.

Dates and times of slots are seller-local, timezone-naive values (the same
convention as booking dates on orders). Lock expiry is tracked in UTC.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.models.availability import AvailabilityBlock, ExplicitSlot, SlotLock, WeeklySchedule
from marketplace.models.order import Order, OrderServiceItem, OrderStatus
from marketplace.models.seller import Seller
from marketplace.services.cutoff import is_same_day_allowed

logger = logging.getLogger(__name__)

BOOKING_BLOCK_REASON = "booking"


def day_of_week(d: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def _add_minutes(t: time, minutes: int) -> datetime:
    return datetime.combine(date.min, t) + timedelta(minutes=minutes)


def _overlaps(start: time, minutes: int, other_start: time, other_minutes: int) -> bool:
    a0, a1 = datetime.combine(date.min, start), _add_minutes(start, minutes)
    b0, b1 = datetime.combine(date.min, other_start), _add_minutes(other_start, other_minutes)
    return a0 < b1 and b0 < a1


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


def _insert_for(db: Session):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def lock_slot(
    db: Session,
    seller_id,
    slot_date: date,
    slot_time: time,
    customer_id,
    now: Optional[datetime] = None,
) -> bool:
    """
    Take (or extend) the lock on one seller slot for `customer_id`.

    A single INSERT ... ON CONFLICT DO UPDATE: the existing row is only
    overwritten when it has expired or is already held by the same customer,
    so two concurrent callers can never both succeed on a live key. Returns
    False, with no side effect, when another customer holds a live lock.
    The caller owns the transaction.
    """
    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=settings.SLOT_LOCK_MINUTES)
    insert = _insert_for(db)

    stmt = insert(SlotLock).values(
        seller_id=seller_id,
        slot_date=slot_date,
        slot_time=slot_time,
        locked_by=customer_id,
        expires_at=expires_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SlotLock.seller_id, SlotLock.slot_date, SlotLock.slot_time],
        set_={"locked_by": stmt.excluded.locked_by, "expires_at": stmt.excluded.expires_at},
        where=or_(SlotLock.expires_at < now, SlotLock.locked_by == customer_id),
    ).returning(SlotLock.id)

    acquired = db.execute(stmt).first() is not None
    if not acquired:
        logger.info("Slot %s %s for seller %s is locked by another customer", slot_date, slot_time, seller_id)
    return acquired


def release_lock(db: Session, seller_id, slot_date: date, slot_time: time, customer_id=None) -> int:
    """Remove the lock on a slot. Releasing a missing lock is not an error."""
    query = db.query(SlotLock).filter(
        SlotLock.seller_id == seller_id,
        SlotLock.slot_date == slot_date,
        SlotLock.slot_time == slot_time,
    )
    if customer_id is not None:
        query = query.filter(SlotLock.locked_by == customer_id)
    return query.delete(synchronize_session="fetch")


def cleanup_expired_locks(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    count = (
        db.query(SlotLock)
        .filter(SlotLock.expires_at < now)
        .delete(synchronize_session="fetch")
    )
    db.commit()
    return count


def get_lock_holder(db: Session, seller_id, slot_date: date, slot_time: time, now: Optional[datetime] = None):
    now = now or datetime.now(timezone.utc)
    lock = db.query(SlotLock).filter(
        SlotLock.seller_id == seller_id,
        SlotLock.slot_date == slot_date,
        SlotLock.slot_time == slot_time,
        SlotLock.expires_at >= now,
    ).first()
    return lock.locked_by if lock else None


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class AvailableSlots:
    """
    Bookable (date, time) pairs for one seller over a date range.

    The ledger state is read once, when the object is built; iterating walks
    the range lazily and can be repeated any number of times with the same
    result.
    """

    def __init__(
        self,
        db: Session,
        seller: Seller,
        start_date: date,
        end_date: date,
        duration_minutes: int,
        interval_minutes: int,
        now: Optional[datetime] = None,
        customer_id=None,
    ):
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        if duration_minutes <= 0 or interval_minutes <= 0:
            raise ValidationError("duration and interval must be positive")

        self.seller = seller
        self.start_date = start_date
        self.end_date = end_date
        self.duration = duration_minutes
        self.interval = interval_minutes
        self.customer_id = customer_id
        self.now = now or datetime.now()

        self.schedule: Dict[int, WeeklySchedule] = {
            row.day_of_week: row
            for row in db.query(WeeklySchedule).filter(WeeklySchedule.seller_id == seller.id).all()
        }
        self.explicit: Dict[int, List[time]] = {}
        for slot in (
            db.query(ExplicitSlot)
            .filter(ExplicitSlot.seller_id == seller.id, ExplicitSlot.enabled == True)  # noqa: E712
            .order_by(ExplicitSlot.slot_time)
            .all()
        ):
            self.explicit.setdefault(slot.day_of_week, []).append(slot.slot_time)

        self.blocks: Dict[date, List[AvailabilityBlock]] = {}
        for block in db.query(AvailabilityBlock).filter(
            AvailabilityBlock.seller_id == seller.id,
            AvailabilityBlock.block_date >= start_date,
            AvailabilityBlock.block_date <= end_date,
        ).all():
            self.blocks.setdefault(block.block_date, []).append(block)

        self.bookings: Dict[date, List[Tuple[time, int]]] = {}
        booked_items = (
            db.query(OrderServiceItem.booking_date, OrderServiceItem.booking_time, OrderServiceItem.duration_minutes)
            .join(Order, Order.id == OrderServiceItem.order_id)
            .filter(
                Order.seller_id == seller.id,
                Order.status != OrderStatus.CANCELLED,
                OrderServiceItem.booking_date >= start_date,
                OrderServiceItem.booking_date <= end_date,
                OrderServiceItem.booking_time.isnot(None),
            )
            .all()
        )
        for booking_date, booking_time, minutes in booked_items:
            self.bookings.setdefault(booking_date, []).append(
                (booking_time, minutes or settings.DEFAULT_SLOT_DURATION_MINUTES)
            )

        utc_now = datetime.now(timezone.utc)
        self.locks: Dict[Tuple[date, time], object] = {
            (lock.slot_date, lock.slot_time): lock.locked_by
            for lock in db.query(SlotLock).filter(
                SlotLock.seller_id == seller.id,
                SlotLock.slot_date >= start_date,
                SlotLock.slot_date <= end_date,
                SlotLock.expires_at >= utc_now,
            ).all()
        }

    # -- candidate generation ------------------------------------------------

    def candidate_times(self, d: date) -> List[time]:
        """Schedule-derived start times for one date, before any exclusion."""
        day = self.schedule.get(day_of_week(d))
        if not day or not day.is_available or not day.start_time or not day.end_time:
            return []

        window_end = datetime.combine(date.min, day.end_time)
        explicit = self.explicit.get(day_of_week(d))
        if explicit:
            return [
                t for t in explicit
                if t >= day.start_time and _add_minutes(t, self.duration) <= window_end
            ]

        times = []
        cursor = datetime.combine(date.min, day.start_time)
        while cursor + timedelta(minutes=self.duration) <= window_end:
            times.append(cursor.time())
            cursor += timedelta(minutes=self.interval)
        return times

    def _is_blocked(self, d: date, t: time) -> bool:
        for block in self.blocks.get(d, []):
            if block.is_all_day or block.start_time is None:
                return True
            end = block.end_time
            if end is None:
                minutes = settings.DEFAULT_SLOT_DURATION_MINUTES
            else:
                minutes = int((datetime.combine(date.min, end) - datetime.combine(date.min, block.start_time)).total_seconds() // 60)
            if _overlaps(t, self.duration, block.start_time, minutes):
                return True
        return False

    def _is_booked(self, d: date, t: time) -> bool:
        return any(_overlaps(t, self.duration, bt, bm) for bt, bm in self.bookings.get(d, []))

    def _is_locked(self, d: date, t: time) -> bool:
        holder = self.locks.get((d, t))
        return holder is not None and holder != self.customer_id

    def _day_open(self, d: date) -> bool:
        today = self.now.date()
        if d < today:
            return False
        if d == today:
            return is_same_day_allowed(self.seller, self.now)["allowed"]
        return True

    def _started(self, d: date, t: time) -> bool:
        return d == self.now.date() and t <= self.now.time()

    def status_of(self, d: date, t: time) -> str:
        if self._is_blocked(d, t):
            return "blocked"
        if self._is_booked(d, t):
            return "booked"
        if self._is_locked(d, t):
            return "locked"
        return "available"

    def __iter__(self) -> Iterator[Tuple[date, time]]:
        d = self.start_date
        while d <= self.end_date:
            if self._day_open(d):
                for t in self.candidate_times(d):
                    if self._started(d, t):
                        continue
                    if self.status_of(d, t) == "available":
                        yield d, t
            d += timedelta(days=1)

    def __contains__(self, item) -> bool:
        d, t = item
        if not (self.start_date <= d <= self.end_date) or not self._day_open(d):
            return False
        if t not in self.candidate_times(d) or self._started(d, t):
            return False
        return self.status_of(d, t) == "available"


def get_available_slots(
    db: Session,
    seller: Seller,
    start_date: date,
    end_date: date,
    duration_minutes: Optional[int] = None,
    interval_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
    customer_id=None,
) -> AvailableSlots:
    return AvailableSlots(
        db,
        seller,
        start_date,
        end_date,
        duration_minutes or settings.DEFAULT_SLOT_DURATION_MINUTES,
        interval_minutes or settings.DEFAULT_SLOT_INTERVAL_MINUTES,
        now=now,
        customer_id=customer_id,
    )


def get_slot_grid(
    db: Session,
    seller: Seller,
    start_date: date,
    end_date: date,
    interval_minutes: Optional[int] = None,
    duration_minutes: Optional[int] = None,
) -> List[dict]:
    """Every schedule-derived slot in the range with its status, for the seller calendar."""
    slots = get_available_slots(db, seller, start_date, end_date, duration_minutes, interval_minutes)
    grid = []
    d = start_date
    while d <= end_date:
        for t in slots.candidate_times(d):
            grid.append({"date": d, "time": t, "status": slots.status_of(d, t)})
        d += timedelta(days=1)
    return grid


# ---------------------------------------------------------------------------
# Schedule, explicit slots and blocks
# ---------------------------------------------------------------------------


def get_weekly_schedule(db: Session, seller_id) -> List[dict]:
    rows = {
        row.day_of_week: row
        for row in db.query(WeeklySchedule).filter(WeeklySchedule.seller_id == seller_id).all()
    }
    schedule = []
    for dow in range(7):
        row = rows.get(dow)
        schedule.append({
            "day_of_week": dow,
            "is_available": bool(row and row.is_available),
            "start_time": row.start_time if row else None,
            "end_time": row.end_time if row else None,
        })
    return schedule


def set_weekly_schedule(db: Session, seller_id, days: List[dict]) -> List[dict]:
    """Upsert one row per weekday. Days not mentioned are left untouched."""
    for day in days:
        dow = day["day_of_week"]
        if dow not in range(7):
            raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        if day.get("is_available"):
            if not day.get("start_time") or not day.get("end_time"):
                raise ValidationError("Available days need a start_time and end_time", day_of_week=dow)
            if day["start_time"] >= day["end_time"]:
                raise ValidationError("start_time must be before end_time", day_of_week=dow)

    existing = {
        row.day_of_week: row
        for row in db.query(WeeklySchedule).filter(WeeklySchedule.seller_id == seller_id).all()
    }
    for day in days:
        row = existing.get(day["day_of_week"])
        if row is None:
            row = WeeklySchedule(seller_id=seller_id, day_of_week=day["day_of_week"])
            db.add(row)
            existing[day["day_of_week"]] = row
        row.is_available = bool(day.get("is_available"))
        row.start_time = day.get("start_time")
        row.end_time = day.get("end_time")

    db.commit()
    return get_weekly_schedule(db, seller_id)


def set_explicit_slots(db: Session, seller_id, dow: int, slots: List[dict]) -> List[ExplicitSlot]:
    """Replace the explicit slot list for one weekday."""
    if dow not in range(7):
        raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    times = [s["slot_time"] for s in slots]
    if len(set(times)) != len(times):
        raise ValidationError("Duplicate slot times", day_of_week=dow)

    db.query(ExplicitSlot).filter(
        ExplicitSlot.seller_id == seller_id,
        ExplicitSlot.day_of_week == dow,
    ).delete(synchronize_session="fetch")
    for s in slots:
        db.add(ExplicitSlot(
            seller_id=seller_id,
            day_of_week=dow,
            slot_time=s["slot_time"],
            enabled=s.get("enabled", True),
        ))
    db.commit()
    return list_explicit_slots(db, seller_id, dow)


def list_explicit_slots(db: Session, seller_id, dow: Optional[int] = None) -> List[ExplicitSlot]:
    query = db.query(ExplicitSlot).filter(ExplicitSlot.seller_id == seller_id)
    if dow is not None:
        query = query.filter(ExplicitSlot.day_of_week == dow)
    return query.order_by(ExplicitSlot.day_of_week, ExplicitSlot.slot_time).all()


def list_blocks(db: Session, seller_id, start_date: Optional[date] = None, end_date: Optional[date] = None):
    query = db.query(AvailabilityBlock).filter(AvailabilityBlock.seller_id == seller_id)
    if start_date:
        query = query.filter(AvailabilityBlock.block_date >= start_date)
    if end_date:
        query = query.filter(AvailabilityBlock.block_date <= end_date)
    return query.order_by(AvailabilityBlock.block_date, AvailabilityBlock.start_time).all()


def create_block(
    db: Session,
    seller_id,
    block_date: date,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
    is_all_day: bool = False,
    reason: Optional[str] = None,
) -> AvailabilityBlock:
    if not is_all_day:
        if start_time is None:
            raise ValidationError("start_time is required unless the block is all day")
        if end_time is not None and end_time <= start_time:
            raise ValidationError("end_time must be after start_time")
    block = AvailabilityBlock(
        seller_id=seller_id,
        block_date=block_date,
        start_time=None if is_all_day else start_time,
        end_time=None if is_all_day else end_time,
        is_all_day=is_all_day,
        reason=reason,
    )
    db.add(block)
    db.commit()
    db.refresh(block)
    return block


def delete_block(db: Session, seller_id, block_id) -> None:
    block = db.query(AvailabilityBlock).filter(
        AvailabilityBlock.id == block_id,
        AvailabilityBlock.seller_id == seller_id,
    ).first()
    if not block:
        raise NotFoundError("Availability block not found")
    db.delete(block)
    db.commit()


# ---------------------------------------------------------------------------
# Order-bound slots
# ---------------------------------------------------------------------------


def order_slots(order: Order) -> List[Tuple[date, time, int]]:
    seen = []
    for item in order.service_items:
        if item.booking_date and item.booking_time:
            key = (item.booking_date, item.booking_time, item.duration_minutes or settings.DEFAULT_SLOT_DURATION_MINUTES)
            if key not in seen:
                seen.append(key)
    return seen


def convert_locks_to_blocks(db: Session, order: Order) -> int:
    """Turn the order's slot locks into permanent booking blocks. Caller commits."""
    created = 0
    for slot_date, slot_time, minutes in order_slots(order):
        release_lock(db, order.seller_id, slot_date, slot_time)
        exists = db.query(AvailabilityBlock.id).filter(
            AvailabilityBlock.order_id == order.id,
            AvailabilityBlock.block_date == slot_date,
            AvailabilityBlock.start_time == slot_time,
        ).first()
        if exists:
            continue
        db.add(AvailabilityBlock(
            seller_id=order.seller_id,
            block_date=slot_date,
            start_time=slot_time,
            end_time=_add_minutes(slot_time, minutes).time(),
            is_all_day=False,
            reason=BOOKING_BLOCK_REASON,
            order_id=order.id,
        ))
        created += 1
    return created


def release_order_slots(db: Session, order: Order) -> None:
    """Drop any lock or booking block held for the order. Caller commits."""
    for slot_date, slot_time, _ in order_slots(order):
        release_lock(db, order.seller_id, slot_date, slot_time, customer_id=order.user_id)
    db.query(AvailabilityBlock).filter(
        and_(AvailabilityBlock.order_id == order.id, AvailabilityBlock.reason == BOOKING_BLOCK_REASON)
    ).delete(synchronize_session="fetch")
