"""
Tests — Slot ledger (locks, availability, schedule CRUD)
===========================================================
"""

import threading
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.models.availability import SlotLock
from marketplace.models.order import Order, OrderServiceItem, OrderStatus
from marketplace.services import slot_ledger
from marketplace.services.slot_ledger import get_available_slots, lock_slot

SLOT_DATE = date(2026, 3, 1)
SLOT_TIME = time(10, 0)
T0 = datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)


class TestDayOfWeek:
    def test_sunday_is_zero(self):
        assert slot_ledger.day_of_week(date(2026, 3, 1)) == 0  # a Sunday
        assert slot_ledger.day_of_week(date(2026, 3, 7)) == 6  # a Saturday


class TestLockSlot:
    def test_first_lock_succeeds(self, db, make_seller, make_user):
        seller, customer = make_seller(), make_user()
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, customer.id, now=T0) is True
        db.commit()
        assert slot_ledger.get_lock_holder(db, seller.id, SLOT_DATE, SLOT_TIME, now=T0) == customer.id

    def test_other_customer_is_refused_while_live(self, db, make_seller, make_user):
        seller, first, second = make_seller(), make_user(), make_user()
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, first.id, now=T0)
        db.commit()
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, second.id, now=T0 + timedelta(minutes=5)) is False
        db.commit()
        assert slot_ledger.get_lock_holder(db, seller.id, SLOT_DATE, SLOT_TIME, now=T0) == first.id

    def test_same_customer_extends_lock(self, db, make_seller, make_user):
        seller, customer = make_seller(), make_user()
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, customer.id, now=T0)
        db.commit()
        later = T0 + timedelta(minutes=10)
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, customer.id, now=later)
        db.commit()
        assert db.query(SlotLock).count() == 1
        # Still held 20 minutes after the first attempt because the TTL was extended
        assert slot_ledger.get_lock_holder(
            db, seller.id, SLOT_DATE, SLOT_TIME, now=T0 + timedelta(minutes=20)
        ) == customer.id

    def test_expired_lock_can_be_taken_over(self, db, make_seller, make_user):
        seller, first, second = make_seller(), make_user(), make_user()
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, first.id, now=T0)
        db.commit()
        assert lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, second.id, now=T0 + timedelta(minutes=16))
        db.commit()
        assert slot_ledger.get_lock_holder(
            db, seller.id, SLOT_DATE, SLOT_TIME, now=T0 + timedelta(minutes=16)
        ) == second.id

    def test_release_only_own_lock(self, db, make_seller, make_user):
        seller, holder, other = make_seller(), make_user(), make_user()
        lock_slot(db, seller.id, SLOT_DATE, SLOT_TIME, holder.id, now=T0)
        db.commit()
        assert slot_ledger.release_lock(db, seller.id, SLOT_DATE, SLOT_TIME, customer_id=other.id) == 0
        assert slot_ledger.release_lock(db, seller.id, SLOT_DATE, SLOT_TIME, customer_id=holder.id) == 1
        db.commit()
        assert slot_ledger.release_lock(db, seller.id, SLOT_DATE, SLOT_TIME) == 0

    def test_cleanup_expired_locks(self, db, make_seller, make_user):
        seller, customer = make_seller(), make_user()
        lock_slot(db, seller.id, SLOT_DATE, time(10, 0), customer.id, now=T0)
        lock_slot(db, seller.id, SLOT_DATE, time(11, 0), customer.id, now=T0 + timedelta(minutes=30))
        db.commit()
        assert slot_ledger.cleanup_expired_locks(db, now=T0 + timedelta(minutes=20)) == 1
        assert db.query(SlotLock).count() == 1

    def test_concurrent_lock_attempts_exactly_one_wins(self, session_factory, db, make_seller, make_user):
        seller = make_seller()
        customers = [make_user().id for _ in range(2)]
        seller_id = seller.id
        barrier = threading.Barrier(len(customers))
        results = {}

        def attempt(customer_id):
            session = session_factory()
            try:
                barrier.wait()
                results[customer_id] = lock_slot(session, seller_id, SLOT_DATE, SLOT_TIME, customer_id, now=T0)
                session.commit()
            finally:
                session.close()

        threads = [threading.Thread(target=attempt, args=(cid,)) for cid in customers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results.values()) == [False, True]
        winner = next(cid for cid, ok in results.items() if ok)
        assert slot_ledger.get_lock_holder(db, seller_id, SLOT_DATE, SLOT_TIME, now=T0) == winner


class TestAvailableSlots:
    def test_generated_grid_from_schedule(self, db, make_seller, open_every_day, booking_day):
        seller = make_seller()
        open_every_day(seller)
        slots = list(get_available_slots(db, seller, booking_day, booking_day, 60, 30))
        times = [t for _, t in slots]
        assert times[0] == time(9, 0)
        assert times[-1] == time(16, 0)  # 16:00 + 60 min ends exactly at close
        assert len(times) == 15

    def test_iteration_is_restartable(self, db, make_seller, open_every_day, booking_day):
        seller = make_seller()
        open_every_day(seller)
        slots = get_available_slots(db, seller, booking_day, booking_day + timedelta(days=1))
        assert list(slots) == list(slots)

    def test_closed_day_has_no_slots(self, db, make_seller, booking_day):
        seller = make_seller()
        assert list(get_available_slots(db, seller, booking_day, booking_day)) == []

    def test_blocks_remove_overlapping_slots(self, db, make_seller, open_every_day, booking_day):
        seller = make_seller()
        open_every_day(seller)
        slot_ledger.create_block(db, seller.id, booking_day, time(12, 0), time(13, 0), reason="staff")
        times = [t for _, t in get_available_slots(db, seller, booking_day, booking_day, 60, 30)]
        for blocked in (time(11, 30), time(12, 0), time(12, 30)):
            assert blocked not in times
        assert time(11, 0) in times
        assert time(13, 0) in times

    def test_all_day_block(self, db, make_seller, open_every_day, booking_day):
        seller = make_seller()
        open_every_day(seller)
        slot_ledger.create_block(db, seller.id, booking_day, is_all_day=True, reason="holiday")
        assert list(get_available_slots(db, seller, booking_day, booking_day)) == []

    def test_live_booking_excluded_cancelled_booking_not(
        self, db, make_seller, make_user, make_service, open_every_day, booking_day,
    ):
        seller, customer = make_seller(), make_user()
        service = make_service(seller)
        open_every_day(seller)
        for status, at in ((OrderStatus.PROCESSING, time(14, 0)), (OrderStatus.CANCELLED, time(10, 0))):
            order = Order(
                user_id=customer.id, seller_id=seller.id, status=status,
                subtotal=Decimal("30.00"), total=Decimal("30.00"),
            )
            order.service_items.append(OrderServiceItem(
                service_id=service.id, service_name=service.name, quantity=1, unit_price=Decimal("30.00"),
                booking_date=booking_day, booking_time=at, duration_minutes=60,
            ))
            db.add(order)
        db.commit()

        slots = get_available_slots(db, seller, booking_day, booking_day, 60, 30)
        assert (booking_day, time(14, 0)) not in slots
        assert (booking_day, time(13, 30)) not in slots
        assert (booking_day, time(10, 0)) in slots

    def test_locked_slot_hidden_from_others_only(self, db, make_seller, make_user, open_every_day, booking_day):
        seller, holder, other = make_seller(), make_user(), make_user()
        open_every_day(seller)
        lock_slot(db, seller.id, booking_day, time(10, 0), holder.id)
        db.commit()
        assert (booking_day, time(10, 0)) not in get_available_slots(
            db, seller, booking_day, booking_day, customer_id=other.id
        )
        assert (booking_day, time(10, 0)) in get_available_slots(
            db, seller, booking_day, booking_day, customer_id=holder.id
        )

    def test_today_respects_cutoff(self, db, make_seller, open_every_day):
        seller = make_seller(cutoff_time="17:00")
        open_every_day(seller, end=time(23, 0))
        today = date(2026, 3, 1)
        after_cutoff = datetime(2026, 3, 1, 17, 1)
        assert list(get_available_slots(db, seller, today, today, now=after_cutoff)) == []

    def test_today_skips_started_slots(self, db, make_seller, open_every_day):
        seller = make_seller()
        open_every_day(seller)
        today = date(2026, 3, 1)
        slots = list(get_available_slots(db, seller, today, today, 60, 30, now=datetime(2026, 3, 1, 10, 15)))
        assert slots[0] == (today, time(10, 30))

    def test_past_dates_have_no_slots(self, db, make_seller, open_every_day):
        seller = make_seller()
        open_every_day(seller)
        now = datetime(2026, 3, 2, 8, 0)
        assert list(get_available_slots(db, seller, date(2026, 3, 1), date(2026, 3, 1), now=now)) == []

    def test_explicit_slots_replace_generated_grid(self, db, make_seller, open_every_day, booking_day):
        seller = make_seller()
        open_every_day(seller)
        dow = slot_ledger.day_of_week(booking_day)
        slot_ledger.set_explicit_slots(db, seller.id, dow, [
            {"slot_time": time(10, 0), "enabled": True},
            {"slot_time": time(11, 0), "enabled": False},
            {"slot_time": time(16, 30), "enabled": True},  # would end after closing
        ])
        assert list(get_available_slots(db, seller, booking_day, booking_day, 60, 30)) == [(booking_day, time(10, 0))]

    def test_invalid_range(self, db, make_seller, booking_day):
        with pytest.raises(ValidationError):
            get_available_slots(db, make_seller(), booking_day, booking_day - timedelta(days=1))

    def test_grid_reports_statuses(self, db, make_seller, make_user, open_every_day, booking_day):
        seller, customer = make_seller(), make_user()
        open_every_day(seller)
        slot_ledger.create_block(db, seller.id, booking_day, time(9, 0), time(10, 0))
        lock_slot(db, seller.id, booking_day, time(15, 0), customer.id)
        db.commit()
        grid = {g["time"]: g["status"] for g in slot_ledger.get_slot_grid(db, seller, booking_day, booking_day)}
        assert grid[time(9, 0)] == "blocked"
        assert grid[time(15, 0)] == "locked"
        assert grid[time(12, 0)] == "available"


class TestScheduleCrud:
    def test_schedule_has_seven_days(self, db, make_seller):
        schedule = slot_ledger.get_weekly_schedule(db, make_seller().id)
        assert [d["day_of_week"] for d in schedule] == list(range(7))
        assert not any(d["is_available"] for d in schedule)

    def test_upsert_schedule(self, db, make_seller):
        seller = make_seller()
        slot_ledger.set_weekly_schedule(db, seller.id, [
            {"day_of_week": 1, "is_available": True, "start_time": time(9), "end_time": time(12)},
        ])
        schedule = slot_ledger.set_weekly_schedule(db, seller.id, [
            {"day_of_week": 1, "is_available": True, "start_time": time(10), "end_time": time(18)},
        ])
        assert schedule[1]["start_time"] == time(10)
        assert schedule[1]["end_time"] == time(18)

    def test_available_day_needs_times(self, db, make_seller):
        with pytest.raises(ValidationError):
            slot_ledger.set_weekly_schedule(db, make_seller().id, [{"day_of_week": 2, "is_available": True}])

    def test_start_must_precede_end(self, db, make_seller):
        with pytest.raises(ValidationError):
            slot_ledger.set_weekly_schedule(db, make_seller().id, [
                {"day_of_week": 2, "is_available": True, "start_time": time(18), "end_time": time(9)},
            ])

    def test_duplicate_explicit_times_rejected(self, db, make_seller):
        with pytest.raises(ValidationError):
            slot_ledger.set_explicit_slots(db, make_seller().id, 3, [
                {"slot_time": time(10)}, {"slot_time": time(10)},
            ])

    def test_delete_block_of_other_seller_not_found(self, db, make_seller, booking_day):
        owner, other = make_seller(), make_seller()
        block = slot_ledger.create_block(db, owner.id, booking_day, is_all_day=True)
        with pytest.raises(NotFoundError):
            slot_ledger.delete_block(db, other.id, block.id)
        slot_ledger.delete_block(db, owner.id, block.id)
        assert slot_ledger.list_blocks(db, owner.id) == []
