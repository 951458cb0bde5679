"""
Tests — Order state machine, commission freeze and QR pickup
================================================================
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.core.errors import (
    AlreadyScannedError, ConflictError, InvalidTransitionError, NotFoundError, ValidationError,
)
from marketplace.models.notification import Notification
from marketplace.models.order import Frozen, Order, OrderStatus, Unfrozen
from marketplace.services import fulfillment
from marketplace.services.fulfillment import (
    backfill_commissions, freeze_commission, pickup_payload, resolve_commission_rate, transition, verify_pickup,
)


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def seller(make_seller):
    return make_seller()


class TestTransitions:
    def test_seller_walks_order_to_complete(self, db, customer, seller, make_order):
        order = make_order(customer, seller)
        transition(db, order, OrderStatus.READY)
        assert order.status == OrderStatus.READY
        assert order.ready_at is not None

        transition(db, order, "complete")
        assert order.status == OrderStatus.COMPLETE
        assert order.picked_up_at is not None

        kinds = [n.type for n in db.query(Notification).filter(Notification.user_id == customer.id).all()]
        assert sorted(kinds) == ["order_collected", "order_ready_for_pickup"]

    @pytest.mark.parametrize("start, target", [
        (OrderStatus.READY, OrderStatus.PROCESSING),
        (OrderStatus.PROCESSING, OrderStatus.COMPLETE),
        (OrderStatus.COMPLETE, OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, OrderStatus.PROCESSING),
    ])
    def test_illegal_transitions(self, db, customer, seller, make_order, start, target):
        order = make_order(customer, seller, status=start)
        with pytest.raises(InvalidTransitionError) as exc:
            transition(db, order, target)
        assert exc.value.details["current_status"] == start.value
        db.refresh(order)
        assert order.status == start

    def test_seller_can_only_cancel_unpaid_order(self, db, customer, seller, make_order):
        order = make_order(customer, seller, status=OrderStatus.AWAITING_PAYMENT)
        with pytest.raises(InvalidTransitionError):
            transition(db, order, OrderStatus.PROCESSING, actor="seller")
        transition(db, order, OrderStatus.CANCELLED, actor="seller")
        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_at is not None

    def test_payment_path_may_leave_awaiting_payment(self, db, customer, seller, make_order):
        order = make_order(customer, seller, status=OrderStatus.AWAITING_PAYMENT)
        transition(db, order, OrderStatus.PROCESSING, actor="payment")
        assert order.status == OrderStatus.PROCESSING

    def test_stale_status_is_a_conflict(self, db, session_factory, customer, seller, make_order):
        order = make_order(customer, seller)
        other = session_factory()
        try:
            transition(other, other.get(Order, order.id), OrderStatus.READY)
        finally:
            other.close()
        # `order` still believes it is processing
        with pytest.raises(ConflictError):
            transition(db, order, OrderStatus.CANCELLED)

    def test_revenue_recognition(self):
        assert not fulfillment.is_revenue_recognized(OrderStatus.AWAITING_PAYMENT)
        assert not fulfillment.is_revenue_recognized("pending")
        assert not fulfillment.is_revenue_recognized(OrderStatus.CANCELLED)
        assert fulfillment.is_revenue_recognized(OrderStatus.PROCESSING)
        assert fulfillment.is_revenue_recognized(OrderStatus.COMPLETE)


class TestCommission:
    def test_default_rate(self, seller):
        assert resolve_commission_rate(seller) == Decimal("0.10")

    def test_trial_beats_override(self, make_seller):
        now = datetime.now(timezone.utc)
        seller = make_seller(trial_ends_at=now + timedelta(days=10), commission_rate_override=Decimal("0.05"))
        assert resolve_commission_rate(seller, now) == Decimal("0")
        assert resolve_commission_rate(seller, now + timedelta(days=11)) == Decimal("0.05")

    def test_out_of_range_override_is_ignored(self, make_seller):
        seller = make_seller(commission_rate_override=Decimal("1.5"))
        assert resolve_commission_rate(seller) == Decimal("0.10")

    def test_split_is_frozen_once(self, db, customer, seller, make_order):
        order = make_order(customer, seller, total="100.00")
        assert order.commission == Unfrozen()

        assert freeze_commission(db, order) is True
        db.commit()
        db.refresh(order)
        assert order.commission == Frozen(seller_amount=Decimal("90.00"), commission=Decimal("10.00"))

        seller.commission_rate_override = Decimal("0.20")
        db.commit()
        assert freeze_commission(db, order) is False
        transition(db, order, OrderStatus.READY)
        assert order.commission == Frozen(seller_amount=Decimal("90.00"), commission=Decimal("10.00"))

    def test_trial_seller_keeps_everything(self, db, customer, make_seller, make_order):
        seller = make_seller(trial_ends_at=datetime.now(timezone.utc) + timedelta(days=30))
        order = make_order(customer, seller, total="42.50")
        transition(db, order, OrderStatus.READY)
        assert order.commission == Frozen(seller_amount=Decimal("42.50"), commission=Decimal("0.00"))

    def test_backfill_freezes_recognized_orders_only(self, db, customer, seller, make_order):
        ready = make_order(customer, seller, status=OrderStatus.READY)
        unpaid = make_order(customer, seller, status=OrderStatus.AWAITING_PAYMENT)
        cancelled = make_order(customer, seller, status=OrderStatus.CANCELLED)

        assert backfill_commissions(db) == 1
        assert backfill_commissions(db) == 0

        for order in (ready, unpaid, cancelled):
            db.refresh(order)
        assert isinstance(ready.commission, Frozen)
        assert unpaid.commission == Unfrozen()
        assert cancelled.commission == Unfrozen()


class TestPickupQR:
    def test_scan_completes_order_once(self, db, customer, seller, make_order):
        order = make_order(customer, seller, status=OrderStatus.READY)
        qr_data = json.dumps(pickup_payload(order))

        scanned = verify_pickup(db, seller, qr_data, scanned_by=seller.user_id)
        assert scanned.status == OrderStatus.COMPLETE
        assert scanned.qr_scanned_by == seller.user_id
        assert scanned.picked_up_at is not None
        assert isinstance(scanned.commission, Frozen)

        with pytest.raises(AlreadyScannedError) as exc:
            verify_pickup(db, seller, qr_data, scanned_by=seller.user_id)
        assert exc.value.details["scanned_at"] is not None

    def test_payload_may_be_a_dict(self, db, customer, seller, make_order):
        order = make_order(customer, seller)
        scanned = verify_pickup(db, seller, pickup_payload(order), scanned_by=seller.user_id)
        assert scanned.status == OrderStatus.COMPLETE

    def test_payload_is_regenerated_with_same_signature(self, customer, seller, make_order):
        order = make_order(customer, seller)
        first = pickup_payload(order, datetime(2026, 1, 1, tzinfo=timezone.utc))
        second = pickup_payload(order, datetime(2026, 2, 1, tzinfo=timezone.utc))
        assert first["signature"] == second["signature"]
        assert first["timestamp"] != second["timestamp"]

    def test_tampered_signature(self, db, customer, seller, make_order):
        order = make_order(customer, seller)
        payload = pickup_payload(order)
        payload["signature"] = "0" * 64
        with pytest.raises(ValidationError):
            verify_pickup(db, seller, payload, scanned_by=seller.user_id)
        db.refresh(order)
        assert order.qr_scanned_at is None

    @pytest.mark.parametrize("qr_data", ["not json", "[1, 2]", json.dumps({"signature": "x"}),
                                         json.dumps({"orderId": "not-a-uuid"})])
    def test_malformed_payload(self, db, seller, qr_data):
        with pytest.raises(ValidationError):
            verify_pickup(db, seller, qr_data, scanned_by=seller.user_id)

    def test_other_sellers_order(self, db, customer, seller, make_seller, make_order):
        order = make_order(customer, make_seller(name="Elsewhere"))
        with pytest.raises(NotFoundError):
            verify_pickup(db, seller, pickup_payload(order), scanned_by=seller.user_id)

    @pytest.mark.parametrize("status", [OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED, OrderStatus.COMPLETE])
    def test_unscannable_statuses(self, db, customer, seller, make_order, status):
        order = make_order(customer, seller, status=status)
        with pytest.raises(ConflictError) as exc:
            verify_pickup(db, seller, pickup_payload(order), scanned_by=seller.user_id)
        assert not isinstance(exc.value, AlreadyScannedError)

    def test_expired_code(self, db, customer, seller, make_order):
        order = make_order(customer, seller)
        db.query(Order).filter(Order.id == order.id).update(
            {"created_at": datetime.now(timezone.utc) - timedelta(days=31)}, synchronize_session=False
        )
        db.commit()
        db.refresh(order)
        with pytest.raises(ValidationError, match="expired"):
            verify_pickup(db, seller, pickup_payload(order), scanned_by=seller.user_id)
