"""
Tests — Payment reconciliation, cancellation and the abandonment sweep
=========================================================================
"""

import threading
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.core.errors import InvalidTransitionError
from marketplace.models.availability import AvailabilityBlock, SlotLock
from marketplace.models.cart import CartItem, CartServiceItem
from marketplace.models.catalog import Product
from marketplace.models.notification import Notification
from marketplace.models.order import Frozen, Order, OrderLineItem, OrderStatus, Unfrozen
from marketplace.models.rewards import PointsTransaction, UserPoints
from marketplace.services import payments
from marketplace.services.checkout import start_checkout


@pytest.fixture
def checkout(db, processor, make_user, make_seller, make_product, make_service, add_to_cart, open_every_day, booking_day):
    """One customer, one seller, a 20.00 product and a 30.00 booked service."""
    def _checkout(points=None, balance=None):
        customer, seller = make_user(), make_seller()
        open_every_day(seller)
        product = make_product(seller, price="20.00", stock=5)
        service = make_service(seller, price="30.00")
        add_to_cart(customer, product, quantity=2)
        add_to_cart(customer, service)
        if balance is not None:
            db.add(UserPoints(user_id=customer.id, balance=Decimal(balance),
                              total_earned=Decimal(balance), total_redeemed=Decimal("0")))
            db.commit()
        result = start_checkout(
            db, processor, customer, points_to_redeem=points,
            bookings={service.id: (booking_day, time(10, 0))},
        )
        return result.orders[0], product, customer
    return _checkout


class TestReconcile:
    def test_unpaid_session_is_a_noop(self, db, processor, checkout):
        order, _, _ = checkout()
        payments.reconcile_order(db, processor, order)
        assert order.status == OrderStatus.AWAITING_PAYMENT
        assert order.payment_reference is None

    def test_paid_session_applies_side_effects_once(self, db, processor, checkout):
        order, product, customer = checkout()
        processor.paid.add(order.checkout_reference)

        payments.reconcile_order(db, processor, order)
        payments.reconcile_order(db, processor, order)
        assert payments.apply_payment(db, order.id, "pi_duplicate") is False

        db.refresh(order)
        db.refresh(product)
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_reference == f"pi_for_{order.checkout_reference}"
        assert product.stock == 3
        earned = db.query(PointsTransaction).filter(PointsTransaction.transaction_type == "earned").all()
        assert len(earned) == 1
        assert earned[0].amount == Decimal("0.70")  # 1% of 70.00
        assert db.query(UserPoints).filter(UserPoints.user_id == customer.id).one().balance == Decimal("0.70")
        assert order.points_earned == Decimal("0.70")

    def test_concurrent_triggers_apply_once(self, db, session_factory, checkout):
        order, product, customer = checkout()
        order_id = order.id
        barrier = threading.Barrier(2)
        results = []

        def trigger(reference):
            session = session_factory()
            try:
                barrier.wait()
                results.append(payments.apply_payment(session, order_id, reference))
            finally:
                session.close()

        threads = [threading.Thread(target=trigger, args=(ref,)) for ref in ("pi_redirect", "pi_webhook")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False, True]
        db.refresh(product)
        assert product.stock == 3
        earned = db.query(PointsTransaction).filter(PointsTransaction.transaction_type == "earned").all()
        assert len(earned) == 1
        assert db.query(UserPoints).filter(UserPoints.user_id == customer.id).one().balance == Decimal("0.70")
        assert db.query(AvailabilityBlock).filter(AvailabilityBlock.order_id == order_id).count() == 1

    def test_payment_clears_cart_and_converts_locks(self, db, processor, checkout, booking_day):
        order, _, customer = checkout()
        assert db.query(SlotLock).count() == 1

        payments.apply_payment(db, order.id, "pi_1")

        assert db.query(SlotLock).count() == 0
        block = db.query(AvailabilityBlock).one()
        assert block.order_id == order.id
        assert block.reason == "booking"
        assert block.block_date == booking_day and block.start_time == time(10, 0)
        assert db.query(CartItem).filter(CartItem.user_id == customer.id).count() == 0
        assert db.query(CartServiceItem).filter(CartServiceItem.user_id == customer.id).count() == 0

    def test_payment_freezes_commission(self, db, processor, checkout):
        order, _, _ = checkout()
        assert order.commission == Unfrozen()
        payments.apply_payment(db, order.id, "pi_1")
        db.refresh(order)
        assert order.commission == Frozen(seller_amount=Decimal("63.00"), commission=Decimal("7.00"))

    def test_payment_debits_reserved_points(self, db, processor, checkout):
        order, _, customer = checkout(points=Decimal("4.00"), balance="10.00")
        assert order.total == Decimal("66.00")

        payments.apply_payment(db, order.id, "pi_1")

        points = db.query(UserPoints).filter(UserPoints.user_id == customer.id).one()
        db.refresh(points)
        # 10.00 - 4.00 redeemed + 0.66 cashback
        assert points.balance == Decimal("6.66")
        assert points.total_redeemed == Decimal("4.00")
        kinds = sorted(t.transaction_type for t in db.query(PointsTransaction).all())
        assert kinds == ["earned", "redeemed", "reserved"]

    def test_payment_notifies_customer_and_seller(self, db, processor, checkout):
        order, _, customer = checkout()
        payments.apply_payment(db, order.id, "pi_1")
        types = {(n.user_id, n.type) for n in db.query(Notification).all()}
        assert (customer.id, "order_paid") in types
        assert (order.seller.user_id, "new_order") in types

    def test_mobile_intent_reconciles(self, db, processor, make_user, make_seller, make_product, add_to_cart):
        customer = make_user()
        add_to_cart(customer, make_product(make_seller(), price="8.00"))
        order = start_checkout(db, processor, customer, client="mobile").orders[0]
        processor.paid.add(order.checkout_reference)
        payments.reconcile_order(db, processor, order)
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_reference == order.checkout_reference


class TestWebhook:
    def test_session_completed_applies_payment(self, db, processor, checkout):
        order, _, _ = checkout()
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": order.checkout_reference, "payment_status": "paid",
                "payment_intent": "pi_hook", "metadata": {"order_id": str(order.id)},
            }},
        }
        assert payments.handle_webhook_event(db, event) == str(order.id)
        payments.handle_webhook_event(db, event)
        db.refresh(order)
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_reference == "pi_hook"
        assert db.query(PointsTransaction).filter(PointsTransaction.transaction_type == "earned").count() == 1

    def test_unpaid_session_event_is_ignored(self, db, processor, checkout):
        order, _, _ = checkout()
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_x", "payment_status": "unpaid", "metadata": {"order_id": str(order.id)}}},
        }
        assert payments.handle_webhook_event(db, event) is None
        db.refresh(order)
        assert order.status == OrderStatus.AWAITING_PAYMENT

    def test_account_updated_refreshes_flags(self, db, make_seller):
        seller = make_seller()
        account = seller.payment_account
        payments.handle_webhook_event(db, {
            "type": "account.updated",
            "data": {"object": {
                "id": account.processor_account_id,
                "details_submitted": True, "charges_enabled": True, "payouts_enabled": False,
            }},
        })
        db.refresh(account)
        assert account.onboarding_completed is True
        assert account.charges_enabled is True
        assert account.payouts_enabled is False


class TestRetryPayment:
    def test_retry_expires_old_session(self, db, processor, checkout):
        order, _, customer = checkout()
        old = order.checkout_reference
        handle = payments.retry_payment(db, processor, order, customer)
        assert handle["reference"] != old
        assert ("expire_session", old) in processor.calls
        db.refresh(order)
        assert order.checkout_reference == handle["reference"]

    def test_paid_order_cannot_be_retried(self, db, processor, checkout):
        order, _, customer = checkout()
        payments.apply_payment(db, order.id, "pi_1")
        db.refresh(order)
        with pytest.raises(InvalidTransitionError):
            payments.retry_payment(db, processor, order, customer)


class TestCancellation:
    def test_cancel_unpaid_order_releases_lock(self, db, processor, checkout):
        order, _, _ = checkout()
        session_id = order.checkout_reference
        payments.cancel_order(db, order, processor)
        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert db.query(SlotLock).count() == 0
        assert ("expire_session", session_id) in processor.calls

    def test_payment_for_cancelled_order_is_flagged_for_refund(self, db, processor, checkout):
        order, product, customer = checkout()
        session_id = order.checkout_reference
        payments.cancel_order(db, order, processor)
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": session_id, "payment_status": "paid", "payment_intent": "pi_late",
                "metadata": {"order_id": str(order.id)},
            }},
        }

        payments.handle_webhook_event(db, event)
        payments.handle_webhook_event(db, event)

        db.refresh(order)
        db.refresh(product)
        assert order.status == OrderStatus.CANCELLED
        assert order.refund_required is True
        assert order.payment_reference == "pi_late"
        assert product.stock == 5
        assert db.query(PointsTransaction).count() == 0
        refunds = db.query(Notification).filter(Notification.type == "payment_refund_pending").all()
        assert [n.user_id for n in refunds] == [customer.id]

    def test_paid_order_cannot_be_cancelled_by_customer(self, db, processor, checkout):
        order, _, _ = checkout()
        payments.apply_payment(db, order.id, "pi_1")
        db.refresh(order)
        with pytest.raises(InvalidTransitionError):
            payments.cancel_order(db, order, processor)

    def test_cancel_incomplete_orders(self, db, processor, make_user, make_seller, make_product, add_to_cart):
        customer = make_user()
        add_to_cart(customer, make_product(make_seller(), price="5.00"))
        add_to_cart(customer, make_product(make_seller(), price="6.00"))
        orders = start_checkout(db, processor, customer).orders
        payments.apply_payment(db, orders[0].id, "pi_1")

        assert payments.cancel_incomplete_orders(db, customer.id, processor) == 1
        assert ("expire_session", orders[1].checkout_reference) in processor.calls
        assert ("expire_session", orders[0].checkout_reference) not in processor.calls
        statuses = {o.id: o.status for o in db.query(Order).all()}
        assert statuses[orders[0].id] == OrderStatus.PROCESSING
        assert statuses[orders[1].id] == OrderStatus.CANCELLED


class TestSweep:
    def test_sweeps_only_stale_unpaid_orders(self, db, processor, checkout, make_user, make_seller, make_product, add_to_cart):
        stale, _, _ = checkout()
        fresh_customer = make_user()
        add_to_cart(fresh_customer, make_product(make_seller(), price="9.00"))
        fresh = start_checkout(db, processor, fresh_customer).orders[0]

        now = datetime.now(timezone.utc)
        db.query(Order).filter(Order.id == stale.id).update(
            {"created_at": now - timedelta(minutes=30)}, synchronize_session=False
        )
        db.commit()

        assert payments.sweep_abandoned_orders(db, now, processor) == 1
        assert payments.sweep_abandoned_orders(db, now, processor) == 0
        expired = [call for call in processor.calls if call[0] == "expire_session"]
        assert expired == [("expire_session", stale.checkout_reference)]

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == OrderStatus.CANCELLED
        assert fresh.status == OrderStatus.AWAITING_PAYMENT
        assert db.query(OrderLineItem).filter(OrderLineItem.order_id == stale.id).count() == 0
        assert db.query(SlotLock).count() == 0

    def test_paid_orders_are_never_swept(self, db, processor, checkout):
        order, product, _ = checkout()
        payments.apply_payment(db, order.id, "pi_1")
        now = datetime.now(timezone.utc)
        db.query(Order).filter(Order.id == order.id).update(
            {"created_at": now - timedelta(hours=2)}, synchronize_session=False
        )
        db.commit()
        assert payments.sweep_abandoned_orders(db, now) == 0
        assert db.query(Product).filter(Product.id == product.id).one().stock == 3
