"""
Tests — Discount codes and loyalty points
=============================================
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.models.order import OrderStatus
from marketplace.models.rewards import DiscountCode, PointsTransaction, UserPoints
from marketplace.services import rewards


@pytest.fixture
def sellers(make_seller):
    return make_seller("A"), make_seller("B"), make_seller("C")


class TestResolveDiscount:
    def test_code_is_case_insensitive(self, db, sellers):
        a, b, _ = sellers
        rewards.create_code(db, "spring", "percentage", Decimal("10"), applies_to_all_sellers=True)
        result = rewards.resolve_discount(db, "  Spring ", {a.id: Decimal("50.00"), b.id: Decimal("30.00")})
        assert result.valid
        assert result.amount == Decimal("8.00")
        assert result.participating == [a.id, b.id]

    def test_only_participating_subtotals_qualify(self, db, sellers):
        a, b, c = sellers
        rewards.create_code(db, "AB20", "percentage", Decimal("20"), seller_ids=[a.id, b.id])
        subtotals = {a.id: Decimal("30.00"), b.id: Decimal("10.00"), c.id: Decimal("100.00")}

        result = rewards.resolve_discount(db, "AB20", subtotals)
        assert result.qualifying_subtotal == Decimal("40.00")
        assert result.amount == Decimal("8.00")

        allocation = rewards.allocate_discount(result, subtotals)
        assert allocation == {a.id: Decimal("6.00"), b.id: Decimal("2.00"), c.id: Decimal("0.00")}

    def test_no_participating_seller(self, db, sellers):
        a, b, c = sellers
        rewards.create_code(db, "ONLYC", "fixed", Decimal("5"), seller_ids=[c.id])
        result = rewards.resolve_discount(db, "ONLYC", {a.id: Decimal("10.00"), b.id: Decimal("10.00")})
        assert not result.valid
        assert "not valid for any seller" in result.message

    def test_code_with_no_sellers_is_never_valid(self, db, sellers):
        a, _, _ = sellers
        rewards.create_code(db, "NOBODY", "fixed", Decimal("5"))
        assert not rewards.resolve_discount(db, "NOBODY", {a.id: Decimal("10.00")}).valid

    def test_minimum_purchase_on_qualifying_subtotal(self, db, sellers):
        a, b, _ = sellers
        rewards.create_code(db, "MIN50", "fixed", Decimal("5"), seller_ids=[a.id], min_purchase_amount=Decimal("50"))
        result = rewards.resolve_discount(db, "MIN50", {a.id: Decimal("40.00"), b.id: Decimal("100.00")})
        assert not result.valid
        assert result.message == "Minimum purchase of 50.00 required"

    def test_percentage_is_capped(self, db, sellers):
        a, _, _ = sellers
        rewards.create_code(db, "HALF", "percentage", Decimal("50"), applies_to_all_sellers=True,
                            max_discount_amount=Decimal("15"))
        assert rewards.resolve_discount(db, "HALF", {a.id: Decimal("100.00")}).amount == Decimal("15.00")

    def test_fixed_discount_never_exceeds_subtotal(self, db, sellers):
        a, _, _ = sellers
        rewards.create_code(db, "BIG", "fixed", Decimal("25"), applies_to_all_sellers=True)
        assert rewards.resolve_discount(db, "BIG", {a.id: Decimal("12.34")}).amount == Decimal("12.34")

    def test_unusable_codes(self, db, sellers):
        a, _, _ = sellers
        subtotals = {a.id: Decimal("10.00")}
        expired = rewards.create_code(db, "OLD", "fixed", Decimal("1"), applies_to_all_sellers=True,
                                      valid_until=datetime.now(timezone.utc) - timedelta(days=1))
        used_up = rewards.create_code(db, "USED", "fixed", Decimal("1"), applies_to_all_sellers=True, usage_limit=1)
        used_up.used_count = 1
        off = rewards.create_code(db, "OFF", "fixed", Decimal("1"), applies_to_all_sellers=True)
        rewards.deactivate_code(db, off.id)
        db.commit()

        assert rewards.resolve_discount(db, expired.code, subtotals).message == "Invalid or expired discount code"
        assert rewards.resolve_discount(db, "USED", subtotals).message == "Discount code usage limit reached"
        assert rewards.resolve_discount(db, "OFF", subtotals).message == "Invalid or expired discount code"
        assert rewards.resolve_discount(db, "MISSING", subtotals).message == "Invalid or expired discount code"


class TestPreviewDiscount:
    def test_preview_on_given_subtotal(self, db):
        rewards.create_code(db, "TEN", "percentage", Decimal("10"), applies_to_all_sellers=True)
        result = rewards.preview_discount(db, "TEN", Decimal("45.50"))
        assert result.valid and result.amount == Decimal("4.55")

    def test_preview_requires_a_participating_seller(self, db, sellers):
        a, b, c = sellers
        rewards.create_code(db, "CONLY", "fixed", Decimal("3"), seller_ids=[c.id])
        assert not rewards.preview_discount(db, "CONLY", Decimal("20"), [a.id, b.id]).valid
        result = rewards.preview_discount(db, "CONLY", Decimal("20"), [a.id, c.id])
        assert result.valid and result.participating == [c.id]


class TestCodeAdministration:
    def test_create_validates_input(self, db):
        with pytest.raises(ValidationError):
            rewards.create_code(db, "BAD", "bogus", Decimal("5"))
        with pytest.raises(ValidationError):
            rewards.create_code(db, "TOOMUCH", "percentage", Decimal("150"))
        rewards.create_code(db, "DUPE", "fixed", Decimal("5"))
        with pytest.raises(ValidationError):
            rewards.create_code(db, "dupe", "fixed", Decimal("5"))

    def test_deactivate_unknown_code(self, db):
        with pytest.raises(NotFoundError):
            rewards.deactivate_code(db, uuid.uuid4())

    def test_usage_counter_respects_limit(self, db, sellers, make_user, make_order):
        a, _, _ = sellers
        code = rewards.create_code(db, "ONCE", "fixed", Decimal("1"), applies_to_all_sellers=True, usage_limit=1)
        customer = make_user()
        first = make_order(customer, a, status=OrderStatus.AWAITING_PAYMENT)
        second = make_order(customer, a, status=OrderStatus.AWAITING_PAYMENT)

        rewards.record_discount_usage(db, code, {first.id: Decimal("1.00")})
        rewards.record_discount_usage(db, code, {second.id: Decimal("1.00")})
        db.commit()

        assert db.query(DiscountCode).filter(DiscountCode.id == code.id).one().used_count == 1


class TestPoints:
    def test_balance_defaults_to_zero(self, db, make_user):
        points = rewards.get_balance(db, make_user().id)
        assert points.balance == Decimal("0.00")

    def test_redeemable_points(self, db, make_user):
        customer = make_user()
        db.add(UserPoints(user_id=customer.id, balance=Decimal("7.25"),
                          total_earned=Decimal("7.25"), total_redeemed=Decimal("0")))
        db.commit()
        assert rewards.redeemable_points(db, customer.id, None) == Decimal("0.00")
        assert rewards.redeemable_points(db, customer.id, Decimal("-1")) == Decimal("0.00")
        assert rewards.redeemable_points(db, customer.id, Decimal("5")) == Decimal("5.00")
        assert rewards.redeemable_points(db, customer.id, Decimal("100")) == Decimal("7.25")

    def test_even_points_split(self, sellers):
        a, b, c = sellers
        shares = rewards.allocate_points(Decimal("1.00"), [a.id, b.id, c.id])
        assert shares == {a.id: Decimal("0.34"), b.id: Decimal("0.33"), c.id: Decimal("0.33")}

    def test_debit_shortfall_leaves_balance(self, db, make_user, make_seller, make_order):
        customer = make_user()
        db.add(UserPoints(user_id=customer.id, balance=Decimal("2.00"),
                          total_earned=Decimal("2.00"), total_redeemed=Decimal("0")))
        order = make_order(customer, make_seller(), status=OrderStatus.AWAITING_PAYMENT)
        order.points_redeemed = Decimal("3.00")
        db.commit()

        assert rewards.debit_reserved_points(db, order) is False
        db.commit()
        assert db.query(UserPoints).one().balance == Decimal("2.00")
        assert db.query(PointsTransaction).count() == 0

    def test_cashback_creates_balance(self, db, make_user, make_seller, make_order):
        customer = make_user()
        order = make_order(customer, make_seller(), total="123.45")
        assert rewards.award_cashback(db, order) == Decimal("1.23")
        db.commit()
        points = db.query(UserPoints).one()
        assert points.balance == Decimal("1.23")
        assert points.total_earned == Decimal("1.23")
        assert [t.transaction_type for t in rewards.list_transactions(db, customer.id)] == ["earned"]
