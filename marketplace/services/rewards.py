"""
Discount codes and loyalty points.

Amounts are computed in Decimal and split across sellers in integer minor
units, so per-seller allocations always add up to the amount being split.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import NotFoundError, ValidationError
from marketplace.core.security import as_utc
from marketplace.models.order import Order
from marketplace.models.rewards import (
    DiscountCode, DiscountCodeSeller, OrderDiscountCode, PointsTransaction, UserPoints,
)
from marketplace.services.money import (
    allocate_even, allocate_proportional, from_minor, quantize, to_minor,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class DiscountResult:
    valid: bool
    message: Optional[str] = None
    code: Optional[DiscountCode] = None
    amount: Decimal = ZERO
    qualifying_subtotal: Decimal = ZERO
    participating: List = field(default_factory=list)


# ---------------------------------------------------------------------------
# Discount codes
# ---------------------------------------------------------------------------


def get_code(db: Session, code: str) -> Optional[DiscountCode]:
    return db.query(DiscountCode).filter(DiscountCode.code == code.strip().upper()).first()


def participating_sellers(code: DiscountCode, seller_ids: List) -> List:
    """Sellers among `seller_ids` that the code applies to, in the given order."""
    if code.applies_to_all_sellers:
        return list(seller_ids)
    allowed = {row.seller_id for row in code.sellers}
    return [sid for sid in seller_ids if sid in allowed]


def compute_discount(code: DiscountCode, qualifying_subtotal: Decimal) -> Decimal:
    if code.discount_type == "percentage":
        amount = qualifying_subtotal * Decimal(code.discount_value) / Decimal("100")
        if code.max_discount_amount is not None:
            amount = min(amount, Decimal(code.max_discount_amount))
    else:
        amount = Decimal(code.discount_value)
    return quantize(min(amount, qualifying_subtotal))


def _usable_code(db: Session, code_str: str, now: Optional[datetime] = None):
    now = now or datetime.now(timezone.utc)
    code = get_code(db, code_str)
    if not code or not code.is_active:
        return None, "Invalid or expired discount code"
    if code.valid_until is not None and as_utc(code.valid_until) <= now:
        return None, "Invalid or expired discount code"
    if code.usage_limit is not None and code.used_count >= code.usage_limit:
        return None, "Discount code usage limit reached"
    return code, None


def resolve_discount(
    db: Session,
    code_str: str,
    subtotals: Dict[object, Decimal],
    now: Optional[datetime] = None,
) -> DiscountResult:
    """
    Validate `code_str` against a cart's per-seller subtotals.

    The discount is computed once on the qualifying subtotal: the sum of
    subtotals of the sellers that participate in the code.
    """
    code, problem = _usable_code(db, code_str, now)
    if problem:
        return DiscountResult(False, problem)

    participating = participating_sellers(code, list(subtotals.keys()))
    if not participating:
        return DiscountResult(False, "This discount code is not valid for any seller in your cart")

    qualifying = quantize(sum((Decimal(subtotals[sid]) for sid in participating), Decimal("0")))
    if code.min_purchase_amount is not None and qualifying < Decimal(code.min_purchase_amount):
        return DiscountResult(
            False,
            f"Minimum purchase of {Decimal(code.min_purchase_amount):.2f} required",
            code=code,
            qualifying_subtotal=qualifying,
        )

    return DiscountResult(
        True,
        code=code,
        amount=compute_discount(code, qualifying),
        qualifying_subtotal=qualifying,
        participating=participating,
    )


def preview_discount(
    db: Session,
    code_str: str,
    subtotal: Decimal,
    seller_ids: Optional[List] = None,
    now: Optional[datetime] = None,
) -> DiscountResult:
    """
    Validate a code against a known total before checkout. When `seller_ids`
    is given, at least one of them must participate in the code.
    """
    code, problem = _usable_code(db, code_str, now)
    if problem:
        return DiscountResult(False, problem)

    participating = list(seller_ids or [])
    if participating:
        participating = participating_sellers(code, participating)
        if not participating:
            return DiscountResult(False, "This discount code is not valid for any seller in your cart")

    subtotal = quantize(Decimal(subtotal))
    if code.min_purchase_amount is not None and subtotal < Decimal(code.min_purchase_amount):
        return DiscountResult(
            False,
            f"Minimum purchase of {Decimal(code.min_purchase_amount):.2f} required",
            code=code,
            qualifying_subtotal=subtotal,
        )
    return DiscountResult(
        True,
        code=code,
        amount=compute_discount(code, subtotal),
        qualifying_subtotal=subtotal,
        participating=participating,
    )


def allocate_discount(result: DiscountResult, subtotals: Dict[object, Decimal]) -> Dict[object, Decimal]:
    """Per-seller share of the discount, proportional to each participating subtotal."""
    allocation = {sid: ZERO for sid in subtotals}
    if not result.valid or result.amount <= 0:
        return allocation
    shares = allocate_proportional(
        to_minor(result.amount),
        [(sid, to_minor(subtotals[sid])) for sid in result.participating],
    )
    for sid, units in shares.items():
        allocation[sid] = from_minor(units)
    return allocation


def record_discount_usage(db: Session, code: DiscountCode, order_amounts: Dict[object, Decimal]) -> None:
    """
    One usage row per order that received a share, and a single increment of
    the code's usage counter for the checkout. Failures are logged only.

    Each write runs in its own savepoint, so a failure rolls back that write
    and leaves the caller's orders in place.
    """
    code_id, code_str, usage_limit = code.id, code.code, code.usage_limit
    try:
        with db.begin_nested():
            for order_id, amount in order_amounts.items():
                if amount <= 0:
                    continue
                if db.query(OrderDiscountCode.id).filter(OrderDiscountCode.order_id == order_id).first():
                    continue
                db.add(OrderDiscountCode(order_id=order_id, discount_code_id=code_id, discount_amount=amount))
            db.flush()
    except SQLAlchemyError:
        logger.warning("Failed to record usage rows for discount code %s", code_str, exc_info=True)

    try:
        with db.begin_nested():
            query = db.query(DiscountCode).filter(DiscountCode.id == code_id)
            if usage_limit is not None:
                query = query.filter(DiscountCode.used_count < DiscountCode.usage_limit)
            if query.update({"used_count": DiscountCode.used_count + 1}, synchronize_session="fetch") != 1:
                logger.warning("Discount code %s hit its usage limit during checkout", code_str)
    except SQLAlchemyError:
        logger.warning("Failed to increment usage of discount code %s", code_str, exc_info=True)


def create_code(
    db: Session,
    code: str,
    discount_type: str,
    discount_value: Decimal,
    seller_ids: Optional[List] = None,
    applies_to_all_sellers: bool = False,
    min_purchase_amount: Optional[Decimal] = None,
    max_discount_amount: Optional[Decimal] = None,
    usage_limit: Optional[int] = None,
    valid_until: Optional[datetime] = None,
) -> DiscountCode:
    if discount_type not in ("percentage", "fixed"):
        raise ValidationError("discount_type must be 'percentage' or 'fixed'")
    if discount_value <= 0:
        raise ValidationError("discount_value must be positive")
    if discount_type == "percentage" and discount_value > 100:
        raise ValidationError("A percentage discount cannot exceed 100")
    if get_code(db, code):
        raise ValidationError("Discount code already exists", code=code.upper())

    row = DiscountCode(
        code=code.strip().upper(),
        discount_type=discount_type,
        discount_value=discount_value,
        min_purchase_amount=min_purchase_amount,
        max_discount_amount=max_discount_amount,
        usage_limit=usage_limit,
        valid_until=valid_until,
        applies_to_all_sellers=applies_to_all_sellers,
    )
    for sid in dict.fromkeys(seller_ids or []):
        row.sellers.append(DiscountCodeSeller(seller_id=sid))
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def deactivate_code(db: Session, code_id) -> DiscountCode:
    row = db.query(DiscountCode).filter(DiscountCode.id == code_id).first()
    if not row:
        raise NotFoundError("Discount code not found")
    row.is_active = False
    db.commit()
    db.refresh(row)
    return row


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


def get_balance(db: Session, user_id) -> UserPoints:
    points = db.query(UserPoints).filter(UserPoints.user_id == user_id).first()
    if points is None:
        points = UserPoints(user_id=user_id, balance=ZERO, total_earned=ZERO, total_redeemed=ZERO)
    return points


def redeemable_points(db: Session, user_id, requested: Optional[Decimal]) -> Decimal:
    if not requested or requested <= 0:
        return ZERO
    balance = Decimal(get_balance(db, user_id).balance or 0)
    return quantize(max(ZERO, min(Decimal(requested), balance)))


def allocate_points(points: Decimal, seller_ids: List) -> Dict[object, Decimal]:
    """Even split across every seller in the checkout, not proportional to subtotal."""
    shares = allocate_even(to_minor(points), list(seller_ids))
    return {sid: from_minor(units) for sid, units in shares.items()}


def reserve_points(db: Session, user_id, order_id, amount: Decimal) -> None:
    """
    Record the points set aside for an unpaid order. The balance is untouched.
    A failed write is logged and rolled back to its savepoint.
    """
    if amount <= 0:
        return
    try:
        with db.begin_nested():
            db.add(PointsTransaction(
                user_id=user_id,
                order_id=order_id,
                transaction_type="reserved",
                amount=amount,
                description=f"Points reserved for order {order_id}",
            ))
            db.flush()
    except SQLAlchemyError:
        logger.warning("Failed to record points reservation for order %s", order_id, exc_info=True)


def debit_reserved_points(db: Session, order: Order) -> bool:
    """
    Debit the order's redeemed points with a balance-guarded update.
    A shortfall is logged and leaves the balance unchanged.
    """
    amount = Decimal(order.points_redeemed or 0)
    if amount <= 0:
        return True
    updated = (
        db.query(UserPoints)
        .filter(UserPoints.user_id == order.user_id, UserPoints.balance >= amount)
        .update(
            {
                "balance": UserPoints.balance - amount,
                "total_redeemed": UserPoints.total_redeemed + amount,
            },
            synchronize_session="fetch",
        )
    )
    if updated != 1:
        logger.warning("Insufficient points to debit %s for order %s", amount, order.id)
        return False
    db.add(PointsTransaction(
        user_id=order.user_id,
        order_id=order.id,
        transaction_type="redeemed",
        amount=amount,
        description=f"Points redeemed for order {order.id}",
    ))
    return True


def award_cashback(db: Session, order: Order) -> Decimal:
    """Credit CASHBACK_RATE of the order total as points. Caller guarantees once per order."""
    amount = quantize(Decimal(order.total) * settings.CASHBACK_RATE)
    if amount <= 0:
        return ZERO

    points = db.query(UserPoints).filter(UserPoints.user_id == order.user_id).first()
    if points is None:
        db.add(UserPoints(user_id=order.user_id, balance=amount, total_earned=amount, total_redeemed=ZERO))
    else:
        db.query(UserPoints).filter(UserPoints.user_id == order.user_id).update(
            {
                "balance": UserPoints.balance + amount,
                "total_earned": UserPoints.total_earned + amount,
            },
            synchronize_session="fetch",
        )
    db.add(PointsTransaction(
        user_id=order.user_id,
        order_id=order.id,
        transaction_type="earned",
        amount=amount,
        description=f"{settings.CASHBACK_RATE * 100:.0f}% cashback on order {order.id}",
    ))
    order.points_earned = amount
    return amount


def list_transactions(db: Session, user_id) -> List[PointsTransaction]:
    return (
        db.query(PointsTransaction)
        .filter(PointsTransaction.user_id == user_id)
        .order_by(PointsTransaction.created_at.desc())
        .all()
    )
