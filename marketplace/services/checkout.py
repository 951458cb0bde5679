"""
Checkout: turn one customer's cart into one unpaid order per seller.

Steps, in order: split the cart and check stock, validate and lock every
requested booking slot (all or nothing), price each seller group with its
share of the discount and points, insert the orders, then request a payment
handle for each.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import SlotUnavailableError, ValidationError
from marketplace.models.order import Order, OrderLineItem, OrderServiceItem, OrderStatus
from marketplace.models.user import User
from marketplace.services import rewards
from marketplace.services.cart import SplitCart, load_cart, split_cart
from marketplace.services.cutoff import is_same_day_allowed
from marketplace.services.money import quantize
from marketplace.services.payment_processor import PaymentProcessor
from marketplace.services.payments import create_payment_handles
from marketplace.services.slot_ledger import get_available_slots, lock_slot, release_lock

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class CheckoutResult:
    orders: List[Order]
    payment_handles: List[dict] = field(default_factory=list)
    payment_errors: List[dict] = field(default_factory=list)
    discount_amount: Decimal = ZERO
    discount_error: Optional[str] = None
    points_redeemed: Decimal = ZERO


def _check_same_day(seller, booking_date: date, now_local: datetime) -> None:
    if booking_date < now_local.date():
        raise ValidationError("Booking date is in the past", booking_date=booking_date.isoformat())
    if booking_date == now_local.date():
        decision = is_same_day_allowed(seller, now_local)
        if not decision["allowed"]:
            raise ValidationError(decision["reason"], seller_id=str(seller.id))


def acquire_slot_locks(db: Session, split: SplitCart, customer_id, now_local: datetime) -> List[Tuple]:
    """
    Validate and lock every booked service line in cart order.

    Either every lock is taken or none survives: on the first failure the
    locks already taken in this attempt are released before re-raising.
    """
    acquired = []
    try:
        for group, line in split.service_lines():
            seller = group.seller
            if line.booking_date is None or line.booking_time is None:
                raise ValidationError(
                    f"A booking date and time are required for {line.name}",
                    service_id=str(line.service_id),
                )
            _check_same_day(seller, line.booking_date, now_local)

            key = (seller.id, line.booking_date, line.booking_time)
            if key in acquired:
                continue

            slots = get_available_slots(
                db, seller, line.booking_date, line.booking_date,
                duration_minutes=line.duration_minutes, now=now_local, customer_id=customer_id,
            )
            if (line.booking_date, line.booking_time) not in slots:
                raise SlotUnavailableError(
                    "The selected time slot is not available",
                    seller_id=str(seller.id),
                    date=line.booking_date.isoformat(),
                    time=line.booking_time.strftime("%H:%M"),
                )
            if not lock_slot(db, seller.id, line.booking_date, line.booking_time, customer_id):
                raise SlotUnavailableError(
                    "The selected time slot is being booked by another customer",
                    seller_id=str(seller.id),
                    date=line.booking_date.isoformat(),
                    time=line.booking_time.strftime("%H:%M"),
                )
            acquired.append(key)
        db.commit()
    except Exception:
        db.rollback()
        if acquired:
            for seller_id, slot_date, slot_time in acquired:
                release_lock(db, seller_id, slot_date, slot_time, customer_id=customer_id)
            db.commit()
            logger.info("Checkout failed; released %d slot lock(s) for customer %s", len(acquired), customer_id)
        raise
    return acquired


def build_orders(
    db: Session,
    split: SplitCart,
    customer: User,
    discount: Dict,
    points: Dict,
    pickup_date: Optional[date] = None,
    pickup_time: Optional[time] = None,
    pickup_instructions: Optional[str] = None,
) -> List[Order]:
    orders = []
    for seller_id, group in split.groups.items():
        subtotal = group.subtotal
        seller_discount = discount.get(seller_id, ZERO)
        seller_points = points.get(seller_id, ZERO)
        total = quantize(max(ZERO, subtotal - seller_discount - seller_points))

        booked = next((l for l in group.services if l.booking_date), None)
        order = Order(
            user_id=customer.id,
            seller_id=seller_id,
            status=OrderStatus.AWAITING_PAYMENT,
            currency=settings.BASE_CURRENCY,
            subtotal=subtotal,
            discount_amount=seller_discount,
            points_redeemed=seller_points,
            total=total,
            pickup_location=group.seller.pickup_location,
            pickup_instructions=pickup_instructions,
            booking_date=booked.booking_date if booked else pickup_date,
            booking_time=booked.booking_time if booked else pickup_time,
            booking_duration_minutes=booked.duration_minutes if booked else None,
        )
        for line in group.products:
            order.items.append(OrderLineItem(
                product_id=line.product_id,
                product_name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
            ))
        for line in group.services:
            order.service_items.append(OrderServiceItem(
                service_id=line.service_id,
                service_name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                booking_date=line.booking_date,
                booking_time=line.booking_time,
                duration_minutes=line.duration_minutes,
            ))
        db.add(order)
        orders.append(order)
        logger.info("Created order for seller %s: subtotal=%s discount=%s points=%s total=%s",
                    seller_id, subtotal, seller_discount, seller_points, total)
    db.flush()
    return orders


def start_checkout(
    db: Session,
    processor: PaymentProcessor,
    customer: User,
    discount_code: Optional[str] = None,
    points_to_redeem: Optional[Decimal] = None,
    bookings: Optional[Dict] = None,
    pickup_date: Optional[date] = None,
    pickup_time: Optional[time] = None,
    pickup_instructions: Optional[str] = None,
    client: str = "web",
    now_local: Optional[datetime] = None,
) -> CheckoutResult:
    now_local = now_local or datetime.now()

    products, services = load_cart(db, customer.id)
    split = split_cart(products, services, bookings)

    if pickup_date is not None:
        for group in split.groups.values():
            if group.products:
                _check_same_day(group.seller, pickup_date, now_local)

    acquired = acquire_slot_locks(db, split, customer.id, now_local)

    try:
        subtotals = {sid: g.subtotal for sid, g in split.groups.items()}

        discount_alloc = {sid: ZERO for sid in subtotals}
        discount_error = None
        applied_code = None
        if discount_code:
            result = rewards.resolve_discount(db, discount_code, subtotals, now=datetime.now(timezone.utc))
            if result.valid:
                discount_alloc = rewards.allocate_discount(result, subtotals)
                applied_code = result.code
            else:
                discount_error = result.message
                logger.info("Discount code %s not applied: %s", discount_code, result.message)

        points_total = rewards.redeemable_points(db, customer.id, points_to_redeem)
        points_alloc = rewards.allocate_points(points_total, split.seller_ids)

        orders = build_orders(
            db, split, customer, discount_alloc, points_alloc,
            pickup_date=pickup_date, pickup_time=pickup_time, pickup_instructions=pickup_instructions,
        )

        if applied_code is not None:
            rewards.record_discount_usage(db, applied_code, {o.id: o.discount_amount for o in orders})
        for order in orders:
            rewards.reserve_points(db, customer.id, order.id, order.points_redeemed)

        db.commit()
    except Exception:
        db.rollback()
        for seller_id, slot_date, slot_time in acquired:
            release_lock(db, seller_id, slot_date, slot_time, customer_id=customer.id)
        db.commit()
        raise

    for order in orders:
        db.refresh(order)

    handles, errors = create_payment_handles(db, processor, orders, customer, client)
    for order in orders:
        db.refresh(order)

    return CheckoutResult(
        orders=orders,
        payment_handles=handles,
        payment_errors=errors,
        discount_amount=quantize(sum((o.discount_amount for o in orders), ZERO)),
        discount_error=discount_error,
        points_redeemed=quantize(sum((o.points_redeemed for o in orders), ZERO)),
    )
