"""
Order status state machine, commission freeze and QR pickup verification.

Every status change is a guarded UPDATE on (id, expected current status), so
two racing callers can never both apply the same transition.
"""
import json
import logging
from uuid import UUID
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import (
    AlreadyScannedError, ConflictError, InvalidTransitionError, NotFoundError, ValidationError,
)
from marketplace.core.security import as_utc, sign_pickup, verify_pickup_signature
from marketplace.models.order import Order, OrderStatus, UNRECOGNIZED_STATUSES
from marketplace.models.seller import Seller
from marketplace.services.money import quantize
from marketplace.services.notifications import notify
from marketplace.services.slot_ledger import release_order_slots

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.AWAITING_PAYMENT: {OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.COMPLETE, OrderStatus.CANCELLED},
    OrderStatus.COMPLETE: set(),
    OrderStatus.CANCELLED: set(),
}

# Status -> (notification type, title, body) sent to the customer
STATUS_NOTIFICATIONS = {
    OrderStatus.READY: ("order_ready_for_pickup", "Order ready", "Your order is ready for pickup."),
    OrderStatus.COMPLETE: ("order_collected", "Order collected", "Your order has been collected. Thank you!"),
    OrderStatus.CANCELLED: ("order_cancelled", "Order cancelled", "Your order has been cancelled."),
}


def is_revenue_recognized(status) -> bool:
    return OrderStatus(status) not in UNRECOGNIZED_STATUSES


# ---------------------------------------------------------------------------
# Commission
# ---------------------------------------------------------------------------


def resolve_commission_rate(seller: Seller, now: Optional[datetime] = None) -> Decimal:
    now = now or datetime.now(timezone.utc)
    if seller.trial_ends_at is not None and as_utc(seller.trial_ends_at) > now:
        return Decimal("0")
    override = seller.commission_rate_override
    if override is not None and Decimal("0") <= Decimal(override) <= Decimal("1"):
        return Decimal(override)
    return settings.PLATFORM_COMMISSION_RATE


def freeze_commission(db: Session, order: Order, now: Optional[datetime] = None) -> bool:
    """
    Compute and store the commission split once. Returns False when the split
    was already frozen; a frozen split is never recomputed. Caller commits.
    """
    if order.commission_frozen_at is not None:
        return False
    now = now or datetime.now(timezone.utc)
    seller = order.seller or db.query(Seller).filter(Seller.id == order.seller_id).first()
    rate = resolve_commission_rate(seller, now)
    total = Decimal(order.total)
    commission = quantize(total * rate)
    seller_amount = quantize(total - commission)

    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.commission_frozen_at.is_(None))
        .update(
            {
                "platform_commission": commission,
                "seller_amount": seller_amount,
                "commission_frozen_at": now,
            },
            synchronize_session="fetch",
        )
    )
    if updated:
        logger.info("Froze commission for order %s: rate=%s seller_amount=%s", order.id, rate, seller_amount)
    return bool(updated)


def backfill_commissions(db: Session) -> int:
    """Freeze the split for historical revenue-state orders that never got one."""
    orders = (
        db.query(Order)
        .filter(
            Order.commission_frozen_at.is_(None),
            Order.status.notin_(UNRECOGNIZED_STATUSES),
        )
        .all()
    )
    count = sum(1 for order in orders if freeze_commission(db, order))
    db.commit()
    if count:
        logger.info("Backfilled commission for %d order(s)", count)
    return count


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def guarded_update(db: Session, order: Order, expected, values: dict) -> bool:
    """UPDATE orders SET ... WHERE id = :id AND status = :expected."""
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == expected)
        .update(values, synchronize_session="fetch")
    )
    return updated == 1


def transition(
    db: Session,
    order: Order,
    new_status,
    actor: str = "seller",
    now: Optional[datetime] = None,
) -> Order:
    """
    Move `order` to `new_status` through the state machine and commit.

    Sellers may only cancel an order that is still awaiting payment; payment
    reconciliation is the only way out of that state otherwise.
    """
    now = now or datetime.now(timezone.utc)
    current = OrderStatus(order.status)
    new_status = OrderStatus(new_status)

    if new_status not in TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot change order status from {current.value} to {new_status.value}",
            current_status=current.value,
            requested_status=new_status.value,
        )
    if actor == "seller" and current == OrderStatus.AWAITING_PAYMENT and new_status != OrderStatus.CANCELLED:
        raise InvalidTransitionError(
            "Order is awaiting payment; it can only be cancelled",
            current_status=current.value,
            requested_status=new_status.value,
        )

    values = {"status": new_status, "updated_at": now}
    if new_status == OrderStatus.READY:
        values["ready_at"] = now
    elif new_status == OrderStatus.COMPLETE:
        values["picked_up_at"] = now
    elif new_status == OrderStatus.CANCELLED:
        values["cancelled_at"] = now

    if not guarded_update(db, order, current, values):
        db.rollback()
        raise ConflictError("Order status changed concurrently; reload and retry", order_id=str(order.id))

    if new_status == OrderStatus.CANCELLED:
        release_order_slots(db, order)
    if is_revenue_recognized(new_status):
        freeze_commission(db, order, now)

    if new_status in STATUS_NOTIFICATIONS:
        kind, title, body = STATUS_NOTIFICATIONS[new_status]
        notify(
            db, order.user_id, "customer", kind, title, body,
            data={"order_id": str(order.id), "status": new_status.value},
            reference_id=order.id,
        )

    db.commit()
    db.refresh(order)
    logger.info("Order %s: %s -> %s (%s)", order.id, current.value, new_status.value, actor)
    return order


# ---------------------------------------------------------------------------
# QR pickup
# ---------------------------------------------------------------------------


def pickup_payload(order: Order, now: Optional[datetime] = None) -> dict:
    """QR content for an order. Regenerated on demand, never stored."""
    now = now or datetime.now(timezone.utc)
    return {
        "orderId": str(order.id),
        "timestamp": now.isoformat(),
        "signature": sign_pickup(order.id, order.created_at),
    }


def _parse_payload(qr_data):
    if isinstance(qr_data, str):
        try:
            qr_data = json.loads(qr_data)
        except ValueError:
            raise ValidationError("Invalid QR code format")
    if not isinstance(qr_data, dict):
        raise ValidationError("Invalid QR code format")
    order_id = qr_data.get("orderId")
    if not order_id:
        raise ValidationError("Order ID not found in QR code")
    return order_id, qr_data.get("signature")


def verify_pickup(db: Session, seller: Seller, qr_data, scanned_by, now: Optional[datetime] = None) -> Order:
    """
    Check a scanned pickup code and complete the order.

    Single use: the scan marker is set by a guarded update, so a replayed or
    concurrently scanned payload fails with AlreadyScannedError.
    """
    now = now or datetime.now(timezone.utc)
    order_id, signature = _parse_payload(qr_data)

    try:
        order_uuid = UUID(str(order_id))
    except ValueError:
        raise ValidationError("Invalid QR code format")

    order = db.query(Order).filter(Order.id == order_uuid, Order.seller_id == seller.id).first()
    if not order:
        raise NotFoundError("Order not found or does not belong to this seller")

    if not verify_pickup_signature(order.id, order.created_at, signature):
        raise ValidationError("Invalid QR code signature")
    if order.qr_scanned_at is not None:
        raise AlreadyScannedError(str(order.id), as_utc(order.qr_scanned_at).isoformat())
    if order.status == OrderStatus.COMPLETE:
        raise ConflictError("Order has already been completed", order_id=str(order.id))
    if order.status == OrderStatus.CANCELLED:
        raise ConflictError("Order has been cancelled", order_id=str(order.id))
    if now - as_utc(order.created_at) > timedelta(days=settings.QR_MAX_AGE_DAYS):
        raise ValidationError(f"Order QR code has expired (older than {settings.QR_MAX_AGE_DAYS} days)")
    if order.status == OrderStatus.AWAITING_PAYMENT:
        raise ConflictError("Order has not been paid", order_id=str(order.id))

    updated = (
        db.query(Order)
        .filter(
            Order.id == order.id,
            Order.qr_scanned_at.is_(None),
            Order.status.notin_([OrderStatus.COMPLETE, OrderStatus.CANCELLED]),
        )
        .update(
            {
                "status": OrderStatus.COMPLETE,
                "picked_up_at": now,
                "qr_scanned_at": now,
                "qr_scanned_by": scanned_by,
                "updated_at": now,
            },
            synchronize_session="fetch",
        )
    )
    if updated != 1:
        db.rollback()
        raise AlreadyScannedError(str(order.id))

    freeze_commission(db, order, now)
    kind, title, body = STATUS_NOTIFICATIONS[OrderStatus.COMPLETE]
    notify(
        db, order.user_id, "customer", kind, title, body,
        data={"order_id": str(order.id), "status": OrderStatus.COMPLETE.value},
        reference_id=order.id,
    )
    db.commit()
    db.refresh(order)
    logger.info("Order %s picked up via QR scan by %s", order.id, scanned_by)
    return order
