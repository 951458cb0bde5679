"""
Seller payout ledger.

Available balance = frozen seller revenue on recognized orders
                    - completed payouts - pending/processing payouts,
all in the base currency. A withdrawal is reserved by one INSERT ... SELECT
whose WHERE clause recomputes that balance, so two concurrent requests can
never both pass the check against the same balance.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, func, insert, literal, select
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import (
    ExternalServiceError, InsufficientBalanceError, NotFoundError, ValidationError,
)
from marketplace.models.order import Order, UNRECOGNIZED_STATUSES
from marketplace.models.payout import Payout
from marketplace.models.seller import Seller, SellerPaymentAccount
from marketplace.services.money import quantize
from marketplace.services.notifications import notify
from marketplace.services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = ("pending", "processing")


def map_processor_status(status: Optional[str]) -> str:
    if status in ("paid", "in_transit"):
        return "completed"
    if status == "pending":
        return "pending"
    if status in ("failed", "canceled"):
        return "failed"
    return "processing"


def to_base(amount: Decimal, currency: str) -> Decimal:
    return quantize(Decimal(amount) * settings.fx_rate(currency))


def from_base(amount: Decimal, currency: str) -> Decimal:
    return quantize(Decimal(amount) / settings.fx_rate(currency))


# Balance components as scalar subqueries, reused by the summary and the guarded insert

def _revenue(seller_id):
    return (
        select(func.coalesce(func.sum(Order.seller_amount), 0))
        .where(
            Order.seller_id == seller_id,
            Order.commission_frozen_at.isnot(None),
            Order.status.notin_(UNRECOGNIZED_STATUSES),
        )
        .scalar_subquery()
    )


def _payouts(seller_id, statuses):
    return (
        select(func.coalesce(func.sum(Payout.amount_base), 0))
        .where(Payout.seller_id == seller_id, Payout.status.in_(statuses))
        .scalar_subquery()
    )


def get_balance(db: Session, seller_id) -> dict:
    revenue, completed, in_flight = db.execute(
        select(_revenue(seller_id), _payouts(seller_id, ("completed",)), _payouts(seller_id, IN_FLIGHT_STATUSES))
    ).one()
    revenue, completed, in_flight = (quantize(Decimal(str(v))) for v in (revenue, completed, in_flight))
    return {
        "currency": settings.BASE_CURRENCY,
        "total_revenue": revenue,
        "completed_payouts": completed,
        "pending_payouts": in_flight,
        "available_balance": quantize(revenue - completed - in_flight),
    }


def reserve_payout(db: Session, seller: Seller, amount: Decimal, currency: str, notes: Optional[str] = None) -> Payout:
    """
    Insert a pending payout only if the seller's available balance covers it.
    Raises InsufficientBalanceError otherwise. Caller commits.
    """
    currency = currency.upper()
    if currency not in settings.PAYOUT_CURRENCIES:
        raise ValidationError(f"Unsupported payout currency: {currency}", currency=currency)
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError("Payout amount must be positive")
    amount_base = to_base(amount, currency)

    # Serialize payout requests per seller where the backend supports row locks
    db.query(Seller.id).filter(Seller.id == seller.id).with_for_update().first()

    payout_id = uuid.uuid4()
    now = datetime.now(timezone.utc)
    available = _revenue(seller.id) - _payouts(seller.id, ("completed",)) - _payouts(seller.id, IN_FLIGHT_STATUSES)
    source = select(
        literal(payout_id, Payout.id.type),
        literal(seller.id, Payout.seller_id.type),
        literal(amount, Payout.amount.type),
        literal(currency, Payout.currency.type),
        literal(amount_base, Payout.amount_base.type),
        literal("pending", Payout.status.type),
        literal(notes, Payout.notes.type),
        literal(now, Payout.created_at.type),
    ).where(available >= amount_base)

    stmt = insert(Payout).from_select(
        ["id", "seller_id", "amount", "currency", "amount_base", "status", "notes", "created_at"],
        source,
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        balance = get_balance(db, seller.id)
        raise InsufficientBalanceError(
            from_base(balance["available_balance"], currency) if currency != settings.BASE_CURRENCY
            else balance["available_balance"],
            amount,
            currency,
        )
    return db.query(Payout).filter(Payout.id == payout_id).one()


def request_payout(
    db: Session,
    processor: PaymentProcessor,
    seller: Seller,
    amount: Decimal,
    currency: Optional[str] = None,
    notes: Optional[str] = None,
) -> Payout:
    """
    Reserve the amount, then ask the processor to pay it out. A processor
    failure marks the payout failed; the row is kept for the audit trail.
    """
    currency = (currency or settings.BASE_CURRENCY).upper()
    account = db.query(SellerPaymentAccount).filter(SellerPaymentAccount.seller_id == seller.id).first()
    if not account:
        raise NotFoundError("Seller has no payment account yet")

    payout = reserve_payout(db, seller, amount, currency, notes)
    db.commit()
    logger.info("Reserved payout %s: %s %s for seller %s", payout.id, payout.amount, currency, seller.id)

    try:
        result = processor.create_payout(
            account.processor_account_id, payout.amount, currency,
            metadata={"payout_id": str(payout.id), "seller_id": str(seller.id)},
        )
    except ExternalServiceError as exc:
        payout.status = "failed"
        payout.failure_reason = exc.message
        payout.processed_at = datetime.now(timezone.utc)
        db.commit()
        logger.error("Payout %s failed at the processor: %s", payout.id, exc.message)
        raise ExternalServiceError(exc.message, payout_id=str(payout.id)) from exc

    now = datetime.now(timezone.utc)
    payout.transaction_id = result.id
    payout.status = map_processor_status(result.status)
    payout.processed_at = now
    if payout.status == "completed":
        payout.completed_at = now
    notify(
        db, seller.user_id, "seller", "payout_requested", "Payout requested",
        f"Your payout of {payout.amount:.2f} {currency} is {payout.status}.",
        data={"payout_id": str(payout.id), "status": payout.status}, reference_id=payout.id,
    )
    db.commit()
    db.refresh(payout)
    return payout


def list_payouts(db: Session, seller_id):
    return (
        db.query(Payout)
        .filter(Payout.seller_id == seller_id)
        .order_by(Payout.created_at.desc())
        .all()
    )
