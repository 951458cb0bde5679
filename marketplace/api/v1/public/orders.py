import json
import logging
from uuid import UUID
from typing import Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_customer, get_current_user, get_payment_processor
from marketplace.core.config import settings
from marketplace.core.errors import NotFoundError
from marketplace.models.user import User
from marketplace.models.seller import Seller
from marketplace.models.order import Order, OrderStatus
from marketplace.schemas.common import PaginatedResponse
from marketplace.schemas.order import (
    BulkCancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CleanupResponse,
    Order as OrderSchema,
    PaymentHandle,
    PickupQRCode,
)
from marketplace.services import payments
from marketplace.services.checkout import start_checkout
from marketplace.services.fulfillment import pickup_payload
from marketplace.services.payment_processor import PaymentProcessor
from marketplace.services.slot_ledger import cleanup_expired_locks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


def _client_kind(x_platform: Optional[str]) -> str:
    return "mobile" if (x_platform or "").lower() == "mobile" else "web"


def _get_own_order(db: Session, order_id: UUID, user: User) -> Order:
    order = db.query(Order).filter(Order.id == order_id, Order.user_id == user.id).first()
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))
    return order


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@router.post("/", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def checkout(
    body: CheckoutRequest,
    x_platform: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    current_user: User = Depends(get_current_customer),
):
    """
    Turn the cart into one order per seller and return a payment handle for
    each. Send `X-Platform: mobile` to receive payment intents instead of
    hosted checkout URLs.

    Stock shortfalls return 409 `insufficient_stock` with per-item details;
    a booked slot that cannot be locked returns 409 `slot_unavailable`.
    """
    bookings = {b.service_id: (b.booking_date, b.booking_time) for b in body.bookings}
    result = start_checkout(
        db,
        processor,
        current_user,
        discount_code=body.discount_code,
        points_to_redeem=body.points_to_redeem,
        bookings=bookings,
        pickup_date=body.pickup_date,
        pickup_time=body.pickup_time,
        pickup_instructions=body.pickup_instructions,
        client=_client_kind(x_platform),
    )
    return CheckoutResponse(
        orders=[OrderSchema.model_validate(o) for o in result.orders],
        payment_handles=result.payment_handles,
        payment_errors=result.payment_errors,
        discount_amount=result.discount_amount,
        discount_error=result.discount_error,
        points_redeemed=result.points_redeemed,
    )


# ---------------------------------------------------------------------------
# Order history
# ---------------------------------------------------------------------------


@router.get("/", response_model=PaginatedResponse[OrderSchema])
def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    """Return the current customer's orders, newest first."""
    query = db.query(Order).filter(Order.user_id == current_user.id)
    if status_filter is not None:
        query = query.filter(Order.status == status_filter)

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return PaginatedResponse(
        data=orders,
        total=total,
        page=page,
        limit=limit,
        total_pages=-(-total // limit) if total else 0,
    )


@router.post("/cancel-incomplete", response_model=BulkCancelResponse)
def cancel_incomplete(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    current_user: User = Depends(get_current_customer),
):
    """Cancel every unpaid order of the current customer (e.g. after leaving checkout)."""
    return BulkCancelResponse(cancelled_count=payments.cancel_incomplete_orders(db, current_user.id, processor))


@router.post("/cleanup-abandoned", response_model=CleanupResponse)
def cleanup_abandoned(
    x_api_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Run the abandoned-order sweep and expired-lock cleanup once.
    Requires the `X-API-Key` header when CLEANUP_API_KEY is configured.
    """
    if settings.CLEANUP_API_KEY and x_api_key != settings.CLEANUP_API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    now = datetime.now(timezone.utc)
    cancelled = payments.sweep_abandoned_orders(db, now, processor)
    expired = cleanup_expired_locks(db, now)
    return CleanupResponse(cancelled_orders=cancelled, expired_locks=expired)


@router.get("/{order_id}", response_model=OrderSchema)
def get_order(
    order_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    return _get_own_order(db, order_id, current_user)


@router.post("/{order_id}/cancel", response_model=OrderSchema)
def cancel_order(
    order_id: UUID,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    current_user: User = Depends(get_current_customer),
):
    """Cancel an unpaid order. Paid orders return 409 `invalid_transition`."""
    order = _get_own_order(db, order_id, current_user)
    return payments.cancel_order(db, order, processor)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@router.post("/{order_id}/retry-payment", response_model=PaymentHandle)
def retry_payment(
    order_id: UUID,
    x_platform: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    current_user: User = Depends(get_current_customer),
):
    """Issue a fresh payment handle for an order still awaiting payment."""
    order = _get_own_order(db, order_id, current_user)
    return payments.retry_payment(db, processor, order, current_user, _client_kind(x_platform))


@router.post("/{order_id}/reconcile", response_model=OrderSchema)
def reconcile(
    order_id: UUID,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    current_user: User = Depends(get_current_customer),
):
    """Ask the processor whether the order was paid and apply the payment if so."""
    order = _get_own_order(db, order_id, current_user)
    return payments.reconcile_order(db, processor, order)


# ---------------------------------------------------------------------------
# Pickup QR
# ---------------------------------------------------------------------------


@router.get("/{order_id}/qr-code", response_model=PickupQRCode)
def get_pickup_qr(
    order_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Signed pickup payload for the order's customer or its seller. The payload
    is regenerated on every request; `qr_data` is the string to encode.
    """
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))

    allowed = order.user_id == current_user.id or current_user.role == "admin"
    if not allowed and current_user.role == "seller":
        seller = db.query(Seller).filter(Seller.user_id == current_user.id).first()
        allowed = seller is not None and seller.id == order.seller_id
    if not allowed:
        raise NotFoundError("Order not found", order_id=str(order_id))

    payload = pickup_payload(order)
    return PickupQRCode(order_id=order.id, qr_data=json.dumps(payload), payload=payload)
