"""
Payment orchestration and reconciliation.

Two independent triggers report a successful payment: the customer's browser
returning to the success URL, and the processor's webhook. Both end in
`apply_payment`, whose first statement is the guarded
awaiting_payment -> processing update; whichever trigger loses that race
applies nothing.
"""
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID
from typing import List, Optional

from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import (
    ConflictError, ExternalServiceError, InvalidTransitionError, NotFoundError,
)
from marketplace.models.catalog import Product
from marketplace.models.order import CheckoutKind, Order, OrderLineItem, OrderServiceItem, OrderStatus
from marketplace.models.seller import Seller, SellerPaymentAccount
from marketplace.models.user import User
from marketplace.services import cart as cart_service
from marketplace.services import rewards
from marketplace.services.fulfillment import (
    freeze_commission, guarded_update, resolve_commission_rate, transition,
)
from marketplace.services.money import quantize
from marketplace.services.notifications import notify
from marketplace.services.payment_processor import PaymentProcessor
from marketplace.services.slot_ledger import convert_locks_to_blocks, release_order_slots

logger = logging.getLogger(__name__)

FREE_ORDER_REFERENCE = "no_payment_required"


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------


def ensure_seller_account(db: Session, processor: PaymentProcessor, seller: Seller) -> SellerPaymentAccount:
    """Create the seller's processor account on first sale so new sellers can sell immediately."""
    account = db.query(SellerPaymentAccount).filter(SellerPaymentAccount.seller_id == seller.id).first()
    if account:
        return account

    email = seller.user.email if seller.user else None
    account_id = processor.create_seller_account(seller.id, email, settings.DEFAULT_SELLER_COUNTRY)
    account = SellerPaymentAccount(
        seller_id=seller.id,
        processor_account_id=account_id,
        onboarding_completed=False,
        charges_enabled=False,
        payouts_enabled=False,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info("Created processor account %s for seller %s", account_id, seller.id)
    return account


def create_payment_handle(
    db: Session,
    processor: PaymentProcessor,
    order: Order,
    customer: User,
    client: str = "web",
) -> dict:
    """
    Ask the processor for a hosted checkout (web) or a payment intent
    (mobile) and store its reference on the order.
    """
    seller = order.seller
    account = ensure_seller_account(db, processor, seller)
    fee = quantize(order.total * resolve_commission_rate(seller))

    if client == "mobile":
        intent = processor.create_payment_intent(
            order.id, account.processor_account_id, order.total, order.currency,
            application_fee=fee, customer_email=customer.email,
        )
        order.checkout_kind = CheckoutKind.PAYMENT_INTENT
        order.checkout_reference = intent.id
        handle = {"order_id": str(order.id), "kind": "payment_intent", "reference": intent.id,
                  "client_secret": intent.client_secret, "checkout_url": None}
    else:
        session = processor.create_hosted_checkout(
            order.id, account.processor_account_id, order.total, order.currency,
            success_url=f"{settings.BACKEND_URL}{settings.API_V1_STR}/payments/success?order_id={order.id}",
            cancel_url=f"{settings.FRONTEND_URL}/checkout/cancel?order_id={order.id}",
            application_fee=fee, customer_email=customer.email,
        )
        order.checkout_kind = CheckoutKind.HOSTED_SESSION
        order.checkout_reference = session.id
        handle = {"order_id": str(order.id), "kind": "hosted_session", "reference": session.id,
                  "client_secret": None, "checkout_url": session.url}

    db.commit()
    return handle


def create_payment_handles(
    db: Session,
    processor: PaymentProcessor,
    orders: List[Order],
    customer: User,
    client: str = "web",
):
    """
    One handle per order. A processor failure is logged and reported for that
    order only; the order stays awaiting payment and can be retried.
    """
    handles, errors = [], []
    for order in orders:
        if order.total <= 0:
            apply_payment(db, order.id, FREE_ORDER_REFERENCE)
            continue
        try:
            handles.append(create_payment_handle(db, processor, order, customer, client))
        except ExternalServiceError as exc:
            db.rollback()
            logger.error("Payment handle creation failed for order %s: %s", order.id, exc.message)
            errors.append({"order_id": str(order.id), "error": exc.error, "message": exc.message})
    return handles, errors


def retry_payment(
    db: Session,
    processor: PaymentProcessor,
    order: Order,
    customer: User,
    client: str = "web",
) -> dict:
    if order.status != OrderStatus.AWAITING_PAYMENT or order.payment_reference:
        raise InvalidTransitionError(
            "Only unpaid orders awaiting payment can be retried",
            current_status=OrderStatus(order.status).value,
        )
    old_reference, old_kind = order.checkout_reference, order.checkout_kind
    handle = create_payment_handle(db, processor, order, customer, client)
    expire_checkout(processor, old_kind, old_reference)
    return handle


def expire_checkout(processor: Optional[PaymentProcessor], kind, reference) -> None:
    """Close a hosted checkout session so it can no longer be paid. Best effort."""
    if processor is None or not reference or kind != CheckoutKind.HOSTED_SESSION:
        return
    try:
        processor.expire_session(reference)
    except ExternalServiceError as exc:
        logger.warning("Could not expire checkout session %s: %s", reference, exc.message)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def _decrement_stock(db: Session, order: Order) -> None:
    for item in order.items:
        updated = (
            db.query(Product)
            .filter(Product.id == item.product_id, Product.stock >= item.quantity)
            .update({"stock": Product.stock - item.quantity}, synchronize_session="fetch")
        )
        if not updated:
            logger.warning("Stock for product %s fell below %d before order %s was paid",
                           item.product_id, item.quantity, order.id)
            db.query(Product).filter(Product.id == item.product_id).update(
                {"stock": 0}, synchronize_session="fetch"
            )


def apply_payment(db: Session, order_id, payment_reference: str, now: Optional[datetime] = None) -> bool:
    """
    Apply every paid-order side effect exactly once.

    Returns False without touching anything when the order has already left
    awaiting_payment.
    """
    now = now or datetime.now(timezone.utc)
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))

    if not guarded_update(db, order, OrderStatus.AWAITING_PAYMENT, {
        "status": OrderStatus.PROCESSING,
        "payment_reference": payment_reference,
        "paid_at": now,
        "updated_at": now,
    }):
        db.refresh(order)
        if order.status == OrderStatus.CANCELLED:
            _flag_paid_after_cancel(db, order, payment_reference, now)
        else:
            logger.info("Order %s already reconciled (status %s); nothing to do", order.id, order.status)
        return False

    _decrement_stock(db, order)
    cart_service.clear_lines(
        db, order.user_id,
        product_ids=[i.product_id for i in order.items],
        service_ids=[i.service_id for i in order.service_items],
    )
    rewards.debit_reserved_points(db, order)
    rewards.award_cashback(db, order)
    convert_locks_to_blocks(db, order)
    freeze_commission(db, order, now)

    notify(
        db, order.user_id, "customer", "order_paid", "Payment received",
        f"Your payment of {order.total:.2f} {order.currency} was successful.",
        data={"order_id": str(order.id)}, reference_id=order.id,
    )
    seller_user_id = order.seller.user_id if order.seller else None
    if seller_user_id:
        notify(
            db, seller_user_id, "seller", "new_order", "New order",
            f"You have a new paid order totalling {order.total:.2f} {order.currency}.",
            data={"order_id": str(order.id)}, reference_id=order.id,
        )

    db.commit()
    logger.info("Order %s paid (%s); fulfillment side effects applied", order.id, payment_reference)
    return True


def _flag_paid_after_cancel(db: Session, order: Order, payment_reference: str, now: datetime) -> None:
    """Record a payment that arrived for a cancelled order and mark it for refund."""
    flagged = (
        db.query(Order)
        .filter(
            Order.id == order.id,
            Order.status == OrderStatus.CANCELLED,
            Order.refund_required.is_(False),
        )
        .update(
            {"refund_required": True, "payment_reference": payment_reference, "paid_at": now, "updated_at": now},
            synchronize_session="fetch",
        )
    )
    if not flagged:
        return
    logger.error("Payment %s received for cancelled order %s; refund required", payment_reference, order.id)
    notify(
        db, order.user_id, "customer", "payment_refund_pending", "Refund on its way",
        f"Your order was cancelled before your payment of {order.total:.2f} {order.currency} arrived. "
        "The payment will be refunded.",
        data={"order_id": str(order.id), "payment_reference": payment_reference}, reference_id=order.id,
    )
    db.commit()


def reconcile_order(db: Session, processor: PaymentProcessor, order: Order) -> Order:
    """Re-read the processor's view of the order's payment and apply it if paid."""
    if order.status != OrderStatus.AWAITING_PAYMENT or not order.checkout_reference:
        return order

    if order.checkout_kind == CheckoutKind.PAYMENT_INTENT:
        status = processor.retrieve_payment_intent_status(order.checkout_reference)
    else:
        status = processor.retrieve_session_status(order.checkout_reference)

    if status.paid:
        apply_payment(db, order.id, status.payment_reference or order.checkout_reference)
        db.refresh(order)
    else:
        logger.info("Order %s not paid yet (processor status %s)", order.id, status.status)
    return order


def handle_webhook_event(db: Session, event) -> Optional[str]:
    """Dispatch a verified processor event. Returns the order id it applied to, if any."""
    event_type = event["type"]
    obj = event["data"]["object"]
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        order_id = metadata.get("order_id")
        if order_id and obj.get("payment_status") == "paid":
            apply_payment(db, _uuid(order_id), obj.get("payment_intent") or obj["id"])
            return order_id
    elif event_type == "payment_intent.succeeded":
        order_id = metadata.get("order_id")
        if order_id:
            apply_payment(db, _uuid(order_id), obj["id"])
            return order_id
    elif event_type == "account.updated":
        account = (
            db.query(SellerPaymentAccount)
            .filter(SellerPaymentAccount.processor_account_id == obj["id"])
            .first()
        )
        if account:
            account.onboarding_completed = bool(obj.get("details_submitted"))
            account.charges_enabled = bool(obj.get("charges_enabled"))
            account.payouts_enabled = bool(obj.get("payouts_enabled"))
            db.commit()
    else:
        logger.info("Ignoring processor event %s", event_type)
    return None


def _uuid(value):
    try:
        return UUID(str(value))
    except ValueError:
        raise NotFoundError("Order not found", order_id=str(value))


# ---------------------------------------------------------------------------
# Cancellation and abandonment
# ---------------------------------------------------------------------------


def cancel_order(db: Session, order: Order, processor: Optional[PaymentProcessor] = None) -> Order:
    """
    Customer cancellation of an order that was never paid. The order's hosted
    checkout session is expired so it cannot be paid afterwards.
    """
    if order.status != OrderStatus.AWAITING_PAYMENT or order.payment_reference:
        raise InvalidTransitionError(
            "Only unpaid orders awaiting payment can be cancelled",
            current_status=OrderStatus(order.status).value,
        )
    order = transition(db, order, OrderStatus.CANCELLED, actor="customer")
    expire_checkout(processor, order.checkout_kind, order.checkout_reference)

    seller_user_id = order.seller.user_id if order.seller else None
    if seller_user_id:
        notify(
            db, seller_user_id, "seller", "order_cancelled", "Order cancelled",
            "A customer cancelled an unpaid order.",
            data={"order_id": str(order.id)}, reference_id=order.id,
        )
        db.commit()
    return order


def cancel_incomplete_orders(db: Session, user_id, processor: Optional[PaymentProcessor] = None) -> int:
    orders = db.query(Order).filter(
        Order.user_id == user_id,
        Order.status == OrderStatus.AWAITING_PAYMENT,
        Order.payment_reference.is_(None),
    ).all()
    count = 0
    for order in orders:
        try:
            cancel_order(db, order, processor)
            count += 1
        except ConflictError:
            # paid between the query and the update
            continue
    return count


def sweep_abandoned_orders(
    db: Session,
    now: Optional[datetime] = None,
    processor: Optional[PaymentProcessor] = None,
) -> int:
    """
    Cancel unpaid orders older than ABANDONED_ORDER_MINUTES, drop their line
    items and expire their hosted checkout sessions. Safe to run repeatedly
    and concurrently.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.ABANDONED_ORDER_MINUTES)
    stale = db.query(Order).filter(
        Order.status == OrderStatus.AWAITING_PAYMENT,
        Order.payment_reference.is_(None),
        Order.created_at < cutoff,
    ).all()

    count = 0
    expired_sessions = []
    for order in stale:
        if not guarded_update(db, order, OrderStatus.AWAITING_PAYMENT, {
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "updated_at": now,
        }):
            continue
        release_order_slots(db, order)
        db.query(OrderLineItem).filter(OrderLineItem.order_id == order.id).delete(synchronize_session="fetch")
        db.query(OrderServiceItem).filter(OrderServiceItem.order_id == order.id).delete(synchronize_session="fetch")
        expired_sessions.append((order.checkout_kind, order.checkout_reference))
        count += 1

    db.commit()
    for kind, reference in expired_sessions:
        expire_checkout(processor, kind, reference)
    if count:
        logger.info("Swept %d abandoned order(s)", count)
    return count
