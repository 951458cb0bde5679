import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from marketplace.db.session import get_db
from marketplace.api.deps import get_payment_processor
from marketplace.core.config import settings
from marketplace.core.errors import ExternalServiceError
from marketplace.models.order import Order
from marketplace.services import payments
from marketplace.services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook")
async def processor_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="stripe-signature"),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Processor webhook. The signature is verified before anything is read;
    a bad signature returns 400 and nothing is applied. Signature checks and
    database work run in the threadpool.
    """
    payload = await request.body()
    event = await run_in_threadpool(processor.construct_event, payload, stripe_signature)
    order_id = await run_in_threadpool(payments.handle_webhook_event, db, event)
    return {"received": True, "order_id": order_id}


@router.get("/success")
def payment_success(
    order_id: UUID,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Success redirect from the hosted checkout. Reconciles the order with the
    processor, then sends the browser to the order page.
    """
    order = db.query(Order).filter(Order.id == order_id).first()
    if order:
        try:
            payments.reconcile_order(db, processor, order)
        except ExternalServiceError as exc:
            # The webhook applies the payment later
            logger.warning("Reconciliation on success redirect failed for order %s: %s", order_id, exc.message)
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/orders/{order_id}?payment=success", status_code=303)
