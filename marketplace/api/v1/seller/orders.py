from uuid import UUID
from typing import Optional
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_seller
from marketplace.core.errors import NotFoundError
from marketplace.models.seller import Seller
from marketplace.models.order import Order, OrderStatus
from marketplace.schemas.common import PaginatedResponse
from marketplace.schemas.order import Order as OrderSchema, OrderStatusUpdate, VerifyPickupRequest
from marketplace.services.fulfillment import transition, verify_pickup

router = APIRouter(prefix="/seller/orders", tags=["Seller - Orders"])


@router.get("/", response_model=PaginatedResponse[OrderSchema])
def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    booking_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """Orders placed with the current seller, newest first."""
    query = db.query(Order).filter(Order.seller_id == seller.id)
    if status_filter is not None:
        query = query.filter(Order.status == status_filter)
    if booking_date is not None:
        query = query.filter(Order.booking_date == booking_date)

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


@router.post("/verify-qr", response_model=OrderSchema)
def verify_qr(
    body: VerifyPickupRequest,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """
    Verify a scanned pickup code and complete the order. A code can be used
    once; scanning it again returns 409 `already_scanned`.
    """
    return verify_pickup(db, seller, body.qr_data, scanned_by=seller.user_id)


@router.get("/{order_id}", response_model=OrderSchema)
def get_order(
    order_id: UUID,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    order = db.query(Order).filter(Order.id == order_id, Order.seller_id == seller.id).first()
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))
    return order


@router.patch("/{order_id}/status", response_model=OrderSchema)
def update_status(
    order_id: UUID,
    body: OrderStatusUpdate,
    seller: Seller = Depends(get_current_seller),
    db: Session = Depends(get_db),
):
    """
    Move an order through processing -> ready -> complete, or cancel it.
    Orders still awaiting payment can only be cancelled.
    """
    order = db.query(Order).filter(Order.id == order_id, Order.seller_id == seller.id).first()
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))
    return transition(db, order, body.status, actor="seller")
