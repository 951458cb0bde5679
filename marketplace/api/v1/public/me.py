from uuid import UUID
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_customer, get_current_user
from marketplace.models.user import User
from marketplace.schemas.user import User as UserSchema, UserUpdate
from marketplace.schemas.notification import Notification as NotificationSchema
from marketplace.schemas.rewards import PointsBalance, PointsTransaction
from marketplace.schemas.common import PaginatedResponse
from marketplace.services import notifications, rewards

router = APIRouter(prefix="/me", tags=["Me"])

InboxRole = Optional[Literal["customer", "seller"]]


@router.patch("/", response_model=UserSchema)
def update_profile(
    data: UserUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Update contact details shown to sellers at pickup (full_name, phone)."""
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(current_user, field, value)
    db.commit()
    db.refresh(current_user)
    return current_user


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


@router.get("/points", response_model=PointsBalance)
def get_points(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    return rewards.get_balance(db, current_user.id)


@router.get("/points/transactions", response_model=List[PointsTransaction])
def get_points_history(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    """Points ledger, newest first: reserved at checkout, redeemed and earned at payment."""
    return rewards.list_transactions(db, current_user.id)


# ---------------------------------------------------------------------------
# Order and payout notifications
# ---------------------------------------------------------------------------


@router.get("/notifications", response_model=PaginatedResponse[NotificationSchema])
def list_notifications(
    role: InboxRole = Query(None, description="customer or seller inbox"),
    type: Optional[str] = Query(None, description="e.g. order_paid, new_order, order_ready_for_pickup"),
    unread_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Order and payout events for the current user, newest first. A seller's
    own purchases land in the customer inbox; use `role` to separate them.
    """
    query = notifications.user_notifications(db, current_user.id, role=role, type=type, unread_only=unread_only)
    total = query.count()
    return PaginatedResponse(
        data=query.offset((page - 1) * limit).limit(limit).all(),
        total=total,
        page=page,
        limit=limit,
        total_pages=-(-total // limit) if total else 0,
    )


@router.patch("/notifications/read-all")
def mark_all_notifications_read(
    role: InboxRole = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return {"marked_read": notifications.mark_all_read(db, current_user.id, role=role)}


@router.patch("/notifications/{notification_id}/read", response_model=NotificationSchema)
def mark_notification_read(
    notification_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return notifications.mark_read(db, current_user.id, notification_id)
