import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.errors import NotFoundError
from marketplace.models.notification import Notification

logger = logging.getLogger(__name__)


def notify(db: Session, user_id, role: str, type: str, title: str, body: str, data=None, reference_id=None) -> None:
    """
    Write an in-app notification inside the caller's transaction.

    Fire-and-forget: the row is written in its own savepoint, so a failed
    insert is logged and rolled back without touching the caller's work.
    """
    db.flush()
    try:
        with db.begin_nested():
            db.add(Notification(
                user_id=user_id,
                role=role,
                type=type,
                title=title,
                message=body,
                data=data,
                reference_id=reference_id,
            ))
            db.flush()
    except SQLAlchemyError:
        logger.warning("Failed to write %s notification for user %s", type, user_id, exc_info=True)


def user_notifications(db: Session, user_id, role: Optional[str] = None, type: Optional[str] = None,
                       unread_only: bool = False):
    """Query for a user's notifications, newest first."""
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if role:
        query = query.filter(Notification.role == role)
    if type:
        query = query.filter(Notification.type == type)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id)


def mark_read(db: Session, user_id, notification_id) -> Notification:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id,
    ).first()
    if not notification:
        raise NotFoundError("Notification not found", notification_id=str(notification_id))
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id, role: Optional[str] = None) -> int:
    query = db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    )
    if role:
        query = query.filter(Notification.role == role)
    updated = query.update({"is_read": True}, synchronize_session="fetch")
    db.commit()
    return updated
