from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.security import decode_token
from marketplace.db.session import get_db
from marketplace.models.user import User
from marketplace.models.seller import Seller
from marketplace.services.payment_processor import PaymentProcessor, StripeProcessor

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")

_processor = None


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    user_id = decode_token(token)
    if not user_id:
        raise credentials_exception
    user = db.query(User).filter(User.id == _as_uuid(user_id)).first()
    if not user:
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")
    return user


def get_current_customer(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role not in ("customer", "admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Customers only")
    return current_user


def get_current_seller(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Seller:
    """Resolve the caller's seller profile."""
    if current_user.role != "seller":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Sellers only")
    seller = db.query(Seller).filter(Seller.user_id == current_user.id).first()
    if not seller:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Seller profile not found")
    return seller


def get_current_admin_user(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def get_payment_processor() -> PaymentProcessor:
    global _processor
    if _processor is None:
        _processor = StripeProcessor(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
    return _processor


def _as_uuid(value):
    try:
        return UUID(str(value))
    except ValueError:
        return None
