import enum
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from sqlalchemy import (
    Boolean, Column, String, DateTime, func, DECIMAL, Integer, ForeignKey, Text, Date, Time, Enum as SAEnum,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from marketplace.db.session import Base

class OrderStatus(str, enum.Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    COMPLETE = "complete"
    CANCELLED = "cancelled"

# Statuses whose revenue is not (yet) recognized for the seller
UNRECOGNIZED_STATUSES = (OrderStatus.AWAITING_PAYMENT, OrderStatus.PENDING, OrderStatus.CANCELLED)

class CheckoutKind(str, enum.Enum):
    HOSTED_SESSION = "hosted_session"
    PAYMENT_INTENT = "payment_intent"

@dataclass(frozen=True)
class Unfrozen:
    pass

@dataclass(frozen=True)
class Frozen:
    seller_amount: Decimal
    commission: Decimal

CommissionSplit = Union[Unfrozen, Frozen]

def _values(enum_cls):
    return [member.value for member in enum_cls]

class Order(Base):
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, index=True)
    status = Column(
        SAEnum(OrderStatus, native_enum=False, length=20, values_callable=_values),
        nullable=False,
        default=OrderStatus.AWAITING_PAYMENT,
        index=True,
    )
    currency = Column(String(3), nullable=False, default="GBP")
    subtotal = Column(DECIMAL(10, 2), nullable=False)
    discount_amount = Column(DECIMAL(10, 2), nullable=False, default=0)
    points_redeemed = Column(DECIMAL(10, 2), nullable=False, default=0)
    points_earned = Column(DECIMAL(10, 2), nullable=True)
    total = Column(DECIMAL(10, 2), nullable=False) # after discount and points, never negative

    pickup_location = Column(Text, nullable=True)
    pickup_instructions = Column(Text, nullable=True)
    booking_date = Column(Date, nullable=True)
    booking_time = Column(Time, nullable=True)
    booking_duration_minutes = Column(Integer, nullable=True)

    # Processor handle (hosted session or payment intent); replaced on retry
    checkout_kind = Column(
        SAEnum(CheckoutKind, native_enum=False, length=20, values_callable=_values),
        nullable=True,
    )
    checkout_reference = Column(String(255), nullable=True, index=True)
    # Set only once the processor confirms the payment
    payment_reference = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Paid through a checkout that was already cancelled; the charge must be refunded
    refund_required = Column(Boolean, nullable=False, default=False)

    platform_commission = Column(DECIMAL(10, 2), nullable=True)
    seller_amount = Column(DECIMAL(10, 2), nullable=True)
    commission_frozen_at = Column(DateTime(timezone=True), nullable=True)

    ready_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    qr_scanned_at = Column(DateTime(timezone=True), nullable=True)
    qr_scanned_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    seller = relationship("Seller")
    customer = relationship("User", foreign_keys=[user_id])
    items = relationship("OrderLineItem", back_populates="order", cascade="all, delete-orphan")
    service_items = relationship("OrderServiceItem", back_populates="order", cascade="all, delete-orphan")

    @property
    def commission(self) -> CommissionSplit:
        if self.commission_frozen_at is None:
            return Unfrozen()
        return Frozen(
            seller_amount=Decimal(self.seller_amount),
            commission=Decimal(self.platform_commission),
        )

class OrderLineItem(Base):
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(DECIMAL(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

class OrderServiceItem(Base):
    __tablename__ = "order_service_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    service_id = Column(UUID(as_uuid=True), ForeignKey("services.id"), nullable=False)
    service_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(DECIMAL(10, 2), nullable=False)
    booking_date = Column(Date, nullable=True)
    booking_time = Column(Time, nullable=True)
    duration_minutes = Column(Integer, nullable=True)

    order = relationship("Order", back_populates="service_items")
