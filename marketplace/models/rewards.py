import uuid
from sqlalchemy import (
    Column, String, Boolean, DateTime, func, DECIMAL, Integer, ForeignKey, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from marketplace.db.session import Base

class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(50), unique=True, nullable=False, index=True) # stored upper-case
    discount_type = Column(String(20), nullable=False) # percentage, fixed
    discount_value = Column(DECIMAL(10, 2), nullable=False)
    min_purchase_amount = Column(DECIMAL(10, 2), nullable=True)
    max_discount_amount = Column(DECIMAL(10, 2), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    applies_to_all_sellers = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    sellers = relationship("DiscountCodeSeller", cascade="all, delete-orphan")

class DiscountCodeSeller(Base):
    __tablename__ = "discount_code_sellers"
    __table_args__ = (UniqueConstraint("discount_code_id", "seller_id", name="uq_discount_code_seller"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    discount_code_id = Column(UUID(as_uuid=True), ForeignKey("discount_codes.id"), nullable=False, index=True)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False)

class OrderDiscountCode(Base):
    __tablename__ = "order_discount_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, unique=True)
    discount_code_id = Column(UUID(as_uuid=True), ForeignKey("discount_codes.id"), nullable=False)
    discount_amount = Column(DECIMAL(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class UserPoints(Base):
    __tablename__ = "user_points"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), primary_key=True)
    balance = Column(DECIMAL(10, 2), nullable=False, default=0)
    total_earned = Column(DECIMAL(10, 2), nullable=False, default=0)
    total_redeemed = Column(DECIMAL(10, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class PointsTransaction(Base):
    __tablename__ = "points_transactions"
    __table_args__ = (UniqueConstraint("order_id", "transaction_type", name="uq_points_tx_order_type"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    transaction_type = Column(String(20), nullable=False) # reserved, redeemed, earned
    amount = Column(DECIMAL(10, 2), nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
