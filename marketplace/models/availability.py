import uuid
from sqlalchemy import (
    Column, String, Boolean, DateTime, func, Integer, ForeignKey, Date, Time, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from marketplace.db.session import Base

class WeeklySchedule(Base):
    __tablename__ = "seller_weekly_schedules"
    __table_args__ = (UniqueConstraint("seller_id", "day_of_week", name="uq_weekly_schedule_seller_day"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False) # 0 = Sunday ... 6 = Saturday
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    is_available = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class ExplicitSlot(Base):
    __tablename__ = "seller_explicit_slots"
    __table_args__ = (UniqueConstraint("seller_id", "day_of_week", "slot_time", name="uq_explicit_slot"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    slot_time = Column(Time, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)

class AvailabilityBlock(Base):
    __tablename__ = "seller_availability_blocks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, index=True)
    block_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    is_all_day = Column(Boolean, default=False, nullable=False)
    reason = Column(String(50), nullable=True) # holiday, staff, booking ...
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order")

class SlotLock(Base):
    __tablename__ = "slot_locks"
    __table_args__ = (UniqueConstraint("seller_id", "slot_date", "slot_time", name="uq_slot_lock_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, index=True)
    slot_date = Column(Date, nullable=False)
    slot_time = Column(Time, nullable=False)
    locked_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
