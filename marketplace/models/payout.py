import uuid
from sqlalchemy import Column, String, DateTime, func, DECIMAL, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from marketplace.db.session import Base

class Payout(Base):
    __tablename__ = "payouts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, index=True)
    amount = Column(DECIMAL(10, 2), nullable=False) # in request currency
    currency = Column(String(3), nullable=False)
    amount_base = Column(DECIMAL(10, 2), nullable=False) # normalized to BASE_CURRENCY
    status = Column(String(20), nullable=False, default="pending", index=True) # pending, processing, completed, failed
    transaction_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
