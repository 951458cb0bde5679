import uuid
from sqlalchemy import Column, String, Boolean, DateTime, func, DECIMAL, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from marketplace.db.session import Base

class Seller(Base):
    __tablename__ = "sellers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    business_name = Column(String(255), nullable=False)
    business_address = Column(Text, nullable=True)
    postcode = Column(String(20), nullable=True)
    city = Column(String(100), nullable=True)
    same_day_pickup_allowed = Column(Boolean, default=True, nullable=False)
    cutoff_time = Column(String(8), nullable=True) # "HH:MM" or "HH:MM:SS", local time
    commission_rate_override = Column(DECIMAL(5, 4), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User")
    payment_account = relationship("SellerPaymentAccount", back_populates="seller", uselist=False)

    @property
    def pickup_location(self):
        parts = [p for p in (self.business_address, self.postcode, self.city) if p]
        return ", ".join(parts) if parts else None

class SellerPaymentAccount(Base):
    __tablename__ = "seller_payment_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(UUID(as_uuid=True), ForeignKey("sellers.id"), nullable=False, unique=True)
    processor_account_id = Column(String(255), nullable=False, index=True)
    onboarding_completed = Column(Boolean, default=False)
    charges_enabled = Column(Boolean, default=False)
    payouts_enabled = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    seller = relationship("Seller", back_populates="payment_account")
