from typing import Annotated, Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, UUID4, field_validator
from decimal import Decimal
from datetime import date, datetime, time

from marketplace.models.order import OrderStatus


# Checkout — POST /orders
class ServiceBooking(BaseModel):
    service_id: UUID4
    booking_date: date
    booking_time: time


class CheckoutRequest(BaseModel):
    discount_code: Optional[str] = None
    points_to_redeem: Optional[Annotated[Decimal, Field(ge=0)]] = None
    bookings: List[ServiceBooking] = []
    pickup_date: Optional[date] = None
    pickup_time: Optional[time] = None
    pickup_instructions: Optional[str] = None

    @field_validator("discount_code", mode="before")
    @classmethod
    def parse_empty_str_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class OrderItem(BaseModel):
    id: UUID4
    product_id: UUID4
    product_name: str
    quantity: int
    unit_price: Decimal

    class Config:
        from_attributes = True


class OrderServiceItem(BaseModel):
    id: UUID4
    service_id: UUID4
    service_name: str
    quantity: int
    unit_price: Decimal
    booking_date: Optional[date] = None
    booking_time: Optional[time] = None
    duration_minutes: Optional[int] = None

    class Config:
        from_attributes = True


class Order(BaseModel):
    id: UUID4
    user_id: UUID4
    seller_id: UUID4
    status: OrderStatus
    currency: str
    subtotal: Decimal
    discount_amount: Decimal
    points_redeemed: Decimal
    points_earned: Optional[Decimal] = None
    total: Decimal
    pickup_location: Optional[str] = None
    pickup_instructions: Optional[str] = None
    booking_date: Optional[date] = None
    booking_time: Optional[time] = None
    checkout_reference: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_required: bool = False
    platform_commission: Optional[Decimal] = None
    seller_amount: Optional[Decimal] = None
    ready_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    qr_scanned_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: List[OrderItem] = []
    service_items: List[OrderServiceItem] = []

    class Config:
        from_attributes = True


class PaymentHandle(BaseModel):
    order_id: UUID4
    kind: str  # hosted_session, payment_intent
    reference: str
    checkout_url: Optional[str] = None
    client_secret: Optional[str] = None


class PaymentError(BaseModel):
    order_id: UUID4
    error: str
    message: str


class CheckoutResponse(BaseModel):
    orders: List[Order]
    payment_handles: List[PaymentHandle]
    payment_errors: List[PaymentError] = []
    discount_amount: Decimal
    discount_error: Optional[str] = None
    points_redeemed: Decimal


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class BulkCancelResponse(BaseModel):
    cancelled_count: int


class CleanupResponse(BaseModel):
    cancelled_orders: int
    expired_locks: int


# --- QR pickup ---

class PickupQRCode(BaseModel):
    order_id: UUID4
    qr_data: str
    payload: dict


class VerifyPickupRequest(BaseModel):
    qr_data: Union[str, Dict[str, Any]]


class BackfillResponse(BaseModel):
    frozen_orders: int
