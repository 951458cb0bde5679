from marketplace.schemas.common import PaginatedResponse, ErrorResponse, MessageResponse
from marketplace.schemas.user import User, UserCreate, UserUpdate, AdminCreate, Token, TokenPayload
from marketplace.schemas.availability import (
    ScheduleDay, ScheduleUpdate, ExplicitSlot, ExplicitSlotsUpdate, Block, BlockCreate,
    AvailabilityResponse, SlotGridResponse, SlotLockRequest, SlotLockResponse, CutoffStatus,
)
from marketplace.schemas.cart import Cart, CartProductAdd, CartServiceAdd, CartLineUpdate
from marketplace.schemas.order import (
    CheckoutRequest, CheckoutResponse, Order, OrderStatusUpdate, PaymentHandle,
    PickupQRCode, VerifyPickupRequest,
)
from marketplace.schemas.rewards import (
    PointsBalance, PointsTransaction, DiscountCode, DiscountCodeCreate,
    DiscountValidateRequest, DiscountValidateResponse,
)
from marketplace.schemas.payout import Payout, PayoutRequest, Balance
from marketplace.schemas.notification import Notification
