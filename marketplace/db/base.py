from marketplace.db.session import Base
from marketplace.models.user import User
from marketplace.models.seller import Seller, SellerPaymentAccount
from marketplace.models.catalog import Product, Service
from marketplace.models.cart import CartItem, CartServiceItem
from marketplace.models.availability import WeeklySchedule, ExplicitSlot, AvailabilityBlock, SlotLock
from marketplace.models.order import Order, OrderLineItem, OrderServiceItem
from marketplace.models.rewards import (
    DiscountCode, DiscountCodeSeller, OrderDiscountCode, UserPoints, PointsTransaction,
)
from marketplace.models.payout import Payout
from marketplace.models.notification import Notification
