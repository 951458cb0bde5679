from fastapi import APIRouter

# Auth
from marketplace.api.v1.public.auth import router as auth_router

# Public — profile, notifications, points
from marketplace.api.v1.public.me import router as me_router

# Public — availability and slot locks
from marketplace.api.v1.public.availability import (
    seller_public_router,
    slot_lock_router,
)

# Public — cart, checkout, orders, payments, discount codes
from marketplace.api.v1.public.cart import router as cart_router
from marketplace.api.v1.public.orders import router as orders_router
from marketplace.api.v1.public.payments import router as payments_router
from marketplace.api.v1.public.rewards import router as rewards_router

# Seller
from marketplace.api.v1.seller.schedule import router as seller_schedule_router
from marketplace.api.v1.seller.orders import router as seller_orders_router
from marketplace.api.v1.seller.payouts import router as seller_payouts_router

# Admin
from marketplace.api.v1.admin.discount_codes import router as discount_codes_router
from marketplace.api.v1.admin.commissions import router as commissions_router

api_router = APIRouter()

# --- Auth ---
api_router.include_router(auth_router)

# --- Public: profile, notifications, points ---
api_router.include_router(me_router)

# --- Public: availability (adds /{seller_id}/availability to /sellers prefix) ---
api_router.include_router(seller_public_router)
api_router.include_router(slot_lock_router)

# --- Public: shopping ---
api_router.include_router(cart_router)
api_router.include_router(orders_router)
api_router.include_router(payments_router)
api_router.include_router(rewards_router)

# --- Seller ---
api_router.include_router(seller_schedule_router)
api_router.include_router(seller_orders_router)
api_router.include_router(seller_payouts_router)

# --- Admin ---
api_router.include_router(discount_codes_router)
api_router.include_router(commissions_router)
