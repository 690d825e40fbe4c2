from fastapi import APIRouter

from .endpoints import (
    establishments,
    health,
    payment_webhooks,
    subscriptions,
    vouchers,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(vouchers.router)
router.include_router(subscriptions.router)
router.include_router(payment_webhooks.router)
router.include_router(establishments.router)
