# API routes
from app.api.waitlist import router as waitlist_router
from app.api.redemptions import router as redemptions_router
from app.api.loyalty import router as loyalty_router


__all__ = [
    "waitlist_router",
    "redemptions_router",
    "loyalty_router",
]
