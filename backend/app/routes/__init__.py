from app.routes.subscription_routes import router as subscription_router
from app.routes.stripe_routes import router as stripe_router

__all__ = [
    "subscription_router",
    "stripe_router",
]
