"""API routes package."""

from billing_api.routes.users import router as users_router
from billing_api.routes.payment_methods import router as payment_methods_router

__all__ = [
    "users_router",
    "payment_methods_router",
]
