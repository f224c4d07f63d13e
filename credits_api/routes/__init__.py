"""API route modules."""

from credits_api.routes.health import router as health_router
from credits_api.routes.keys import router as keys_router
from credits_api.routes.usage import router as usage_router
from credits_api.routes.credits import router as credits_router
from credits_api.routes.billing import router as billing_router
from credits_api.routes.cron import router as cron_router

__all__ = [
    "health_router",
    "keys_router",
    "usage_router",
    "credits_router",
    "billing_router",
    "cron_router",
]
