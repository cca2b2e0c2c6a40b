"""API routes."""

from unitpay_engine.api.routes.chain import router as chain_router
from unitpay_engine.api.routes.health import router as health_router
from unitpay_engine.api.routes.intents import router as intents_router
from unitpay_engine.api.routes.lps import router as lps_router
from unitpay_engine.api.routes.webhooks import router as webhooks_router

__all__ = ["chain_router", "health_router", "intents_router", "lps_router", "webhooks_router"]
