"""API v1 router aggregation."""

from fastapi import APIRouter

from reconciler.api.v1.routers import payway, plans, subscriptions

api_router = APIRouter()

api_router.include_router(payway.router)  # Redirect reconciliation and gateway callback
api_router.include_router(plans.router)  # Effective plan, history and repair
api_router.include_router(subscriptions.router)  # Auto-renew, downgrade and renewal sweep
