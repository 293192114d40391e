"""Pydantic schemas for request/response validation."""

from reconciler.schemas.plan import (
    FREE_PLAN,
    PlanCatalogResponse,
    PlanRepairResponse,
    SubscriptionPlan,
    UserPlanView,
)
from reconciler.schemas.transaction import TransactionHistoryResponse, TransactionResponse

__all__ = [
    "FREE_PLAN",
    "PlanCatalogResponse",
    "PlanRepairResponse",
    "SubscriptionPlan",
    "UserPlanView",
    "TransactionHistoryResponse",
    "TransactionResponse",
]
