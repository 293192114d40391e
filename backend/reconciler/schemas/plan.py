"""Pydantic schemas for plans and the derived plan view.

This module defines:
- Subscription plan catalogue entries
- UserPlanView, the read model computed from the ledger
- Plan repair results
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from reconciler.models.user import UserRole
from reconciler.schemas.transaction import TransactionResponse

FREE_PLAN = "free"


class SubscriptionPlan(BaseModel):
    """Paid plan tier available to an audience."""

    id: str = Field(description="Plan identifier")
    name: str = Field(description="Human-readable plan name")
    role: UserRole = Field(description="Audience the plan is sold to")
    price: Decimal = Field(ge=0, description="Monthly price")
    currency: str = Field(default="USD", description="ISO currency code")

    @property
    def price_display(self) -> str:
        """Format price for display (e.g., $15.00)."""
        return f"${self.price:.2f}"


class UserPlanView(BaseModel):
    """Effective plan derived from the ledger for one request."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "plan": "pro",
                "is_expired": False,
                "is_active": True,
                "expires_at": "2026-11-16T10:00:00Z",
                "next_billing_date": "2026-11-16T10:00:00Z",
                "auto_renew": True,
                "transaction": None,
            }
        }
    )

    plan: str = Field(default=FREE_PLAN, description="Plan tier (paid tier even if lapsed)")
    is_expired: bool = Field(default=False, description="True if the paid period has ended")
    is_active: bool = Field(default=False, description="True if a paid period is running")
    expires_at: Optional[datetime] = Field(default=None, description="End of the paid period")
    next_billing_date: Optional[datetime] = Field(
        default=None, description="Next renewal date (auto-renewing, unexpired plans only)"
    )
    auto_renew: bool = Field(default=False, description="Whether the period renews")
    transaction: Optional[TransactionResponse] = Field(
        default=None, description="Transaction backing the plan"
    )

    @property
    def grants_access(self) -> bool:
        """Access-control decision: paid tier and not lapsed."""
        return self.plan != FREE_PLAN and not self.is_expired


class PlanRepairResponse(BaseModel):
    """Result of a plan auto-repair run."""

    fixed: int = Field(description="Number of repairs made")
    message: str = Field(description="Summary")
    transactions: list[dict] = Field(
        default_factory=list, description="Transactions whose plan was backfilled"
    )
    plan_badge: str = Field(description="Denormalized plan after repair")


class PlanCatalogResponse(BaseModel):
    """Available plans for an audience."""

    plans: list[SubscriptionPlan]
