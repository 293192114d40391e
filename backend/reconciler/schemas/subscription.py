"""Pydantic schemas for subscription management endpoints."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from reconciler.schemas.transaction import TransactionResponse


class SubscriptionActionRequest(BaseModel):
    """Body for cancel-auto-renew and downgrade-to-free."""

    model_config = ConfigDict(populate_by_name=True)

    tran_id: str = Field(alias="tranId", min_length=1, max_length=64)


class SubscriptionActionResponse(BaseModel):
    """Result of a subscription action."""

    success: bool = True
    message: str
    transaction: TransactionResponse


class RenewalItem(BaseModel):
    user_id: int
    source_tran_id: str
    tran_id: str
    plan: Optional[str] = None


class RenewalSweepResponse(BaseModel):
    """Summary of an auto-renew sweep."""

    processed: int = Field(description="Due subscriptions examined")
    renewed: list[RenewalItem] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list, description="Sources already renewed")
    errors: list[dict] = Field(default_factory=list)
