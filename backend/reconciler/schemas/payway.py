"""Pydantic schemas for the gateway-facing endpoints.

This module defines request and response models for:
- Redirect reconciliation
- Manual check-transaction
- Gateway callbacks
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from reconciler.schemas.plan import UserPlanView


class ReconcileRequest(BaseModel):
    """Query parameters the gateway appended to the return URL."""

    success: Optional[Union[bool, str]] = Field(default=None, description="Success flag (true/1/yes/on)")
    canceled: Optional[Union[bool, str]] = Field(default=None, description="Cancel flag (true/1/yes/on)")
    tran_id: Optional[str] = Field(default=None, max_length=64, description="Gateway transaction ID")


class ReconcileResponse(BaseModel):
    """What the user should see after returning from the gateway."""

    state: str = Field(description="Reconciliation state")
    message: str = Field(description="User-facing message")
    tran_id: Optional[str] = Field(default=None, description="Transaction reconciled")
    repairs: int = Field(default=0, description="Plan repairs made afterwards")
    plan: UserPlanView = Field(description="Refreshed effective plan")


class CheckTransactionRequest(BaseModel):
    """Request to classify a transaction against the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    tran_id: str = Field(alias="tranId", min_length=1, max_length=64)


class CheckTransactionResponse(BaseModel):
    """Normalized gateway verdict."""

    tran_id: str = Field(description="Gateway transaction ID")
    outcome: str = Field(description="success, failure or indeterminate")
    matched_shape: Optional[str] = Field(default=None, description="Status shape that decided")
    attempted_shapes: list[str] = Field(default_factory=list)
    error: Optional[str] = Field(default=None, description="Why the check was indeterminate")
    payload: Optional[dict[str, Any]] = Field(default=None, description="Raw gateway body")


class GatewayCallbackRequest(BaseModel):
    """Gateway pushback body. Only the tran_id is used; status is re-checked."""

    model_config = ConfigDict(extra="allow")

    tran_id: str = Field(min_length=1, max_length=64)


class GatewayCallbackResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    tran_id: str
    status: str = Field(description="Stored transaction status after the callback")
    applied: bool = Field(description="Whether this callback changed the transaction")
