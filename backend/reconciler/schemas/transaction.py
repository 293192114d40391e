"""Pydantic schemas for ledger transactions."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from reconciler.models.transaction import TransactionStatus


class TransactionResponse(BaseModel):
    """Response model for a single ledger transaction."""

    model_config = ConfigDict(from_attributes=True)

    tran_id: str = Field(description="Gateway transaction ID")
    plan: Optional[str] = Field(default=None, description="Target plan")
    amount: Decimal = Field(description="Charged amount")
    currency: str = Field(description="ISO currency code")
    status: TransactionStatus = Field(description="Lifecycle status")
    auto_renew: bool = Field(description="Whether the period renews")
    transaction_date: Optional[datetime] = Field(default=None, description="Payment date")
    expires_at: Optional[datetime] = Field(default=None, description="End of paid period")
    created_at: datetime = Field(description="Checkout creation time")


class TransactionHistoryResponse(BaseModel):
    """Response model for transaction history queries."""

    transactions: list[TransactionResponse] = Field(description="List of transactions")
    total: int = Field(description="Total number of transactions")
    limit: int = Field(description="Page size limit")
    offset: int = Field(description="Current offset")
