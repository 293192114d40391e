"""Transaction model: one row per gateway checkout attempt."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from reconciler.core.database import Base


class TransactionStatus(str, enum.Enum):
    """Lifecycle states of a checkout attempt."""

    PENDING = "pending"  # Created at checkout, awaiting confirmation
    COMPLETED = "completed"  # Paid; defines the plan until expires_at
    CANCELED = "canceled"  # Declined by the gateway
    EXPIRED = "expired"  # Forced downgrade

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class Transaction(Base):
    """
    Ledger record for a subscription checkout.

    Rows are never deleted. ``status`` leaves ``pending`` exactly once, and only
    through TransitionGuard.
    """

    __tablename__ = "transactions"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # Gateway-assigned identifier, unique per checkout attempt
    tran_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    # Foreign key to owner
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # What was bought
    plan: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, values_callable=lambda e: [m.value for m in e]),
        default=TransactionStatus.PENDING,
        nullable=False,
        index=True,
    )
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Gateway echo, filled on completion
    payment_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    payment_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    # Subscription period (only set once completed)
    transaction_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    # Raw gateway payload for audit - Note: 'metadata' is reserved by SQLAlchemy
    tx_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSON().with_variant(JSONB, "postgresql"), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="transactions")

    def __repr__(self) -> str:
        return (
            f"<Transaction(tran_id={self.tran_id}, user_id={self.user_id}, "
            f"plan={self.plan}, status={self.status.value})>"
        )
