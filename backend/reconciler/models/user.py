"""User model (owner of ledger transactions)."""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from reconciler.core.database import Base


class UserRole(str, enum.Enum):
    """Account audience; decides which plan catalogue applies."""

    STUDENT = "student"
    COMPANY = "company"


class User(Base):
    """
    User account as seen by the billing side.

    Profile data lives elsewhere; only what plan derivation needs is here.
    """

    __tablename__ = "users"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=lambda e: [m.value for m in e]),
        default=UserRole.STUDENT,
        nullable=False,
    )

    # Denormalized copy of the effective plan for list views (admin tables).
    # Never read for access decisions; PlanRepairService keeps it in sync.
    plan_badge: Mapped[str] = mapped_column(String(50), default="free", nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # Relationships
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role.value})>"
