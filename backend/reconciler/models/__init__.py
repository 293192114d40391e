"""SQLAlchemy models for the reconciliation service."""

from reconciler.models.transaction import Transaction, TransactionStatus
from reconciler.models.user import User, UserRole

__all__ = [
    "User",
    "UserRole",
    "Transaction",
    "TransactionStatus",
]
