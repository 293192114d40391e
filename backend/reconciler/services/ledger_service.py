"""Ledger service: durable record of every checkout attempt.

This service provides:
- Lookups by tran_id and per-user "latest" queries
- A conditional (compare-and-swap) status transition keyed by tran_id
- Auto-renew flag and forced-expiry updates
- Recording pending checkouts for the checkout initiator and renewal sweep

Every mutation is a single-row UPDATE committed immediately. Status changes
must go through TransitionGuard; nothing else calls ``apply_transition`` or
``force_expire``.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.transaction import Transaction, TransactionStatus
from reconciler.utils.dates import utcnow

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""

    pass


class TransactionNotFoundError(LedgerError):
    """Raised when no transaction exists for a tran_id."""

    def __init__(self, tran_id: str):
        self.tran_id = tran_id
        super().__init__(f"Transaction not found: {tran_id}")


class TransactionOwnershipError(LedgerError):
    """Raised when a user acts on another user's transaction."""

    def __init__(self, tran_id: str, user_id: int):
        self.tran_id = tran_id
        self.user_id = user_id
        super().__init__(f"Transaction {tran_id} does not belong to user {user_id}")


@dataclass
class TransitionEffects:
    """Column values written together with a terminal status."""

    transaction_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    payment_status: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_currency: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_values(self) -> dict[str, Any]:
        values = {
            "transaction_date": self.transaction_date,
            "expires_at": self.expires_at,
            "payment_status": self.payment_status,
            "payment_amount": self.payment_amount,
            "payment_currency": self.payment_currency,
            "tx_metadata": self.metadata,
        }
        values.update(self.extra)
        # Unset effects leave the stored column alone
        return {key: value for key, value in values.items() if value is not None}


class LedgerService:
    """Service for reading and conditionally mutating ledger rows."""

    def __init__(self, db: AsyncSession):
        """Initialize the ledger service.

        Args:
            db: Database session for ledger operations
        """
        self.db = db

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, tran_id: str) -> Optional[Transaction]:
        """Get a transaction by its gateway identifier.

        Always reloads from the database so callers see writes made by
        concurrent sessions.
        """
        stmt = (
            select(Transaction)
            .where(Transaction.tran_id == tran_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_owned(self, tran_id: str, user_id: int) -> Transaction:
        """Get a transaction and check it belongs to the user.

        Raises:
            TransactionNotFoundError: If tran_id is unknown
            TransactionOwnershipError: If another user owns it
        """
        transaction = await self.get(tran_id)
        if transaction is None:
            raise TransactionNotFoundError(tran_id)
        if transaction.user_id != user_id:
            raise TransactionOwnershipError(tran_id, user_id)
        return transaction

    async def get_latest_pending_or_completed(self, user_id: int) -> Optional[Transaction]:
        """Most recently created pending or completed transaction for a user."""
        return await self._latest(
            user_id,
            Transaction.status.in_([TransactionStatus.PENDING, TransactionStatus.COMPLETED]),
        )

    async def get_latest_pending(self, user_id: int) -> Optional[Transaction]:
        """Most recently created pending transaction for a user."""
        return await self._latest(user_id, Transaction.status == TransactionStatus.PENDING)

    async def get_latest_for_plan(self, user_id: int) -> Optional[Transaction]:
        """Latest transaction that ever granted a plan (completed or expired).

        Ordered by payment date first so that a late-settling older checkout
        does not shadow a newer paid period.
        """
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .where(
                Transaction.status.in_(
                    [TransactionStatus.COMPLETED, TransactionStatus.EXPIRED]
                )
            )
            .order_by(
                Transaction.transaction_date.desc().nulls_last(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_completed_unexpired(
        self,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> list[Transaction]:
        """Completed transactions whose period has not ended, newest first.

        Rows without ``expires_at`` (legacy) count as unexpired.
        """
        now = now or utcnow()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .where(Transaction.status == TransactionStatus.COMPLETED)
            .where(or_(Transaction.expires_at.is_(None), Transaction.expires_at > now))
            .order_by(
                Transaction.transaction_date.desc().nulls_last(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_completed_without_plan(self, user_id: int) -> list[Transaction]:
        """Completed transactions whose plan was never recorded."""
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .where(Transaction.status == TransactionStatus.COMPLETED)
            .where(or_(Transaction.plan.is_(None), Transaction.plan == ""))
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_due_for_renewal(self, now: Optional[datetime] = None) -> list[Transaction]:
        """Completed, auto-renewing, plan-bearing transactions past expiry."""
        now = now or utcnow()
        stmt = (
            select(Transaction)
            .where(Transaction.status == TransactionStatus.COMPLETED)
            .where(Transaction.auto_renew.is_(True))
            .where(Transaction.expires_at.is_not(None))
            .where(Transaction.expires_at <= now)
            .where(Transaction.plan.is_not(None))
            .where(Transaction.plan != "")
            .order_by(Transaction.expires_at.asc(), Transaction.id.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def find_renewal_of(
        self,
        source_tran_id: str,
        user_id: Optional[int] = None,
    ) -> Optional[Transaction]:
        """Find a pending or completed renewal recorded for a source transaction.

        Args:
            source_tran_id: The transaction being renewed
            user_id: Narrows the lookup to the source's owner when given

        Returns:
            The renewal transaction, or None
        """
        stmt = (
            select(Transaction)
            .where(
                Transaction.status.in_(
                    [TransactionStatus.PENDING, TransactionStatus.COMPLETED]
                )
            )
            .where(Transaction.tx_metadata["renewal_of"].as_string() == source_tran_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(1)
        )
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_history(
        self,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        status: Optional[TransactionStatus] = None,
    ) -> tuple[list[Transaction], int]:
        """Get transaction history for a user.

        Args:
            user_id: The user's ID
            limit: Maximum number of transactions to return
            offset: Offset for pagination
            status: Optional filter by status

        Returns:
            Tuple of (list of transactions, total count)
        """
        base_query = select(Transaction).where(Transaction.user_id == user_id)

        if status:
            base_query = base_query.where(Transaction.status == status)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = await self.db.scalar(count_query) or 0

        query = (
            base_query
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def apply_transition(
        self,
        tran_id: str,
        new_status: TransactionStatus,
        effects: Optional[TransitionEffects] = None,
    ) -> tuple[Transaction, bool]:
        """Move a pending transaction to a terminal status.

        Executes ``UPDATE ... WHERE tran_id = ? AND status = 'pending'``. When
        no row matches, the transaction was already settled by someone else
        and the stored record is returned unchanged.

        Args:
            tran_id: Gateway transaction identifier
            new_status: Target terminal status
            effects: Columns written alongside the status

        Returns:
            Tuple of (current transaction, whether this call applied the change)

        Raises:
            ValueError: If new_status is not terminal
            TransactionNotFoundError: If tran_id is unknown
        """
        if not new_status.is_terminal:
            raise ValueError("Transitions must target a terminal status")

        values = (effects or TransitionEffects()).as_values()
        values["status"] = new_status

        stmt = (
            update(Transaction)
            .where(Transaction.tran_id == tran_id)
            .where(Transaction.status == TransactionStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        applied = result.rowcount == 1
        await self.db.commit()

        transaction = await self.get(tran_id)
        if transaction is None:
            raise TransactionNotFoundError(tran_id)

        if applied:
            logger.info(f"Transaction {tran_id} transitioned pending -> {new_status.value}")
        else:
            logger.info(
                f"Transaction {tran_id} already settled as {transaction.status.value}; "
                f"requested {new_status.value} not applied"
            )
        return transaction, applied

    async def force_expire(
        self,
        tran_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[Transaction, bool]:
        """End a completed subscription immediately.

        Conditional on ``status = 'completed'``; returns (transaction, applied).
        """
        now = now or utcnow()
        stmt = (
            update(Transaction)
            .where(Transaction.tran_id == tran_id)
            .where(Transaction.status == TransactionStatus.COMPLETED)
            .values(status=TransactionStatus.EXPIRED, expires_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        applied = result.rowcount == 1
        await self.db.commit()

        transaction = await self.get(tran_id)
        if transaction is None:
            raise TransactionNotFoundError(tran_id)
        return transaction, applied

    async def set_auto_renew(self, tran_id: str, enabled: bool) -> Transaction:
        """Set the auto-renew flag. Never touches status or expiry."""
        stmt = (
            update(Transaction)
            .where(Transaction.tran_id == tran_id)
            .values(auto_renew=enabled)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount == 0:
            raise TransactionNotFoundError(tran_id)

        logger.info(f"Transaction {tran_id} auto_renew set to {enabled}")
        return await self.get(tran_id)

    async def set_plan(self, tran_id: str, plan: str) -> Transaction:
        """Record the plan on a transaction that lost it (repair path)."""
        stmt = (
            update(Transaction)
            .where(Transaction.tran_id == tran_id)
            .values(plan=plan)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount == 0:
            raise TransactionNotFoundError(tran_id)
        return await self.get(tran_id)

    async def record_pending(
        self,
        user_id: int,
        plan: Optional[str],
        amount: Decimal,
        currency: str = "USD",
        tran_id: Optional[str] = None,
        auto_renew: bool = True,
        metadata: Optional[dict] = None,
    ) -> Transaction:
        """Create a pending transaction (checkout initiation / renewal).

        Args:
            user_id: Owner
            plan: Target plan identifier
            amount: Price charged
            currency: ISO currency code
            tran_id: Gateway id; generated when omitted
            auto_renew: Whether the resulting period renews
            metadata: Optional context (e.g. renewal source)

        Returns:
            The new pending transaction
        """
        transaction = Transaction(
            user_id=user_id,
            tran_id=tran_id or generate_tran_id(),
            plan=plan,
            amount=Decimal(str(amount)),
            currency=currency,
            status=TransactionStatus.PENDING,
            auto_renew=auto_renew,
            tx_metadata=metadata,
        )
        self.db.add(transaction)
        await self.db.commit()
        await self.db.refresh(transaction)

        logger.info(
            f"Recorded pending transaction {transaction.tran_id} for user {user_id} "
            f"(plan={plan}, amount={transaction.amount} {currency})"
        )
        return transaction

    async def _latest(self, user_id: int, *criteria) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id, *criteria)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()


def generate_tran_id(now: Optional[datetime] = None) -> str:
    """Numeric gateway id: ``YYYYMMDDHHmmss`` plus three random digits."""
    now = now or utcnow()
    return now.strftime("%Y%m%d%H%M%S") + f"{secrets.randbelow(1000):03d}"


def get_ledger_service(db: AsyncSession) -> LedgerService:
    """Factory function to create LedgerService.

    Args:
        db: Database session

    Returns:
        Configured LedgerService instance
    """
    return LedgerService(db)
