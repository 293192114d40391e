"""Subscription lifecycle operations on completed transactions.

This service provides:
- Turning off auto-renew without ending the paid period
- Downgrading to free immediately (forced expiry through TransitionGuard)
- The renewal sweep that opens pending renewal checkouts for lapsed,
  auto-renewing subscriptions
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.transaction import Transaction, TransactionStatus
from reconciler.services.ledger_service import LedgerError, LedgerService
from reconciler.services.transition_guard import TransitionGuard
from reconciler.utils.dates import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class InvalidSubscriptionStateError(LedgerError):
    """Raised when a subscription operation does not fit the transaction's state."""

    pass


@dataclass
class RenewalSweepReport:
    """Result of one renewal sweep."""

    renewed: list[dict] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.renewed) + len(self.skipped) + len(self.errors)


class SubscriptionService:
    """Service for auto-renew, downgrade and renewal operations."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[LedgerService] = None,
        guard: Optional[TransitionGuard] = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.guard = guard or TransitionGuard(db, ledger=self.ledger)

    async def cancel_auto_renew(self, user_id: int, tran_id: str) -> Transaction:
        """Stop a subscription from renewing.

        The current period stays intact: status and expires_at are untouched.

        Args:
            user_id: Authenticated user
            tran_id: Transaction backing the subscription

        Returns:
            The updated transaction

        Raises:
            TransactionNotFoundError: If tran_id is unknown
            TransactionOwnershipError: If tran_id belongs to another user
            InvalidSubscriptionStateError: If the transaction is not completed
        """
        transaction = await self.ledger.get_owned(tran_id, user_id)
        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidSubscriptionStateError(
                f"Only active subscriptions can stop renewing "
                f"(transaction {tran_id} is {transaction.status.value})"
            )

        if not transaction.auto_renew:
            logger.info(f"Auto-renew already off for {tran_id}")
            return transaction

        transaction = await self.ledger.set_auto_renew(tran_id, False)
        logger.info(f"User {user_id} canceled auto-renew on {tran_id}")
        return transaction

    async def downgrade_to_free(
        self,
        user_id: int,
        tran_id: str,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """End a paid period immediately.

        Raises:
            TransactionNotFoundError: If tran_id is unknown
            TransactionOwnershipError: If tran_id belongs to another user
            InvalidSubscriptionStateError: If the transaction is not a completed,
                unexpired subscription
        """
        now = now or utcnow()
        transaction = await self.ledger.get_owned(tran_id, user_id)

        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidSubscriptionStateError(
                f"Cannot downgrade: transaction {tran_id} is {transaction.status.value}"
            )
        expires_at = ensure_utc(transaction.expires_at)
        if expires_at is not None and expires_at <= now:
            raise InvalidSubscriptionStateError(
                f"Cannot downgrade: subscription {tran_id} has already expired"
            )

        result = await self.guard.expire(tran_id, now)
        if not result.applied:
            # Lost a race with another state change between the check and the update
            raise InvalidSubscriptionStateError(
                f"Cannot downgrade: transaction {tran_id} is {result.status.value}"
            )

        logger.info(f"User {user_id} downgraded to free (ended {tran_id})")
        return result.transaction

    async def renew_due_subscriptions(self, now: Optional[datetime] = None) -> RenewalSweepReport:
        """Open a pending renewal for every lapsed auto-renewing subscription.

        A source that already has a pending renewal is skipped, so running the
        sweep twice creates nothing new. Failures are collected per item.
        """
        now = now or utcnow()
        report = RenewalSweepReport()

        # Snapshot first: a rollback below expires every loaded instance
        due = [
            (tx.tran_id, tx.user_id, tx.plan, tx.amount, tx.currency)
            for tx in await self.ledger.list_due_for_renewal(now)
        ]

        for source_tran_id, user_id, plan, amount, currency in due:
            try:
                existing = await self.ledger.find_renewal_of(source_tran_id, user_id=user_id)
                if existing is not None:
                    report.skipped.append(source_tran_id)
                    continue

                renewal = await self.ledger.record_pending(
                    user_id=user_id,
                    plan=plan,
                    amount=amount,
                    currency=currency,
                    auto_renew=True,
                    metadata={
                        "renewal_of": source_tran_id,
                        "requested_at": now.isoformat(),
                    },
                )
                report.renewed.append(
                    {
                        "user_id": user_id,
                        "source_tran_id": source_tran_id,
                        "tran_id": renewal.tran_id,
                        "plan": plan,
                    }
                )
            except (LedgerError, SQLAlchemyError) as e:
                logger.error(f"Renewal failed for {source_tran_id}: {e}")
                await self.db.rollback()
                report.errors.append({"tran_id": source_tran_id, "error": str(e)})

        logger.info(
            f"Renewal sweep: {len(report.renewed)} renewed, "
            f"{len(report.skipped)} skipped, {len(report.errors)} failed"
        )
        return report


def get_subscription_service(db: AsyncSession) -> SubscriptionService:
    """Factory function to create SubscriptionService."""
    return SubscriptionService(db)
