"""Idempotent transition guard.

The only code path allowed to change ``Transaction.status``. Every change is a
compare-and-swap in the ledger, so a redirect handler and a gateway callback
racing on the same tran_id (possibly in different processes) settle it exactly
once: the loser sees zero rows updated and gets the settled record back.

Settlement modes, logged distinctly for auditing:
- verified: gateway confirmed the payment
- assumed: gateway check was indeterminate and the user's redirect carried
  the gateway's success flag (or stored metadata hinted success)
- declined: gateway reported a non-success status
- unverified: indeterminate and nothing trustworthy to go on; no mutation
- already_settled: someone else finalized the transaction first
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.core.config import settings
from reconciler.models.transaction import Transaction, TransactionStatus
from reconciler.services.gateway_status import GatewayVerdict, classify_payload
from reconciler.services.ledger_service import (
    LedgerService,
    TransactionNotFoundError,
    TransitionEffects,
)
from reconciler.utils.dates import add_months, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class SettlementMode(str, enum.Enum):
    """How a settle request was resolved."""

    VERIFIED = "verified"
    ASSUMED = "assumed"
    DECLINED = "declined"
    UNVERIFIED = "unverified"
    ALREADY_SETTLED = "already_settled"
    EXPIRED = "expired"


@dataclass
class TransitionResult:
    """Outcome of a guard call."""

    transaction: Transaction
    applied: bool
    mode: SettlementMode

    @property
    def status(self) -> TransactionStatus:
        return self.transaction.status


class TransitionGuard:
    """Applies at most one terminal transition per tran_id."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[LedgerService] = None,
        plan_period_months: Optional[int] = None,
        trust_window: Optional[timedelta] = None,
    ):
        """Initialize the guard.

        Args:
            db: Database session
            ledger: Ledger service (built from db when omitted)
            plan_period_months: Length of a paid period (defaults to settings)
            trust_window: Max checkout age for trusting a redirect (defaults to settings)
        """
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.plan_period_months = plan_period_months or settings.PLAN_PERIOD_MONTHS
        self.trust_window = trust_window or timedelta(hours=settings.REDIRECT_TRUST_WINDOW_HOURS)

    async def settle(
        self,
        tran_id: str,
        verdict: GatewayVerdict,
        trusted_redirect: bool = False,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Finalize a pending transaction according to a gateway verdict.

        Args:
            tran_id: Gateway transaction identifier
            verdict: Classified gateway check
            trusted_redirect: The caller is an authenticated return-from-gateway
                redirect carrying the gateway's success flag
            now: Clock override

        Returns:
            TransitionResult with the current record

        Raises:
            TransactionNotFoundError: If tran_id is unknown
        """
        now = now or utcnow()
        transaction = await self._load(tran_id)

        if transaction.status.is_terminal:
            logger.info(
                f"Transaction {tran_id} already {transaction.status.value}; "
                f"ignoring {verdict.outcome.value} verdict"
            )
            return TransitionResult(transaction, False, SettlementMode.ALREADY_SETTLED)

        if verdict.is_success:
            return await self._complete(
                transaction,
                self._completion_effects(transaction, now, verdict),
                SettlementMode.VERIFIED,
            )

        if verdict.is_failure:
            effects = TransitionEffects(
                payment_status=verdict.payment_status,
                metadata=self._merged_metadata(transaction, verdict.payload),
            )
            result = await self._transition(
                tran_id, TransactionStatus.CANCELED, effects, SettlementMode.DECLINED
            )
            if result.applied:
                logger.warning(
                    f"Transaction {tran_id} canceled: gateway declined via "
                    f"'{verdict.matched_shape}'"
                )
            return result

        # Indeterminate from here on
        if trusted_redirect:
            return await self.complete_from_redirect(
                tran_id, reason=verdict.error or "gateway check indeterminate", now=now
            )

        hint = classify_payload(tran_id, transaction.tx_metadata)
        if hint.is_success:
            effects = self._completion_effects(transaction, now, hint)
            effects.metadata = self._audit_metadata(
                transaction, "metadata_hint", verdict.error
            )
            result = await self._complete(transaction, effects, SettlementMode.ASSUMED)
            if result.applied:
                logger.warning(
                    f"ASSUMED_SUCCESS tran_id={tran_id} user_id={transaction.user_id} "
                    f"source=metadata_hint shape={hint.matched_shape} reason={verdict.error}"
                )
            return result

        logger.warning(
            f"UNVERIFIED tran_id={tran_id} user_id={transaction.user_id} "
            f"reason={verdict.error}; left pending"
        )
        return TransitionResult(transaction, False, SettlementMode.UNVERIFIED)

    async def complete_from_redirect(
        self,
        tran_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Complete a transaction on the strength of the user's redirect alone.

        Applies only while the checkout is younger than the trust window; older
        pending checkouts are left for a verified signal.
        """
        now = now or utcnow()
        transaction = await self._load(tran_id)

        if transaction.status.is_terminal:
            return TransitionResult(transaction, False, SettlementMode.ALREADY_SETTLED)

        created_at = ensure_utc(transaction.created_at)
        if created_at is not None and now - created_at > self.trust_window:
            logger.warning(
                f"UNVERIFIED tran_id={tran_id} user_id={transaction.user_id} "
                f"source=redirect reason=checkout older than trust window "
                f"({self.trust_window}); left pending"
            )
            return TransitionResult(transaction, False, SettlementMode.UNVERIFIED)

        effects = self._completion_effects(transaction, now)
        effects.metadata = self._audit_metadata(transaction, "redirect", reason)
        result = await self._complete(transaction, effects, SettlementMode.ASSUMED)
        if result.applied:
            logger.warning(
                f"ASSUMED_SUCCESS tran_id={tran_id} user_id={transaction.user_id} "
                f"source=redirect reason={reason}"
            )
        return result

    async def expire(self, tran_id: str, now: Optional[datetime] = None) -> TransitionResult:
        """Force a completed subscription to end now (explicit downgrade)."""
        now = now or utcnow()
        transaction, applied = await self.ledger.force_expire(tran_id, now)
        if applied:
            logger.info(f"Transaction {tran_id} force-expired at {now.isoformat()}")
        mode = SettlementMode.EXPIRED if applied else SettlementMode.ALREADY_SETTLED
        return TransitionResult(transaction, applied, mode)

    def _completion_effects(
        self,
        transaction: Transaction,
        now: datetime,
        verdict: Optional[GatewayVerdict] = None,
    ) -> TransitionEffects:
        paid_at = (verdict.transaction_date if verdict else None) or now
        return TransitionEffects(
            transaction_date=paid_at,
            expires_at=add_months(paid_at, self.plan_period_months),
            payment_status=verdict.payment_status if verdict else None,
            payment_amount=(verdict.payment_amount if verdict else None) or transaction.amount,
            payment_currency=(verdict.payment_currency if verdict else None)
            or transaction.currency,
            metadata=self._merged_metadata(transaction, verdict.payload if verdict else None),
        )

    @staticmethod
    def _merged_metadata(transaction: Transaction, payload: Optional[dict]) -> Optional[dict]:
        """Gateway payload layered over stored metadata (keeps ``renewal_of``)."""
        if not payload:
            return None
        return {**(transaction.tx_metadata or {}), **payload}

    @staticmethod
    def _audit_metadata(transaction: Transaction, source: str, reason: Optional[str]) -> dict:
        metadata = dict(transaction.tx_metadata or {})
        metadata["reconciliation"] = {
            "mode": SettlementMode.ASSUMED.value,
            "source": source,
            "reason": reason,
        }
        return metadata

    async def _complete(
        self,
        transaction: Transaction,
        effects: TransitionEffects,
        mode: SettlementMode,
    ) -> TransitionResult:
        return await self._transition(
            transaction.tran_id, TransactionStatus.COMPLETED, effects, mode
        )

    async def _transition(
        self,
        tran_id: str,
        status: TransactionStatus,
        effects: TransitionEffects,
        mode: SettlementMode,
    ) -> TransitionResult:
        transaction, applied = await self.ledger.apply_transition(tran_id, status, effects)
        if not applied:
            mode = SettlementMode.ALREADY_SETTLED
        return TransitionResult(transaction, applied, mode)

    async def _load(self, tran_id: str) -> Transaction:
        transaction = await self.ledger.get(tran_id)
        if transaction is None:
            raise TransactionNotFoundError(tran_id)
        return transaction
