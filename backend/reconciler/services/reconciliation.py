"""Reconciliation orchestrator.

Turns the gateway's return-to-site redirect into a settled ledger record:

    verify (gateway check) -> transition (guard) -> repair -> resolve

Steps run strictly in sequence with a single gateway call and no retries.
Repeated failures surface to the user instead of being retried, since
automated retries against a payment gateway risk double charges.

Resulting states:
- verified-success: gateway confirmed, transaction completed
- assumed-success: completed on the redirect's word (check indeterminate, or
  the redirect carried no tran_id)
- canceled: user canceled, the gateway declined, or it was already
  canceled or expired elsewhere
- already-processed: replayed redirect, or already completed elsewhere
- pending-verification: nothing trustworthy to act on; left pending
- no-op: nothing to do
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.transaction import TransactionStatus
from reconciler.schemas.plan import UserPlanView
from reconciler.services.gateway_status import GatewayStatusAdapter, GatewayVerdict
from reconciler.services.ledger_service import LedgerService
from reconciler.services.plan_repair import PlanRepairService
from reconciler.services.plan_resolver import PlanResolver
from reconciler.services.redirect_memory import LocalRedirectMemory, RedirectMemory
from reconciler.services.transition_guard import (
    SettlementMode,
    TransitionGuard,
    TransitionResult,
)
from reconciler.utils.dates import utcnow

logger = logging.getLogger(__name__)

TRUTHY_VALUES = frozenset({"true", "1", "yes", "on"})


class ReconciliationState(str, enum.Enum):
    """Terminal states of one reconciliation run."""

    VERIFIED_SUCCESS = "verified-success"
    ASSUMED_SUCCESS = "assumed-success"
    CANCELED = "canceled"
    ALREADY_PROCESSED = "already-processed"
    PENDING_VERIFICATION = "pending-verification"
    NO_OP = "no-op"

    @property
    def is_success(self) -> bool:
        return self in (
            ReconciliationState.VERIFIED_SUCCESS,
            ReconciliationState.ASSUMED_SUCCESS,
            ReconciliationState.ALREADY_PROCESSED,
        )


MODE_TO_STATE: dict[SettlementMode, ReconciliationState] = {
    SettlementMode.VERIFIED: ReconciliationState.VERIFIED_SUCCESS,
    SettlementMode.ASSUMED: ReconciliationState.ASSUMED_SUCCESS,
    SettlementMode.DECLINED: ReconciliationState.CANCELED,
    SettlementMode.ALREADY_SETTLED: ReconciliationState.ALREADY_PROCESSED,
    SettlementMode.UNVERIFIED: ReconciliationState.PENDING_VERIFICATION,
}

# Outcomes worth remembering for the page view; UNVERIFIED stays retryable
SETTLED_MODES = frozenset({
    SettlementMode.VERIFIED,
    SettlementMode.ASSUMED,
    SettlementMode.DECLINED,
    SettlementMode.ALREADY_SETTLED,
})


def parse_flag(value: Optional[Union[bool, str]]) -> bool:
    """Interpret a boolean-ish query parameter."""
    if isinstance(value, bool):
        return value
    return value is not None and str(value).strip().lower() in TRUTHY_VALUES


@dataclass(frozen=True)
class RedirectParams:
    """The gateway redirect's query contract: ``success|canceled`` and ``tran_id``."""

    success: bool = False
    canceled: bool = False
    tran_id: Optional[str] = None

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "RedirectParams":
        tran_id = (query.get("tran_id") or "").strip() or None
        return cls(
            success=parse_flag(query.get("success")),
            canceled=parse_flag(query.get("canceled")),
            tran_id=tran_id,
        )


@dataclass
class ReconciliationOutcome:
    """What the user should see after a redirect."""

    state: ReconciliationState
    message: str
    tran_id: Optional[str] = None
    view: Optional[UserPlanView] = None
    repairs: int = 0
    settlement: Optional[SettlementMode] = None


class ReconciliationOrchestrator:
    """Drives the redirect workflow for one authenticated user."""

    def __init__(
        self,
        db: AsyncSession,
        adapter: Optional[GatewayStatusAdapter] = None,
        memory: Optional[RedirectMemory] = None,
        ledger: Optional[LedgerService] = None,
        guard: Optional[TransitionGuard] = None,
        resolver: Optional[PlanResolver] = None,
        repair: Optional[PlanRepairService] = None,
    ):
        """Initialize the orchestrator.

        Args:
            db: Database session
            adapter: Gateway status adapter
            memory: Page-view redirect memory (in-process when omitted)
            ledger, guard, resolver, repair: Collaborators built from db when omitted
        """
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.adapter = adapter or GatewayStatusAdapter()
        self.memory = memory or LocalRedirectMemory()
        self.guard = guard or TransitionGuard(db, ledger=self.ledger)
        self.resolver = resolver or PlanResolver(db, ledger=self.ledger)
        self.repair = repair or PlanRepairService(db, ledger=self.ledger)

    async def reconcile(
        self,
        user_id: int,
        params: RedirectParams,
        view_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationOutcome:
        """Handle a return-from-gateway redirect.

        Args:
            user_id: Authenticated user
            params: Parsed redirect query
            view_id: Page-view identifier for replay de-duplication
            now: Clock override

        Returns:
            ReconciliationOutcome with the refreshed plan view

        Raises:
            TransactionNotFoundError: If tran_id is unknown
            TransactionOwnershipError: If tran_id belongs to someone else
        """
        now = now or utcnow()

        if params.success:
            if params.tran_id:
                outcome = await self._reconcile_tran_id(user_id, params.tran_id, view_id, now)
            else:
                outcome = await self._reconcile_latest_pending(user_id, now)
        elif params.canceled:
            outcome = ReconciliationOutcome(
                state=ReconciliationState.CANCELED,
                message=(
                    f"Payment was canceled. Transaction ID: {params.tran_id}"
                    if params.tran_id
                    else "Payment was canceled."
                ),
                tran_id=params.tran_id,
            )
        else:
            outcome = ReconciliationOutcome(
                state=ReconciliationState.NO_OP, message="Nothing to reconcile."
            )

        if outcome.state.is_success and outcome.settlement is not None:
            outcome.repairs = await self._repair(user_id, now)

        outcome.view = await self.resolver.resolve(user_id, now)
        logger.info(
            f"Reconciled redirect for user {user_id}: state={outcome.state.value} "
            f"tran_id={outcome.tran_id} plan={outcome.view.plan}"
        )
        return outcome

    async def handle_gateway_callback(
        self,
        tran_id: str,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Settle a transaction reported by the gateway's out-of-band callback.

        The callback body is not trusted; the gateway is asked directly. No
        trust-redirect fallback applies here.
        """
        now = now or utcnow()
        verdict = await self.adapter.check(tran_id)
        result = await self.guard.settle(tran_id, verdict, trusted_redirect=False, now=now)

        logger.info(
            f"Gateway callback for {tran_id}: verdict={verdict.outcome.value} "
            f"mode={result.mode.value} applied={result.applied}"
        )
        if result.applied and result.status == TransactionStatus.COMPLETED:
            await self._repair(result.transaction.user_id, now)
        return result

    async def check(self, user_id: int, tran_id: str) -> GatewayVerdict:
        """Classify a user's transaction without changing it."""
        await self.ledger.get_owned(tran_id, user_id)
        return await self.adapter.check(tran_id)

    async def _reconcile_tran_id(
        self,
        user_id: int,
        tran_id: str,
        view_id: Optional[str],
        now: datetime,
    ) -> ReconciliationOutcome:
        transaction = await self.ledger.get_owned(tran_id, user_id)

        if transaction.status.is_terminal:
            # Settled by the callback or an earlier redirect; skip the gateway
            if await self.memory.already_handled(view_id, tran_id):
                logger.info(f"Redirect for {tran_id} already handled in view {view_id}")
            result = TransitionResult(transaction, False, SettlementMode.ALREADY_SETTLED)
        else:
            verdict = await self.adapter.check(tran_id)
            result = await self.guard.settle(tran_id, verdict, trusted_redirect=True, now=now)

        if view_id and result.mode in SETTLED_MODES:
            await self.memory.remember(view_id, tran_id)
        return self._outcome(tran_id, result)

    async def _reconcile_latest_pending(
        self,
        user_id: int,
        now: datetime,
    ) -> ReconciliationOutcome:
        transaction = await self.ledger.get_latest_pending_or_completed(user_id)
        if transaction is None:
            logger.info(f"Success redirect without tran_id for user {user_id}: nothing pending")
            return ReconciliationOutcome(
                state=ReconciliationState.NO_OP, message="Payment successful!"
            )

        if transaction.status == TransactionStatus.COMPLETED:
            result = TransitionResult(transaction, False, SettlementMode.ALREADY_SETTLED)
        else:
            result = await self.guard.complete_from_redirect(
                transaction.tran_id, reason="redirect carried no tran_id", now=now
            )
        return self._outcome(transaction.tran_id, result)

    @staticmethod
    def _outcome(tran_id: str, result: TransitionResult) -> ReconciliationOutcome:
        state = MODE_TO_STATE[result.mode]
        if state == ReconciliationState.ALREADY_PROCESSED and result.status != TransactionStatus.COMPLETED:
            # Settled elsewhere as canceled or expired; never report it as paid
            state = ReconciliationState.CANCELED
            message = f"Transaction {tran_id} was already {result.status.value}."
        elif state == ReconciliationState.CANCELED:
            message = f"Payment verification failed. Transaction ID: {tran_id}"
        elif state == ReconciliationState.PENDING_VERIFICATION:
            message = f"We are still confirming your payment. Transaction ID: {tran_id}"
        else:
            message = f"Payment successful! Transaction ID: {tran_id}"
        return ReconciliationOutcome(
            state=state,
            message=message,
            tran_id=tran_id,
            settlement=result.mode,
        )

    async def _repair(self, user_id: int, now: datetime) -> int:
        try:
            report = await self.repair.repair(user_id, now)
        except SQLAlchemyError as e:
            # The payment is settled; a failed repair must not turn it into an error page
            logger.error(f"Plan repair failed for user {user_id}: {e}")
            await self.db.rollback()
            return 0
        return report.count


def get_reconciliation_orchestrator(
    db: AsyncSession,
    adapter: Optional[GatewayStatusAdapter] = None,
    memory: Optional[RedirectMemory] = None,
) -> ReconciliationOrchestrator:
    """Factory function to create ReconciliationOrchestrator."""
    return ReconciliationOrchestrator(db, adapter=adapter, memory=memory)
