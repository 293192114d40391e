"""Plan resolver: derives a user's effective plan from the ledger.

The view is recomputed on every call and never cached. A lapsed paid plan is
still reported by tier with ``is_expired=True`` so the UI can show what
lapsed; access checks must use ``UserPlanView.grants_access``.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.transaction import TransactionStatus
from reconciler.schemas.plan import FREE_PLAN, UserPlanView
from reconciler.schemas.transaction import TransactionResponse
from reconciler.services.ledger_service import LedgerService
from reconciler.services.plan_catalog import is_paid_plan
from reconciler.utils.dates import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class PlanResolver:
    """Computes UserPlanView from transaction history."""

    def __init__(self, db: AsyncSession, ledger: Optional[LedgerService] = None):
        self.db = db
        self.ledger = ledger or LedgerService(db)

    async def resolve(self, user_id: int, now: Optional[datetime] = None) -> UserPlanView:
        """Resolve the effective plan for a user.

        Args:
            user_id: The user's ID
            now: Clock override

        Returns:
            UserPlanView; the free view when no completed paid transaction exists
        """
        now = now or utcnow()
        transaction = await self.ledger.get_latest_for_plan(user_id)

        if (
            transaction is None
            or transaction.status != TransactionStatus.COMPLETED
            or not is_paid_plan(transaction.plan)
        ):
            return UserPlanView(plan=FREE_PLAN)

        expires_at = ensure_utc(transaction.expires_at)
        # Legacy rows without an expiry never lapse
        is_expired = expires_at is not None and now > expires_at

        view = UserPlanView(
            plan=transaction.plan,
            is_expired=is_expired,
            is_active=not is_expired,
            expires_at=expires_at,
            next_billing_date=expires_at if transaction.auto_renew and not is_expired else None,
            auto_renew=transaction.auto_renew,
            transaction=TransactionResponse.model_validate(transaction),
        )

        logger.debug(
            f"Resolved plan for user {user_id}: {view.plan} "
            f"(expired={view.is_expired}, tran_id={transaction.tran_id})"
        )
        return view

    async def resolve_optional(
        self,
        user_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> UserPlanView:
        """Resolve for a possibly anonymous caller; anonymous gets the free view."""
        if user_id is None:
            return UserPlanView(plan=FREE_PLAN)
        return await self.resolve(user_id, now)


def get_plan_resolver(db: AsyncSession) -> PlanResolver:
    """Factory function to create PlanResolver."""
    return PlanResolver(db)
