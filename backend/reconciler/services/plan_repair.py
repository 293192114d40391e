"""Plan auto-repair.

Fixes two kinds of drift between the ledger and what users see:
1. Completed transactions that never got a ``plan`` (legacy checkouts) get
   one inferred from the paid amount and the user's role.
2. ``User.plan_badge``, the denormalized copy used by list views, is
   overwritten when it disagrees with the plan the resolver reports as
   active (``free`` when that plan has lapsed or was downgraded).

Safe to call repeatedly: when nothing is inconsistent nothing is written. A
paid badge is only replaced when the ledger's effective plan differs, so a
correct paid badge is never downgraded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.user import User
from reconciler.schemas.plan import FREE_PLAN
from reconciler.services.ledger_service import LedgerService
from reconciler.services.plan_catalog import infer_plan
from reconciler.services.plan_resolver import PlanResolver
from reconciler.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    """What a repair run changed."""

    backfilled: list[dict] = field(default_factory=list)
    badge_before: Optional[str] = None
    badge_after: Optional[str] = None

    @property
    def badge_changed(self) -> bool:
        return self.badge_before != self.badge_after

    @property
    def count(self) -> int:
        return len(self.backfilled) + (1 if self.badge_changed else 0)


class PlanRepairService:
    """Reconciles derived plan data with the ledger."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[LedgerService] = None,
        resolver: Optional[PlanResolver] = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.resolver = resolver or PlanResolver(db, ledger=self.ledger)

    async def repair(self, user_id: int, now: Optional[datetime] = None) -> RepairReport:
        """Run both repair passes for a user.

        Args:
            user_id: The user's ID
            now: Clock override

        Returns:
            RepairReport; ``count`` is the number of repairs made
        """
        now = now or utcnow()
        user = await self._get_user(user_id)
        report = RepairReport(badge_before=user.plan_badge if user else None)

        if user is None:
            logger.warning(f"Plan repair skipped: user {user_id} not found")
            report.badge_after = report.badge_before
            return report

        for transaction in await self.ledger.list_completed_without_plan(user_id):
            plan = infer_plan(user.role, transaction.amount)
            if plan is None:
                logger.warning(
                    f"Cannot infer plan for {transaction.tran_id}: "
                    f"amount {transaction.amount} matches no {user.role.value} plan"
                )
                continue
            await self.ledger.set_plan(transaction.tran_id, plan)
            report.backfilled.append(
                {"tran_id": transaction.tran_id, "amount": str(transaction.amount), "plan": plan}
            )
            logger.info(f"Backfilled plan '{plan}' on transaction {transaction.tran_id}")

        view = await self.resolver.resolve(user_id, now)
        expected = view.plan if not view.is_expired else FREE_PLAN
        if user.plan_badge != expected:
            logger.info(
                f"Plan badge drift for user {user_id}: '{user.plan_badge}' -> '{expected}' "
                f"(tran_id={view.transaction.tran_id if view.transaction else None})"
            )
            user.plan_badge = expected
            await self.db.commit()

        report.badge_after = user.plan_badge
        if report.count:
            logger.info(f"Plan repair for user {user_id}: {report.count} fix(es)")
        return report

    async def _get_user(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


def get_plan_repair_service(db: AsyncSession) -> PlanRepairService:
    """Factory function to create PlanRepairService."""
    return PlanRepairService(db)
