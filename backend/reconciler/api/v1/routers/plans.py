"""API routes for the user's effective plan.

This module provides REST endpoints for:
- GET /api/v1/user/plan - Effective plan derived from the ledger
- GET /api/v1/user/transactions - Ledger history
- POST /api/v1/user/fix-plan - Repair plan data that drifted from the ledger
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.api.deps import get_current_user, get_db, get_optional_user
from reconciler.models.transaction import TransactionStatus
from reconciler.models.user import User
from reconciler.schemas.plan import PlanRepairResponse, UserPlanView
from reconciler.schemas.transaction import TransactionHistoryResponse, TransactionResponse
from reconciler.services.ledger_service import get_ledger_service
from reconciler.services.plan_repair import get_plan_repair_service
from reconciler.services.plan_resolver import get_plan_resolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user", tags=["plans"])


@router.get(
    "/plan",
    response_model=UserPlanView,
    summary="Get effective plan",
    description="Current plan computed from the transaction ledger",
)
async def get_user_plan(
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
) -> UserPlanView:
    """Get the caller's effective plan.

    Anonymous callers (or invalid tokens) get the free view rather than an
    error. A lapsed paid plan is reported by tier with ``is_expired`` set.

    Returns:
        UserPlanView
    """
    resolver = get_plan_resolver(db)
    return await resolver.resolve_optional(current_user.id if current_user else None)


@router.get(
    "/transactions",
    response_model=TransactionHistoryResponse,
    summary="Get transaction history",
    description="Paginated ledger history for the current user",
)
async def get_transaction_history(
    limit: int = Query(default=50, ge=1, le=100, description="Max transactions to return"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    status: Optional[TransactionStatus] = Query(default=None, description="Filter by status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> TransactionHistoryResponse:
    """Get the current user's checkout history, newest first.

    Args:
        limit: Maximum number of transactions (1-100)
        offset: Pagination offset
        status: Optional status filter
        current_user: Authenticated user
        db: Database session

    Returns:
        TransactionHistoryResponse with transactions and pagination info
    """
    ledger = get_ledger_service(db)
    transactions, total = await ledger.list_history(
        current_user.id, limit=limit, offset=offset, status=status
    )
    return TransactionHistoryResponse(
        transactions=[TransactionResponse.model_validate(tx) for tx in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/fix-plan",
    response_model=PlanRepairResponse,
    summary="Repair plan data",
    description="Backfill missing plans and resync the plan badge",
)
async def fix_plan(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PlanRepairResponse:
    """Run plan auto-repair for the current user.

    Safe to call any number of times; a consistent account is left alone.
    """
    repair_service = get_plan_repair_service(db)
    report = await repair_service.repair(current_user.id)

    if report.count:
        message = f"Fixed {report.count} plan inconsistenc{'y' if report.count == 1 else 'ies'}"
    else:
        message = "Plan data is consistent"

    return PlanRepairResponse(
        fixed=report.count,
        message=message,
        transactions=report.backfilled,
        plan_badge=report.badge_after or "free",
    )
