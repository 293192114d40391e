"""API routes for subscription management.

This module provides REST endpoints for:
- GET /api/v1/subscriptions/plans - Paid plan catalogue
- POST /api/v1/subscriptions/cancel-auto-renew - Stop renewing, keep the period
- POST /api/v1/subscriptions/downgrade-to-free - End the paid period now
- POST /api/v1/subscriptions/auto-renew - Renewal sweep (cron, shared secret)
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.api.deps import get_current_user, get_db, ledger_http_error, security
from reconciler.core.config import settings
from reconciler.models.user import User, UserRole
from reconciler.schemas.plan import PlanCatalogResponse
from reconciler.schemas.subscription import (
    RenewalItem,
    RenewalSweepResponse,
    SubscriptionActionRequest,
    SubscriptionActionResponse,
)
from reconciler.schemas.transaction import TransactionResponse
from reconciler.services.ledger_service import LedgerError
from reconciler.services.plan_catalog import SUBSCRIPTION_PLANS, plans_for_role
from reconciler.services.subscription_service import get_subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get(
    "/plans",
    response_model=PlanCatalogResponse,
    summary="List plans",
    description="Paid plans, optionally for one audience",
)
async def list_plans(
    role: Optional[UserRole] = Query(default=None, description="Audience filter"),
) -> PlanCatalogResponse:
    """List the paid plan catalogue. No authentication required."""
    plans = plans_for_role(role) if role else SUBSCRIPTION_PLANS
    return PlanCatalogResponse(plans=plans)


@router.post(
    "/cancel-auto-renew",
    response_model=SubscriptionActionResponse,
    summary="Cancel auto-renew",
    description="Stop the subscription from renewing; the current period stays",
)
async def cancel_auto_renew(
    request: SubscriptionActionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionActionResponse:
    """Turn off auto-renew on a completed subscription.

    Raises:
        HTTPException(400): If the transaction is not completed
        HTTPException(403): If the transaction belongs to another user
        HTTPException(404): If the transaction does not exist
    """
    service = get_subscription_service(db)
    try:
        transaction = await service.cancel_auto_renew(current_user.id, request.tran_id)
    except LedgerError as e:
        logger.warning(f"Cancel auto-renew rejected for user {current_user.id}: {e}")
        raise ledger_http_error(e)

    return SubscriptionActionResponse(
        message="Auto-renew canceled. Your plan stays active until it expires.",
        transaction=TransactionResponse.model_validate(transaction),
    )


@router.post(
    "/downgrade-to-free",
    response_model=SubscriptionActionResponse,
    summary="Downgrade to free",
    description="End the paid period immediately",
)
async def downgrade_to_free(
    request: SubscriptionActionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionActionResponse:
    """Expire a completed subscription now.

    Raises:
        HTTPException(400): If the subscription is not completed or already expired
        HTTPException(403): If the transaction belongs to another user
        HTTPException(404): If the transaction does not exist
    """
    service = get_subscription_service(db)
    try:
        transaction = await service.downgrade_to_free(current_user.id, request.tran_id)
    except LedgerError as e:
        logger.warning(f"Downgrade rejected for user {current_user.id}: {e}")
        raise ledger_http_error(e)

    return SubscriptionActionResponse(
        message="Downgraded to the free plan.",
        transaction=TransactionResponse.model_validate(transaction),
    )


@router.post(
    "/auto-renew",
    response_model=RenewalSweepResponse,
    summary="Run renewal sweep",
    description="Create pending renewals for lapsed auto-renewing subscriptions",
    include_in_schema=False,
)
async def run_renewal_sweep(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> RenewalSweepResponse:
    """Renewal sweep entry point for an external scheduler.

    Requires ``Authorization: Bearer <AUTO_RENEW_SECRET_TOKEN>`` when the
    secret is configured.

    Raises:
        HTTPException(401): If the secret is configured and not presented
    """
    secret = settings.AUTO_RENEW_SECRET_TOKEN
    if secret:
        presented = credentials.credentials if credentials else ""
        if not hmac.compare_digest(presented.encode(), secret.encode()):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )

    report = await get_subscription_service(db).renew_due_subscriptions()
    return RenewalSweepResponse(
        processed=report.processed,
        renewed=[RenewalItem(**item) for item in report.renewed],
        skipped=report.skipped,
        errors=report.errors,
    )
