"""API routes for the PayWay gateway round trip.

This module provides REST endpoints for:
- POST /api/v1/payway/reconcile - Settle a checkout after the return redirect
- POST /api/v1/payway/check-transaction - Classify a transaction at the gateway
- POST /api/v1/payway/callback - Gateway pushback (re-verified, never trusted)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.api.deps import (
    get_current_user,
    get_db,
    get_gateway_adapter,
    get_redirect_memory,
    ledger_http_error,
)
from reconciler.models.user import User
from reconciler.schemas.payway import (
    CheckTransactionRequest,
    CheckTransactionResponse,
    GatewayCallbackRequest,
    GatewayCallbackResponse,
    ReconcileRequest,
    ReconcileResponse,
)
from reconciler.services.gateway_status import GatewayStatusAdapter
from reconciler.services.ledger_service import TransactionNotFoundError, TransactionOwnershipError
from reconciler.services.reconciliation import RedirectParams, get_reconciliation_orchestrator
from reconciler.services.redirect_memory import RedirectMemory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payway", tags=["payway", "payments"])


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile a gateway redirect",
    description="Verify and settle a checkout after the user returns from the gateway",
)
async def reconcile_redirect(
    request: ReconcileRequest,
    x_page_view_id: Optional[str] = Header(default=None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter: GatewayStatusAdapter = Depends(get_gateway_adapter),
    memory: RedirectMemory = Depends(get_redirect_memory),
) -> ReconcileResponse:
    """Reconcile the return-to-site redirect.

    The frontend forwards the query parameters the gateway appended
    (``success`` or ``canceled`` and ``tran_id``) together with an
    ``X-Page-View-Id`` header identifying the page load, so replays of the
    same page do not hit the gateway again.

    Args:
        request: Redirect parameters
        x_page_view_id: Page-view identifier
        current_user: Authenticated user
        db: Database session
        adapter: Gateway status adapter
        memory: Page-view redirect memory

    Returns:
        ReconcileResponse with the state, message and refreshed plan

    Raises:
        HTTPException(404): If tran_id is unknown
        HTTPException(403): If tran_id belongs to another user
    """
    orchestrator = get_reconciliation_orchestrator(db, adapter=adapter, memory=memory)
    params = RedirectParams.from_query(request.model_dump())

    try:
        outcome = await orchestrator.reconcile(
            current_user.id, params, view_id=x_page_view_id
        )
    except (TransactionNotFoundError, TransactionOwnershipError) as e:
        logger.warning(f"Reconcile rejected for user {current_user.id}: {e}")
        raise ledger_http_error(e)

    return ReconcileResponse(
        state=outcome.state.value,
        message=outcome.message,
        tran_id=outcome.tran_id,
        repairs=outcome.repairs,
        plan=outcome.view,
    )


@router.post(
    "/check-transaction",
    response_model=CheckTransactionResponse,
    summary="Check a transaction",
    description="Ask the gateway about a transaction without changing it",
)
async def check_transaction(
    request: CheckTransactionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter: GatewayStatusAdapter = Depends(get_gateway_adapter),
) -> CheckTransactionResponse:
    """Classify one of the user's transactions at the gateway.

    Raises:
        HTTPException(404): If tran_id is unknown
        HTTPException(403): If tran_id belongs to another user
    """
    orchestrator = get_reconciliation_orchestrator(db, adapter=adapter)
    try:
        verdict = await orchestrator.check(current_user.id, request.tran_id)
    except (TransactionNotFoundError, TransactionOwnershipError) as e:
        raise ledger_http_error(e)

    return CheckTransactionResponse(
        tran_id=verdict.tran_id,
        outcome=verdict.outcome.value,
        matched_shape=verdict.matched_shape,
        attempted_shapes=verdict.attempted_shapes,
        error=verdict.error,
        payload=verdict.payload,
    )


@router.post(
    "/callback",
    response_model=GatewayCallbackResponse,
    summary="Gateway callback",
    description="Gateway pushback; the transaction is re-verified with the check API",
    include_in_schema=False,
)
async def gateway_callback(
    request: GatewayCallbackRequest,
    db: AsyncSession = Depends(get_db),
    adapter: GatewayStatusAdapter = Depends(get_gateway_adapter),
) -> GatewayCallbackResponse:
    """Handle a gateway callback.

    Must be reachable without authentication. The body is not trusted: only
    its tran_id is used, and the outcome comes from the check API.

    Raises:
        HTTPException(404): If tran_id is unknown
    """
    orchestrator = get_reconciliation_orchestrator(db, adapter=adapter)
    try:
        result = await orchestrator.handle_gateway_callback(request.tran_id)
    except TransactionNotFoundError as e:
        logger.warning(f"Callback for unknown transaction {request.tran_id}")
        raise ledger_http_error(e)

    return GatewayCallbackResponse(
        tran_id=request.tran_id,
        status=result.status.value,
        applied=result.applied,
    )
