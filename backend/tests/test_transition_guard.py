"""Tests for the idempotent transition guard.

Tests cover:
- Verified completion and period dates
- Declines, replays and settled-elsewhere no-ops
- Concurrent settlement from two sessions
- The trust-redirect fallback and its window
- The stored-metadata hint for callbacks
- Forced expiry
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from reconciler.models.transaction import TransactionStatus
from reconciler.services.gateway_status import GatewayOutcome, GatewayVerdict, classify_payload
from reconciler.services.ledger_service import TransactionNotFoundError
from reconciler.services.transition_guard import SettlementMode, TransitionGuard
from reconciler.utils.dates import ensure_utc, utcnow

SUCCESS = {"status": {"code": "00"}, "data": {"payment_status": "APPROVED"}}
DECLINED = {"data": {"payment_status": "DECLINED"}}


def indeterminate(tran_id: str) -> GatewayVerdict:
    return GatewayVerdict(
        tran_id=tran_id,
        outcome=GatewayOutcome.INDETERMINATE,
        error="Network error: timed out",
    )


@pytest.fixture
def guard(db_session) -> TransitionGuard:
    return TransitionGuard(db_session)


@pytest.mark.asyncio
async def test_verified_success_completes_with_one_month_period(guard, student_user, make_transaction):
    await make_transaction(student_user, "G1")
    now = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)

    result = await guard.settle("G1", classify_payload("G1", SUCCESS), now=now)

    assert result.applied is True
    assert result.mode == SettlementMode.VERIFIED
    assert result.status == TransactionStatus.COMPLETED
    assert ensure_utc(result.transaction.transaction_date) == now
    # Calendar month, clamped to the end of February
    assert ensure_utc(result.transaction.expires_at) == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_gateway_transaction_date_is_used(guard, student_user, make_transaction):
    await make_transaction(student_user, "G2")
    payload = {"data": {"payment_status": "success", "transaction_date": "2026-05-10 08:00:00"}}

    result = await guard.settle("G2", classify_payload("G2", payload))

    assert ensure_utc(result.transaction.transaction_date) == datetime(
        2026, 5, 10, 1, 0, tzinfo=timezone.utc
    )
    assert ensure_utc(result.transaction.expires_at) == datetime(
        2026, 6, 10, 1, 0, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_completion_keeps_existing_metadata(guard, student_user, make_transaction):
    """Gateway payload is layered over stored metadata."""
    await make_transaction(student_user, "G3", metadata={"renewal_of": "G0"})

    result = await guard.settle("G3", classify_payload("G3", SUCCESS))

    assert result.transaction.tx_metadata["renewal_of"] == "G0"
    assert result.transaction.tx_metadata["data"]["payment_status"] == "APPROVED"


@pytest.mark.asyncio
async def test_decline_cancels(guard, student_user, make_transaction):
    await make_transaction(student_user, "G4")

    result = await guard.settle("G4", classify_payload("G4", DECLINED), trusted_redirect=True)

    assert result.mode == SettlementMode.DECLINED
    assert result.status == TransactionStatus.CANCELED
    assert result.transaction.expires_at is None


@pytest.mark.asyncio
async def test_settle_is_idempotent(guard, student_user, make_transaction):
    """Replaying the same verdict reports already-settled and changes nothing."""
    await make_transaction(student_user, "G5")
    first = await guard.settle("G5", classify_payload("G5", SUCCESS))
    expires_at = first.transaction.expires_at

    second = await guard.settle("G5", classify_payload("G5", SUCCESS))

    assert second.applied is False
    assert second.mode == SettlementMode.ALREADY_SETTLED
    assert second.transaction.expires_at == expires_at


@pytest.mark.asyncio
async def test_settled_transaction_ignores_contrary_verdict(guard, student_user, make_transaction):
    """A decline after completion does not cancel."""
    await make_transaction(student_user, "G6")
    await guard.settle("G6", classify_payload("G6", SUCCESS))

    result = await guard.settle("G6", classify_payload("G6", DECLINED))

    assert result.mode == SettlementMode.ALREADY_SETTLED
    assert result.status == TransactionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_tran_id(guard):
    with pytest.raises(TransactionNotFoundError):
        await guard.settle("missing", classify_payload("missing", SUCCESS))


@pytest.mark.asyncio
async def test_concurrent_settlement_applies_once(session_factory, student_user, make_transaction):
    """Redirect and callback racing in separate sessions settle exactly once."""
    await make_transaction(student_user, "G7")

    async def settle_in_own_session():
        async with session_factory() as session:
            guard = TransitionGuard(session)
            result = await guard.settle("G7", classify_payload("G7", SUCCESS))
            return result.applied, result.status

    results = await asyncio.gather(settle_in_own_session(), settle_in_own_session())

    assert sorted(applied for applied, _ in results) == [False, True]
    assert all(status == TransactionStatus.COMPLETED for _, status in results)


# ============================================================================
# Indeterminate handling
# ============================================================================

@pytest.mark.asyncio
async def test_trusted_redirect_assumes_success(guard, student_user, make_transaction):
    await make_transaction(student_user, "G8")

    result = await guard.settle("G8", indeterminate("G8"), trusted_redirect=True)

    assert result.mode == SettlementMode.ASSUMED
    assert result.status == TransactionStatus.COMPLETED
    assert result.transaction.expires_at is not None
    audit = result.transaction.tx_metadata["reconciliation"]
    assert audit["source"] == "redirect"
    assert "timed out" in audit["reason"]


@pytest.mark.asyncio
async def test_trusted_redirect_logs_assumed_success(guard, student_user, make_transaction, caplog):
    await make_transaction(student_user, "G9")

    with caplog.at_level("WARNING"):
        await guard.settle("G9", indeterminate("G9"), trusted_redirect=True)

    assert "ASSUMED_SUCCESS tran_id=G9" in caplog.text


@pytest.mark.asyncio
async def test_trust_window_bounds_redirect_fallback(db_session, student_user, make_transaction):
    """A stale pending checkout is not completed on the redirect's word."""
    guard = TransitionGuard(db_session, trust_window=timedelta(hours=24))
    now = utcnow()
    await make_transaction(student_user, "G10", created_at=now - timedelta(hours=25))

    result = await guard.settle("G10", indeterminate("G10"), trusted_redirect=True, now=now)

    assert result.mode == SettlementMode.UNVERIFIED
    assert result.applied is False
    assert result.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_untrusted_indeterminate_leaves_pending(guard, student_user, make_transaction):
    await make_transaction(student_user, "G11")

    result = await guard.settle("G11", indeterminate("G11"))

    assert result.mode == SettlementMode.UNVERIFIED
    assert result.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_metadata_hint_completes_untrusted_indeterminate(guard, student_user, make_transaction):
    """Stored gateway metadata reporting success is a last-resort signal."""
    await make_transaction(student_user, "G12", metadata={"data": {"payment_status": "completed"}})

    result = await guard.settle("G12", indeterminate("G12"))

    assert result.mode == SettlementMode.ASSUMED
    assert result.status == TransactionStatus.COMPLETED
    assert result.transaction.tx_metadata["reconciliation"]["source"] == "metadata_hint"


@pytest.mark.asyncio
async def test_metadata_hint_lost_race_is_not_logged_as_assumed(
    guard, student_user, make_transaction, caplog
):
    """When another caller settles first, no ASSUMED_SUCCESS audit line is written."""
    transaction = await make_transaction(
        student_user, "G12b", metadata={"data": {"payment_status": "completed"}}
    )

    with patch.object(
        guard.ledger, "apply_transition", AsyncMock(return_value=(transaction, False))
    ), caplog.at_level("WARNING"):
        result = await guard.settle("G12b", indeterminate("G12b"))

    assert result.applied is False
    assert result.mode == SettlementMode.ALREADY_SETTLED
    assert "ASSUMED_SUCCESS" not in caplog.text


# ============================================================================
# Forced expiry
# ============================================================================

@pytest.mark.asyncio
async def test_expire_completed(guard, student_user, make_transaction):
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    await make_transaction(student_user, "G13", status=TransactionStatus.COMPLETED,
                           expires_at=now + timedelta(days=10))

    result = await guard.expire("G13", now)

    assert result.applied is True
    assert result.mode == SettlementMode.EXPIRED
    assert result.status == TransactionStatus.EXPIRED
    assert ensure_utc(result.transaction.expires_at) == now
    assert result.transaction.auto_renew is True


@pytest.mark.asyncio
async def test_expire_pending_is_not_applied(guard, student_user, make_transaction):
    await make_transaction(student_user, "G14")

    result = await guard.expire("G14")

    assert result.applied is False
    assert result.status == TransactionStatus.PENDING
