"""Tests for subscription management and the renewal sweep.

Tests cover:
- Canceling auto-renew without touching the paid period
- Downgrading to free and its preconditions
- Renewal sweep creation, de-duplication and error collection
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from reconciler.models.transaction import Transaction, TransactionStatus
from reconciler.services.ledger_service import TransactionOwnershipError
from reconciler.services.plan_repair import PlanRepairService
from reconciler.services.plan_resolver import PlanResolver
from reconciler.services.subscription_service import (
    InvalidSubscriptionStateError,
    SubscriptionService,
    get_subscription_service,
)
from reconciler.utils.dates import ensure_utc

NOW = datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(db_session) -> SubscriptionService:
    return get_subscription_service(db_session)


async def active_subscription(make_transaction, user, tran_id, **kwargs):
    return await make_transaction(
        user,
        tran_id,
        status=TransactionStatus.COMPLETED,
        transaction_date=NOW - timedelta(days=10),
        expires_at=NOW + timedelta(days=20),
        **kwargs,
    )


# ============================================================================
# Cancel auto-renew
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_auto_renew_keeps_period(service, db_session, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "S1")

    transaction = await service.cancel_auto_renew(student_user.id, "S1")

    assert transaction.auto_renew is False
    assert transaction.status == TransactionStatus.COMPLETED
    assert ensure_utc(transaction.expires_at) == NOW + timedelta(days=20)

    view = await PlanResolver(db_session).resolve(student_user.id, now=NOW)
    assert view.plan == "pro"
    assert view.is_active is True
    assert view.next_billing_date is None


@pytest.mark.asyncio
async def test_cancel_auto_renew_requires_completed(service, student_user, make_transaction):
    await make_transaction(student_user, "S2")

    with pytest.raises(InvalidSubscriptionStateError):
        await service.cancel_auto_renew(student_user.id, "S2")


@pytest.mark.asyncio
async def test_cancel_auto_renew_requires_owner(service, student_user, company_user, make_transaction):
    await active_subscription(make_transaction, company_user, "S3")

    with pytest.raises(TransactionOwnershipError):
        await service.cancel_auto_renew(student_user.id, "S3")


# ============================================================================
# Downgrade
# ============================================================================

@pytest.mark.asyncio
async def test_downgrade_ends_period_now(service, db_session, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "S4")

    transaction = await service.downgrade_to_free(student_user.id, "S4", now=NOW)

    assert transaction.status == TransactionStatus.EXPIRED
    assert ensure_utc(transaction.expires_at) == NOW
    view = await PlanResolver(db_session).resolve(student_user.id, now=NOW)
    assert view.plan == "free"


@pytest.mark.asyncio
async def test_badge_repair_agrees_with_view_after_downgrade(
    service, db_session, student_user, make_transaction
):
    """Downgrading the newest purchase leaves an older basic one unseen by both."""
    await make_transaction(student_user, "S4a", status=TransactionStatus.COMPLETED,
                           plan="basic", amount="5.00",
                           transaction_date=NOW - timedelta(days=20),
                           expires_at=NOW + timedelta(days=10))
    await active_subscription(make_transaction, student_user, "S4b")
    await service.downgrade_to_free(student_user.id, "S4b", now=NOW)

    report = await PlanRepairService(db_session).repair(student_user.id, now=NOW)
    view = await PlanResolver(db_session).resolve(student_user.id, now=NOW)

    assert view.plan == "free"
    assert report.badge_after == view.plan


@pytest.mark.asyncio
async def test_downgrade_of_canceled_transaction_rejected(service, student_user, make_transaction):
    await make_transaction(student_user, "S5", status=TransactionStatus.CANCELED)

    with pytest.raises(InvalidSubscriptionStateError):
        await service.downgrade_to_free(student_user.id, "S5", now=NOW)

    transaction = await service.ledger.get("S5")
    assert transaction.status == TransactionStatus.CANCELED


@pytest.mark.asyncio
async def test_downgrade_of_lapsed_subscription_rejected(service, student_user, make_transaction):
    await make_transaction(student_user, "S6", status=TransactionStatus.COMPLETED,
                           expires_at=NOW - timedelta(days=1))

    with pytest.raises(InvalidSubscriptionStateError):
        await service.downgrade_to_free(student_user.id, "S6", now=NOW)


@pytest.mark.asyncio
async def test_downgrade_twice_rejected(service, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "S7")
    await service.downgrade_to_free(student_user.id, "S7", now=NOW)

    with pytest.raises(InvalidSubscriptionStateError):
        await service.downgrade_to_free(student_user.id, "S7", now=NOW)


# ============================================================================
# Renewal sweep
# ============================================================================

@pytest.mark.asyncio
async def test_sweep_creates_pending_renewal(service, db_session, student_user, make_transaction):
    await make_transaction(student_user, "S8", status=TransactionStatus.COMPLETED,
                           plan="basic", amount="5.00",
                           expires_at=NOW - timedelta(hours=1))

    report = await service.renew_due_subscriptions(NOW)

    assert len(report.renewed) == 1
    item = report.renewed[0]
    assert item["source_tran_id"] == "S8"
    assert item["plan"] == "basic"

    renewal = await service.ledger.get(item["tran_id"])
    assert renewal.status == TransactionStatus.PENDING
    assert renewal.amount == Decimal("5.00")
    assert renewal.tx_metadata["renewal_of"] == "S8"


@pytest.mark.asyncio
async def test_sweep_skips_not_due_and_non_renewing(service, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "S9")
    await make_transaction(student_user, "S10", status=TransactionStatus.COMPLETED,
                           auto_renew=False, expires_at=NOW - timedelta(days=1))
    await make_transaction(student_user, "S11", status=TransactionStatus.EXPIRED,
                           expires_at=NOW - timedelta(days=1))

    report = await service.renew_due_subscriptions(NOW)

    assert report.processed == 0


@pytest.mark.asyncio
async def test_sweep_is_idempotent(service, db_session, student_user, make_transaction):
    await make_transaction(student_user, "S12", status=TransactionStatus.COMPLETED,
                           expires_at=NOW - timedelta(hours=1))

    first = await service.renew_due_subscriptions(NOW)
    second = await service.renew_due_subscriptions(NOW + timedelta(hours=1))

    assert len(first.renewed) == 1
    assert second.renewed == []
    assert second.skipped == ["S12"]
    result = await db_session.execute(
        select(Transaction).where(Transaction.status == TransactionStatus.PENDING)
    )
    assert len(result.scalars().all()) == 1


@pytest.mark.asyncio
async def test_sweep_collects_errors(service, student_user, make_transaction):
    await make_transaction(student_user, "S13", status=TransactionStatus.COMPLETED,
                           expires_at=NOW - timedelta(hours=1))
    service.ledger.record_pending = AsyncMock(
        side_effect=OperationalError("INSERT", {}, Exception("disk full"))
    )

    report = await service.renew_due_subscriptions(NOW)

    assert report.renewed == []
    assert report.errors[0]["tran_id"] == "S13"
