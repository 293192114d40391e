"""Tests for the HTTP endpoints.

Tests cover:
- Redirect reconciliation (auth, page-view header, error mapping)
- Plan view for authenticated and anonymous callers
- Transaction history and plan repair
- Subscription actions and the renewal sweep secret
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
import pytest_asyncio
from fastapi import status
from httpx import ASGITransport, AsyncClient

from reconciler.api.deps import get_db, get_gateway_adapter, get_redirect_memory
from reconciler.core.config import settings
from reconciler.main import app
from reconciler.models.transaction import TransactionStatus
from reconciler.services.auth_service import AuthService
from reconciler.services.redirect_memory import LocalRedirectMemory
from reconciler.utils.dates import utcnow


@pytest_asyncio.fixture
async def client(session_factory, gateway):
    """HTTP client against the app with DB, gateway and memory overridden."""
    memory = LocalRedirectMemory()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    original_overrides = app.dependency_overrides.copy()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_adapter] = lambda: gateway({"status": 0})
    app.dependency_overrides[get_redirect_memory] = lambda: memory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides = original_overrides


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {AuthService.create_access_token(user.id)}"}


async def active_subscription(make_transaction, user, tran_id):
    now = utcnow()
    return await make_transaction(
        user,
        tran_id,
        status=TransactionStatus.COMPLETED,
        transaction_date=now - timedelta(days=1),
        expires_at=now + timedelta(days=29),
    )


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "ok"


# ============================================================================
# /payway
# ============================================================================

@pytest.mark.asyncio
async def test_reconcile_requires_auth(client):
    response = await client.post("/api/v1/payway/reconcile", json={"success": "true"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.asyncio
async def test_reconcile_success_and_replay(client, student_user, make_transaction):
    await make_transaction(student_user, "A1")
    headers = {**auth_headers(student_user), "X-Page-View-Id": "pv-1"}

    first = await client.post(
        "/api/v1/payway/reconcile", json={"success": "true", "tran_id": "A1"}, headers=headers
    )
    replay = await client.post(
        "/api/v1/payway/reconcile", json={"success": "true", "tran_id": "A1"}, headers=headers
    )

    assert first.status_code == status.HTTP_200_OK
    body = first.json()
    assert body["state"] == "verified-success"
    assert body["message"] == "Payment successful! Transaction ID: A1"
    assert body["plan"]["plan"] == "pro"
    assert body["plan"]["is_active"] is True
    assert replay.json()["state"] == "already-processed"


@pytest.mark.asyncio
async def test_reconcile_accepts_boolean_flags(client, student_user, make_transaction):
    await make_transaction(student_user, "A2")

    response = await client.post(
        "/api/v1/payway/reconcile",
        json={"success": True, "tran_id": "A2"},
        headers=auth_headers(student_user),
    )

    assert response.json()["state"] == "verified-success"


@pytest.mark.asyncio
async def test_reconcile_unknown_tran_id_is_404(client, student_user):
    response = await client.post(
        "/api/v1/payway/reconcile",
        json={"success": "1", "tran_id": "nope"},
        headers=auth_headers(student_user),
    )

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_reconcile_foreign_tran_id_is_403(client, student_user, company_user, make_transaction):
    await make_transaction(company_user, "A3")

    response = await client.post(
        "/api/v1/payway/reconcile",
        json={"success": "1", "tran_id": "A3"},
        headers=auth_headers(student_user),
    )

    assert response.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.asyncio
async def test_reconcile_cancel(client, student_user):
    response = await client.post(
        "/api/v1/payway/reconcile",
        json={"canceled": "true"},
        headers=auth_headers(student_user),
    )

    assert response.json()["state"] == "canceled"
    assert response.json()["message"] == "Payment was canceled."


@pytest.mark.asyncio
async def test_check_transaction(client, student_user, make_transaction):
    await make_transaction(student_user, "A4")

    response = await client.post(
        "/api/v1/payway/check-transaction",
        json={"tranId": "A4"},
        headers=auth_headers(student_user),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["outcome"] == "success"
    assert response.json()["matched_shape"] == "status_code"


@pytest.mark.asyncio
async def test_callback_settles_without_auth(client, student_user, make_transaction):
    await make_transaction(student_user, "A5")

    response = await client.post("/api/v1/payway/callback", json={"tran_id": "A5", "status": "0"})

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"tran_id": "A5", "status": "completed", "applied": True}


# ============================================================================
# /user
# ============================================================================

@pytest.mark.asyncio
async def test_plan_anonymous_is_free(client):
    response = await client.get("/api/v1/user/plan")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["plan"] == "free"


@pytest.mark.asyncio
async def test_plan_invalid_token_is_free(client):
    response = await client.get(
        "/api/v1/user/plan", headers={"Authorization": "Bearer not-a-token"}
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["plan"] == "free"


@pytest.mark.asyncio
async def test_plan_authenticated(client, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "A6")

    response = await client.get("/api/v1/user/plan", headers=auth_headers(student_user))

    body = response.json()
    assert body["plan"] == "pro"
    assert body["is_active"] is True
    assert body["transaction"]["tran_id"] == "A6"


@pytest.mark.asyncio
async def test_transaction_history(client, student_user, make_transaction):
    await make_transaction(student_user, "A7")
    await active_subscription(make_transaction, student_user, "A8")

    response = await client.get(
        "/api/v1/user/transactions?status=completed", headers=auth_headers(student_user)
    )

    body = response.json()
    assert body["total"] == 1
    assert body["transactions"][0]["tran_id"] == "A8"


@pytest.mark.asyncio
async def test_fix_plan(client, company_user, make_transaction):
    now = utcnow()
    await make_transaction(company_user, "A9", status=TransactionStatus.COMPLETED,
                           plan=None, amount="15.00", expires_at=now + timedelta(days=3))

    response = await client.post("/api/v1/user/fix-plan", headers=auth_headers(company_user))

    body = response.json()
    assert body["fixed"] == 2
    assert body["plan_badge"] == "growth"
    assert body["transactions"][0]["plan"] == "growth"


# ============================================================================
# /subscriptions
# ============================================================================

@pytest.mark.asyncio
async def test_list_plans_for_role(client):
    response = await client.get("/api/v1/subscriptions/plans?role=company")

    assert [plan["id"] for plan in response.json()["plans"]] == ["growth", "enterprise"]


@pytest.mark.asyncio
async def test_cancel_auto_renew(client, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "A10")

    response = await client.post(
        "/api/v1/subscriptions/cancel-auto-renew",
        json={"tranId": "A10"},
        headers=auth_headers(student_user),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["transaction"]["auto_renew"] is False
    assert response.json()["transaction"]["status"] == "completed"


@pytest.mark.asyncio
async def test_downgrade_canceled_transaction_is_400(client, student_user, make_transaction):
    await make_transaction(student_user, "A11", status=TransactionStatus.CANCELED)

    response = await client.post(
        "/api/v1/subscriptions/downgrade-to-free",
        json={"tranId": "A11"},
        headers=auth_headers(student_user),
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.asyncio
async def test_downgrade(client, student_user, make_transaction):
    await active_subscription(make_transaction, student_user, "A12")

    response = await client.post(
        "/api/v1/subscriptions/downgrade-to-free",
        json={"tranId": "A12"},
        headers=auth_headers(student_user),
    )
    plan = await client.get("/api/v1/user/plan", headers=auth_headers(student_user))

    assert response.json()["transaction"]["status"] == "expired"
    assert plan.json()["plan"] == "free"


@pytest.mark.asyncio
async def test_renewal_sweep_requires_secret(client):
    with patch.object(settings, "AUTO_RENEW_SECRET_TOKEN", "s3cret"):
        denied = await client.post("/api/v1/subscriptions/auto-renew")
        allowed = await client.post(
            "/api/v1/subscriptions/auto-renew", headers={"Authorization": "Bearer s3cret"}
        )

    assert denied.status_code == status.HTTP_401_UNAUTHORIZED
    assert allowed.status_code == status.HTTP_200_OK
    assert allowed.json()["processed"] == 0
