"""Pytest configuration and shared fixtures for backend tests."""

import os
import sys
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

# Add parent directory to path for reconciler module discovery
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment BEFORE importing reconciler modules
os.environ.setdefault("ENVIRONMENT", "test")

from reconciler.core.database import Base
from reconciler.models import Transaction, TransactionStatus, User, UserRole
from reconciler.services.gateway_status import GatewayStatusAdapter
from reconciler.services.payway_client import PayWayClient


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Engine on a throwaway SQLite file.

    A file (rather than ``:memory:``) lets separate sessions hold separate
    connections, which the concurrency tests rely on.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        future=True,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory configured like the application's."""
    return sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide a test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def student_user(db_session):
    """Create a student user."""
    user = User(email="student@example.com", role=UserRole.STUDENT)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def company_user(db_session):
    """Create a company user."""
    user = User(email="company@example.com", role=UserRole.COMPANY)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def make_transaction(db_session):
    """Factory fixture inserting a ledger row directly."""

    async def _make(
        user: User,
        tran_id: str,
        status: TransactionStatus = TransactionStatus.PENDING,
        plan: Optional[str] = "pro",
        amount: str = "15.00",
        auto_renew: bool = True,
        transaction_date: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        metadata: Optional[dict] = None,
    ) -> Transaction:
        transaction = Transaction(
            tran_id=tran_id,
            user_id=user.id,
            plan=plan,
            amount=Decimal(amount),
            currency="USD",
            status=status,
            auto_renew=auto_renew,
            transaction_date=transaction_date,
            expires_at=expires_at,
            tx_metadata=metadata,
        )
        if created_at is not None:
            transaction.created_at = created_at
        db_session.add(transaction)
        await db_session.commit()
        await db_session.refresh(transaction)
        return transaction

    return _make


def payway_adapter(
    payload: Optional[dict[str, Any]] = None,
    status_code: int = 200,
    error: Optional[Exception] = None,
    calls: Optional[list] = None,
) -> GatewayStatusAdapter:
    """Adapter whose gateway is an httpx.MockTransport.

    Args:
        payload: JSON body to answer with
        status_code: HTTP status to answer with
        error: Exception raised instead of answering (network failure)
        calls: Optional list collecting the requests made
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if error is not None:
            raise error
        return httpx.Response(status_code, json=payload)

    client = PayWayClient(
        merchant_id="test_merchant",
        api_key="test_api_key",
        base_url="https://payway.test/api/payment-gateway/v1",
        transport=httpx.MockTransport(handler),
    )
    return GatewayStatusAdapter(client=client)


@pytest.fixture
def gateway():
    """Expose the MockTransport-backed adapter builder to tests."""
    return payway_adapter

