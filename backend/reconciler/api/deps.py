"""API dependencies for FastAPI route handlers.

This module provides dependency injection functions for:
- Database sessions
- Redis connections and the redirect memory built on them
- Authentication (JWT-based)
- Gateway status adapter
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from reconciler.core.database import get_db as get_db_session
from reconciler.core.redis import get_redis as get_redis_client
from reconciler.models.user import User
from reconciler.services.auth_service import InvalidTokenError, get_auth_service
from reconciler.services.gateway_status import (
    GatewayStatusAdapter,
    get_gateway_status_adapter,
)
from reconciler.services.ledger_service import (
    LedgerError,
    TransactionNotFoundError,
    TransactionOwnershipError,
)
from reconciler.services.redirect_memory import RedirectMemory, RedisRedirectMemory


# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session.

    Yields:
        AsyncSession for database operations
    """
    async for session in get_db_session():
        yield session


async def get_redis() -> redis.Redis:
    """Dependency to get Redis client.

    Returns:
        Redis client instance
    """
    return await get_redis_client()


async def get_redirect_memory(
    redis_client: redis.Redis = Depends(get_redis),
) -> RedirectMemory:
    """Dependency to get the page-view redirect memory."""
    return RedisRedirectMemory(redis_client)


def get_gateway_adapter() -> GatewayStatusAdapter:
    """Dependency to get the gateway status adapter."""
    return get_gateway_status_adapter()


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    """Dependency to get the current authenticated user from JWT token.

    Args:
        db: Database session
        credentials: HTTP Bearer credentials containing the JWT token

    Returns:
        User: The authenticated user

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await get_auth_service(db).validate_access_token(credentials.credentials)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_optional_user(
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[User]:
    """Dependency to get the current user if authenticated, or None.

    Used by read endpoints that degrade to the free view for anonymous callers.
    """
    if not credentials:
        return None

    try:
        return await get_auth_service(db).validate_access_token(credentials.credentials)
    except InvalidTokenError:
        return None


def ledger_http_error(e: LedgerError) -> HTTPException:
    """Map a ledger/service exception to the HTTP error routers raise."""
    if isinstance(e, TransactionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, TransactionOwnershipError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Transaction does not belong to the current user",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
