"""Bearer token validation.

Tokens are issued by the account service; this service only checks the
signature and expiry and resolves the ``sub`` claim to a user. Token
creation is kept for tooling and tests.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.core.config import settings
from reconciler.models.user import User

logger = logging.getLogger(__name__)


class AuthServiceError(Exception):
    """Base exception for authentication errors."""

    pass


class InvalidTokenError(AuthServiceError):
    """Raised when a token is invalid, expired or names an unknown user."""

    pass


class AuthService:
    """Service class for authentication operations."""

    def __init__(self, db: AsyncSession):
        """Initialize auth service with database session.

        Args:
            db: Async SQLAlchemy session
        """
        self.db = db

    @staticmethod
    def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT access token for a user.

        Args:
            user_id: User's database ID
            expires_delta: Lifetime (defaults to JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

        Returns:
            Encoded token
        """
        now = datetime.now(UTC)
        expire = now + (
            expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        payload = {
            "sub": str(user_id),
            "type": "access",
            "exp": int(expire.timestamp()),
            "iat": int(now.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> int:
        """Decode a token and return the user id it was issued for.

        Raises:
            InvalidTokenError: If the token is invalid, expired or malformed
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError as e:
            logger.warning(f"Token decode error: {e}")
            raise InvalidTokenError("Invalid or expired token")

        if payload.get("type", "access") != "access":
            raise InvalidTokenError("Not an access token")
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token subject is not a user id")

    async def validate_access_token(self, token: str) -> User:
        """Validate a token and load its user.

        Raises:
            InvalidTokenError: If the token is invalid or the user does not exist
        """
        user_id = self.decode_token(token)
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            logger.warning(f"Token for unknown user {user_id}")
            raise InvalidTokenError("User not found")
        return user


def get_auth_service(db: AsyncSession) -> AuthService:
    """Factory function to create AuthService."""
    return AuthService(db)
