"""FastAPI dependencies for database, authentication, and the payment provider."""

from functools import lru_cache
from typing import AsyncGenerator, Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.payment_provider import PaymentProvider, StripePaymentProvider
from .actor import Actor
from .config import settings
from .database import get_async_session
from .exceptions import AuthenticationError


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


async def get_current_actor(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Actor:
    """
    Authentication dependency that validates Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        Actor: Caller identity from the validated token

    Raises:
        AuthenticationError: If token is invalid or missing
    """
    if not authorization:
        raise AuthenticationError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header format")
    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")

    try:
        # PyJWT verifies the exp claim itself
        payload = jwt.decode(token, settings.bearer_token_secret, algorithms=["HS256"])
    except PyJWTError as e:
        raise AuthenticationError(f"Token validation failed: {e}")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError("Invalid token payload")

    return Actor(user_id=str(user_id), roles=tuple(payload.get("roles", [])))


@lru_cache
def _stripe_provider() -> StripePaymentProvider:
    return StripePaymentProvider(settings)


def get_payment_provider() -> PaymentProvider:
    """Payment provider dependency, overridden in tests."""
    return _stripe_provider()


DatabaseSession = Depends(get_db)
RequiredActor = Depends(get_current_actor)
Provider = Depends(get_payment_provider)
