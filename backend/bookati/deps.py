import logging
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .models import User
from .utils.auth import decode_access_claims

logger = logging.getLogger(__name__)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _lookup(session: AsyncSession, query):
    try:
        return await session.scalar(query)
    except ProgrammingError as exc:
        logger.error("user lookup failed; users table unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="user store unavailable",
        ) from exc
    finally:
        # The read autobegins a transaction; end it so handlers can open their own.
        await session.rollback()


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    if not authorization:
        raise _unauthorized("bearer token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("bearer token required")

    settings = get_settings()
    try:
        claims = decode_access_claims(
            token.strip(),
            secret=settings.auth_secret,
            algorithms=[settings.auth_algorithm],
        )
    except ValueError as exc:
        raise _unauthorized("invalid or expired token") from exc

    query = select(User.id).where(User.id == claims.user_id)
    if claims.tenant_id is not None:
        query = query.where(User.tenant_id == claims.tenant_id)
    found = await _lookup(session, query)
    if found is None:
        raise _unauthorized("user not found")
    return claims.user_id


async def get_current_tenant_id(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> int | None:
    """Tenant the authenticated user belongs to; None for platform users."""
    return await _lookup(session, select(User.tenant_id).where(User.id == user_id))
