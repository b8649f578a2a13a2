"""
Devoluções Console API Dependencies

Dependency injection for DB sessions, auth, account scope and the
enrichment collaborators.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifier import Notifier, RedisNotifier
from core.config import get_settings
from core.security import account_scope
from db.session import AsyncSessionLocal
from integrations.enrichment_client import EnrichmentClient

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

# Dev account_id must match the local seed data
DEV_ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@devolucoes.local",
            "account_ids": [DEV_ACCOUNT_ID],
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def get_account_scope(user: dict = Depends(get_current_user)) -> list[str]:
    """Integration accounts the caller may read and enrich."""
    scope = account_scope(user)
    if not scope:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No account context",
        )
    return scope


def resolve_accounts(requested: list[str] | None, scope: list[str]) -> list[str]:
    """Requested accounts, all of them inside ``scope``; the whole scope when none requested."""
    if not requested:
        return list(scope)
    outside = [account_id for account_id in requested if account_id not in scope]
    if outside:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Account not in scope: {', '.join(outside)}",
        )
    return list(requested)


def get_enrichment_client() -> EnrichmentClient:
    return EnrichmentClient.from_settings(get_settings())


def get_notifier() -> Notifier:
    runtime_settings = get_settings()
    return RedisNotifier(runtime_settings.redis_url, runtime_settings.notification_channel_prefix)
