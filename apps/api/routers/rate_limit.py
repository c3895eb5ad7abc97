"""Quota gate dependency for the generation endpoints."""

from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.errors import RateLimitExceeded
from services.quota import (
    MemoryQuotaStore,
    QuotaDecision,
    QuotaStore,
    RedisQuotaStore,
    SqlQuotaStore,
    check_quota,
)
from services.security_log import log_security_event


async def get_quota_store(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AsyncGenerator[QuotaStore, None]:
    """Yield the counter store selected by QUOTA_BACKEND."""
    backend = (settings.QUOTA_BACKEND or "database").strip().lower()
    if backend == "memory":
        store = getattr(request.app.state, "memory_quota_store", None)
        if store is None:
            store = MemoryQuotaStore()
            request.app.state.memory_quota_store = store
        yield store
    elif backend == "redis":
        store = RedisQuotaStore.from_url(settings.REDIS_URL)
        try:
            yield store
        finally:
            await store.aclose()
    else:
        yield SqlQuotaStore(db)


def quota_gate(endpoint: str) -> Callable[..., QuotaDecision]:
    """Return a FastAPI dependency that spends one call of ``endpoint``'s quota."""

    async def _dependency(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
        store: QuotaStore = Depends(get_quota_store),
    ) -> QuotaDecision:
        decision = await check_quota(store, auth.user_id, endpoint)
        if not decision.allowed:
            log_security_event("rate_limit", "medium", user_id=auth.user_id, request=request, endpoint=endpoint)
            raise RateLimitExceeded(
                "Rate limit exceeded. Try again in a moment.",
                retry_after=decision.retry_after(),
            )
        return decision

    return _dependency
