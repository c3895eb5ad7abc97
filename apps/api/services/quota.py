"""Per-identity request quotas over a fixed window.

The gate reads the counter for (identity, endpoint), resets it when the window
has elapsed, rejects once the window maximum is reached and increments
otherwise. Counter storage is pluggable:

- ``SqlQuotaStore``: the ``rate_limits`` table, authoritative across instances.
- ``RedisQuotaStore``: one hash per key with a TTL.
- ``MemoryQuotaStore``: per-process only; lost on restart and not shared.

Any store failure fails open: the call is allowed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.rate_limit_counter import RateLimitCounter
from services.errors import ValidationError

logger = logging.getLogger(__name__)


GENERATE_IMAGE = "generate-image"
SUGGEST_PROMPTS = "suggest-prompts"


@dataclass(frozen=True)
class QuotaPolicy:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class QuotaCounter:
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int
    limit: int
    reset_at: Optional[datetime] = None

    def retry_after(self, now: Optional[datetime] = None) -> int:
        """Whole seconds until the window resets (at least 1)."""
        if self.reset_at is None:
            return 1
        current = now or datetime.now(timezone.utc)
        return max(int((self.reset_at - current).total_seconds() + 0.999), 1)


def quota_policies() -> Dict[str, QuotaPolicy]:
    window = max(int(settings.QUOTA_WINDOW_SECONDS), 1)
    return {
        GENERATE_IMAGE: QuotaPolicy(limit=int(settings.QUOTA_GENERATE_IMAGE_PER_WINDOW), window_seconds=window),
        SUGGEST_PROMPTS: QuotaPolicy(limit=int(settings.QUOTA_SUGGEST_PROMPTS_PER_WINDOW), window_seconds=window),
    }


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QuotaStore(Protocol):
    async def fetch(self, identity: str, endpoint: str) -> Optional[QuotaCounter]:
        ...

    async def reset(self, identity: str, endpoint: str, reset_at: datetime, now: datetime) -> None:
        """Start a new window with count=1."""
        ...

    async def increment(self, identity: str, endpoint: str, now: datetime) -> None:
        ...


class SqlQuotaStore:
    """Counters persisted in the ``rate_limits`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def fetch(self, identity: str, endpoint: str) -> Optional[QuotaCounter]:
        try:
            result = await self.db.execute(
                select(RateLimitCounter.count, RateLimitCounter.reset_at).where(
                    RateLimitCounter.user_id == identity,
                    RateLimitCounter.endpoint == endpoint,
                )
            )
            row = result.first()
        except Exception:
            await self.db.rollback()
            raise
        if row is None:
            return None
        count, reset_at = row
        return QuotaCounter(count=int(count or 0), reset_at=_as_utc(reset_at))

    async def reset(self, identity: str, endpoint: str, reset_at: datetime, now: datetime) -> None:
        try:
            await self.db.merge(
                RateLimitCounter(
                    user_id=identity,
                    endpoint=endpoint,
                    count=1,
                    reset_at=reset_at,
                    updated_at=now,
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def increment(self, identity: str, endpoint: str, now: datetime) -> None:
        try:
            await self.db.execute(
                update(RateLimitCounter)
                .where(RateLimitCounter.user_id == identity, RateLimitCounter.endpoint == endpoint)
                .values(count=RateLimitCounter.count + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise


class RedisQuotaStore:
    """Counters kept in Redis hashes that expire shortly after their window."""

    def __init__(self, client: redis.Redis, key_prefix: str = "imagenius:quota"):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisQuotaStore":
        return cls(redis.from_url(url, decode_responses=True))

    def _key(self, identity: str, endpoint: str) -> str:
        return f"{self.key_prefix}:{endpoint}:{identity}"

    async def fetch(self, identity: str, endpoint: str) -> Optional[QuotaCounter]:
        data = await self.client.hgetall(self._key(identity, endpoint))
        if not data or "reset_at" not in data:
            # An increment racing the key's expiry recreates it without a window.
            return None
        return QuotaCounter(
            count=int(data.get("count", 0)),
            reset_at=datetime.fromtimestamp(float(data["reset_at"]), tz=timezone.utc),
        )

    async def reset(self, identity: str, endpoint: str, reset_at: datetime, now: datetime) -> None:
        key = self._key(identity, endpoint)
        ttl = max(int((reset_at - now).total_seconds()) + 60, 1)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"count": 1, "reset_at": reset_at.timestamp()})
            pipe.expire(key, ttl)
            await pipe.execute()

    async def increment(self, identity: str, endpoint: str, now: datetime) -> None:
        await self.client.hincrby(self._key(identity, endpoint), "count", 1)

    async def aclose(self) -> None:
        await self.client.aclose()


class MemoryQuotaStore:
    """Process-local counters. Best effort only."""

    def __init__(self) -> None:
        self._counters: Dict[Tuple[str, str], QuotaCounter] = {}
        self._lock = asyncio.Lock()

    async def fetch(self, identity: str, endpoint: str) -> Optional[QuotaCounter]:
        async with self._lock:
            return self._counters.get((identity, endpoint))

    async def reset(self, identity: str, endpoint: str, reset_at: datetime, now: datetime) -> None:
        async with self._lock:
            self._counters[(identity, endpoint)] = QuotaCounter(count=1, reset_at=reset_at)

    async def increment(self, identity: str, endpoint: str, now: datetime) -> None:
        async with self._lock:
            current = self._counters.get((identity, endpoint))
            if current is not None:
                self._counters[(identity, endpoint)] = QuotaCounter(count=current.count + 1, reset_at=current.reset_at)

    def clear(self) -> None:
        self._counters.clear()


async def check_quota(
    store: QuotaStore,
    identity: str,
    endpoint: str,
    *,
    now: Optional[datetime] = None,
    policies: Optional[Dict[str, QuotaPolicy]] = None,
) -> QuotaDecision:
    """Decide whether ``identity`` may call ``endpoint`` once more and record the call."""
    if not identity or not str(identity).strip():
        raise ValidationError("Missing identity for quota check")
    policy = (policies or quota_policies()).get(endpoint)
    if policy is None:
        raise ValidationError("Unknown quota endpoint", detail=f"endpoint={endpoint!r}")

    current_time = now or datetime.now(timezone.utc)
    limit = policy.limit

    try:
        counter = await store.fetch(identity, endpoint)
    except Exception as exc:
        logger.error("Quota fetch failed for %s/%s, allowing request: %s", identity, endpoint, exc)
        return QuotaDecision(allowed=True, remaining=max(limit - 1, 0), limit=limit)

    if counter is None or current_time > counter.reset_at:
        reset_at = current_time + timedelta(seconds=policy.window_seconds)
        try:
            await store.reset(identity, endpoint, reset_at, current_time)
        except Exception as exc:
            logger.error("Quota reset failed for %s/%s, allowing request: %s", identity, endpoint, exc)
        return QuotaDecision(allowed=True, remaining=max(limit - 1, 0), limit=limit, reset_at=reset_at)

    if counter.count >= limit:
        return QuotaDecision(allowed=False, remaining=0, limit=limit, reset_at=counter.reset_at)

    try:
        await store.increment(identity, endpoint, current_time)
    except Exception as exc:
        logger.error("Quota increment failed for %s/%s, allowing request: %s", identity, endpoint, exc)
    return QuotaDecision(
        allowed=True,
        remaining=max(limit - counter.count - 1, 0),
        limit=limit,
        reset_at=counter.reset_at,
    )
