from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Callable, Mapping, Protocol, Sequence

from redis.asyncio import Redis

from tokenguard.core.config import Settings, get_settings
from tokenguard.domain.pricing import ANONYMOUS_RATE_LIMITS, TIERS, UNLIMITED, RateLimits
from tokenguard.domain.state import RATE_LIMITED


logger = logging.getLogger(__name__)

WINDOW_MINUTE = "minute"
WINDOW_HOUR = "hour"
WINDOW_DAY = "day"

# Fixed UTC windows; epoch-aligned so the day window turns over at UTC midnight.
WINDOWS: tuple[tuple[str, int], ...] = (
    (WINDOW_MINUTE, 60),
    (WINDOW_HOUR, 3600),
    (WINDOW_DAY, 86400),
)

# How often the in-memory store drops counters for buckets that have rolled over.
_SWEEP_INTERVAL_S = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limits: RateLimits
    counts: dict[str, int] = field(default_factory=dict)
    reason: str | None = None
    # Window that denied the request; the longest wait wins when several deny.
    bucket: str | None = None
    retry_after_s: int = 0


def _limit_for(limits: RateLimits, window: str) -> int:
    if window == WINDOW_MINUTE:
        return limits.per_minute
    if window == WINDOW_HOUR:
        return limits.per_hour
    return limits.per_day


def bucket_start(now: datetime, window_seconds: int) -> int:
    epoch = int(now.timestamp())
    return epoch - (epoch % window_seconds)


def resolve_limits(tier_id: str | None) -> RateLimits:
    # Anonymous and unknown callers get the most restrictive limits.
    if tier_id is None or tier_id not in TIERS:
        return ANONYMOUS_RATE_LIMITS
    return TIERS[tier_id].rate_limits


def evaluate(limits: RateLimits, now: datetime, counts: Mapping[str, int]) -> RateLimitDecision:
    """Decide one request from the usage already counted in each window.

    Pure function: ``counts`` holds requests already admitted in the current
    minute/hour/day buckets. A limit of ``UNLIMITED`` disables its window.
    ``retry_after_s`` is the time until the denying bucket rolls over.
    """
    epoch = int(now.timestamp())
    denied: list[tuple[str, int]] = []
    for window, seconds in WINDOWS:
        limit = _limit_for(limits, window)
        if limit == UNLIMITED:
            continue
        if int(counts.get(window, 0)) >= limit:
            boundary = bucket_start(now, seconds) + seconds
            denied.append((window, max(1, boundary - epoch)))
    snapshot = {window: int(counts.get(window, 0)) for window, _ in WINDOWS}
    if not denied:
        return RateLimitDecision(allowed=True, limits=limits, counts=snapshot)
    bucket, retry_after = max(denied, key=lambda item: item[1])
    return RateLimitDecision(
        allowed=False,
        limits=limits,
        counts=snapshot,
        reason=RATE_LIMITED,
        bucket=bucket,
        retry_after_s=retry_after,
    )


class CounterStore(Protocol):
    # Swappable counter backend; counts may lag briefly across instances.
    async def get_many(self, keys: Sequence[str]) -> list[int]: ...

    async def increment_many(self, keys: Sequence[tuple[str, int]]) -> None: ...


class InMemoryCounterStore:
    # Single-process store for one-instance deployments and tests.
    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        sweep_interval_s: float = _SWEEP_INTERVAL_S,
    ) -> None:
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or time.time
        self._sweep_interval_s = sweep_interval_s
        self._next_sweep_at = 0.0

    def __len__(self) -> int:
        return len(self._counters)

    def _sweep(self, now: float) -> None:
        # Past buckets are never read again, so drop them on a timer; caller holds the lock.
        if now < self._next_sweep_at:
            return
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._next_sweep_at = now + self._sweep_interval_s
        if expired:
            logger.debug("rate_limit_counters_swept removed=%s live=%s", len(expired), len(self._counters))

    async def get_many(self, keys: Sequence[str]) -> list[int]:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            values: list[int] = []
            for key in keys:
                entry = self._counters.get(key)
                if entry is None or entry[1] <= now:
                    self._counters.pop(key, None)
                    values.append(0)
                else:
                    values.append(entry[0])
            return values

    async def increment_many(self, keys: Sequence[tuple[str, int]]) -> None:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            for key, ttl_s in keys:
                count, expires_at = self._counters.get(key, (0, now + ttl_s))
                if expires_at <= now:
                    count, expires_at = 0, now + ttl_s
                self._counters[key] = (count + 1, expires_at)

    def clear(self) -> None:
        self._counters.clear()


class RedisCounterStore:
    # Shared counters for multi-instance deployments.
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get_many(self, keys: Sequence[str]) -> list[int]:
        if not keys:
            return []
        raw = await self._redis.mget(list(keys))
        return [int(value) if value is not None else 0 for value in raw]

    async def increment_many(self, keys: Sequence[tuple[str, int]]) -> None:
        pipe = self._redis.pipeline(transaction=False)
        for key, ttl_s in keys:
            pipe.incr(key)
            pipe.expire(key, ttl_s)
        await pipe.execute()


def build_counter_store(settings: Settings | None = None) -> CounterStore:
    settings = settings or get_settings()
    if settings.rate_limit_backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisCounterStore(redis)
    return InMemoryCounterStore()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TierRateLimiter:
    def __init__(
        self,
        *,
        store: CounterStore,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now

    @property
    def store(self) -> CounterStore:
        return self._store

    def _keys(self, bucket_key: str, now: datetime) -> list[tuple[str, str, int]]:
        prefix = self._settings.rate_limit_redis_prefix
        return [
            (window, f"{prefix}:{bucket_key}:{window}:{bucket_start(now, seconds)}", seconds)
            for window, seconds in WINDOWS
        ]

    async def allow(self, tier_id: str | None, bucket_key: str) -> RateLimitDecision:
        # Count only admitted requests so a denied caller does not extend its own lockout.
        limits = resolve_limits(tier_id)
        if not self._settings.rate_limit_enabled:
            return RateLimitDecision(allowed=True, limits=limits)
        now = self._time_provider()
        keys = self._keys(bucket_key, now)
        values = await self._store.get_many([key for _, key, _ in keys])
        counts = {window: value for (window, _, _), value in zip(keys, values)}
        decision = evaluate(limits, now, counts)
        if not decision.allowed:
            logger.info(
                "rate_limited bucket_key=%s tier=%s window=%s retry_after_s=%s",
                bucket_key,
                tier_id or "anonymous",
                decision.bucket,
                decision.retry_after_s,
            )
            return decision
        await self._store.increment_many([(key, seconds) for _, key, seconds in keys])
        return decision
