"""
Request admission checks.

Callers ask ``check(key, limit, window_minutes)`` before doing any
provider work and deny the request when ``allowed`` is False.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from app.shared.clock import utcnow

logger = logging.getLogger(__name__)

# How often idle keys are swept out of memory
PRUNE_INTERVAL = timedelta(minutes=1)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime


class RateLimiter(Protocol):
    async def check(self, key: str, limit: int, window_minutes: int) -> RateLimitResult:
        ...


class InMemoryRateLimiter:
    """
    Sliding-window rate limiter kept in process memory.

    One instance is created per application (see ``create_app``) and
    shared through ``app.state``; it is fine for a single worker.
    Keys whose last hit has left its window are dropped, so memory is
    bounded by the keys active within one window.
    """

    def __init__(self):
        self._hits: dict[str, list[datetime]] = {}
        self._expires_at: dict[str, datetime] = {}
        self._last_prune: Optional[datetime] = None
        self._lock = asyncio.Lock()

    async def check(self, key: str, limit: int, window_minutes: int) -> RateLimitResult:
        """
        Check if request is allowed and record it.

        Returns:
            RateLimitResult with remaining quota and when the window resets
        """
        window = timedelta(minutes=window_minutes)

        async with self._lock:
            now = utcnow()
            self._prune(now)

            # Drop hits outside the window
            cutoff = now - window
            hits = [ts for ts in self._hits.get(key, ()) if ts > cutoff]

            if len(hits) >= limit:
                self._store(key, hits, window)
                logger.warning(f"Rate limit hit: {len(hits)}/{limit} for {key}")
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=hits[0] + window,
                )

            hits.append(now)
            self._store(key, hits, window)

            return RateLimitResult(
                allowed=True,
                remaining=limit - len(hits),
                reset_at=hits[0] + window,
            )

    def _store(self, key: str, hits: list[datetime], window: timedelta) -> None:
        if not hits:
            self._forget(key)
            return
        self._hits[key] = hits
        self._expires_at[key] = hits[-1] + window

    def _forget(self, key: str) -> None:
        self._hits.pop(key, None)
        self._expires_at.pop(key, None)

    def _prune(self, now: datetime) -> None:
        if self._last_prune is not None and now - self._last_prune < PRUNE_INTERVAL:
            return
        self._last_prune = now
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            self._forget(key)
        if expired:
            logger.debug(f"Rate limiter pruned {len(expired)} idle keys")

    def reset(self) -> None:
        self._hits.clear()
        self._expires_at.clear()
        self._last_prune = None
