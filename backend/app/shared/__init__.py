"""
Shared utilities (NOT business logic).

Usage:
    from app.shared import BaseRepository, utcnow
    from app.shared.rate_limit import InMemoryRateLimiter
"""
from .clock import utcnow, from_timestamp
from .repository import BaseRepository, StoreError
from .rate_limit import RateLimiter, RateLimitResult, InMemoryRateLimiter

__all__ = [
    # clock
    "utcnow",
    "from_timestamp",
    # repository
    "BaseRepository",
    "StoreError",
    # rate limiting
    "RateLimiter",
    "RateLimitResult",
    "InMemoryRateLimiter",
]
