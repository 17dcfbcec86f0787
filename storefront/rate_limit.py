"""In-process fixed-window rate limiting.

Counters live in this process only; running several replicas multiplies
the effective limit. Limits protect the service, they never guard
correctness.
"""
import logging
import threading
import time
from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request, status

from .auth import get_current_admin

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, name: str, max_requests: int, window_seconds: int = 60):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._store: Dict[str, list] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str, now: Optional[float] = None) -> Optional[int]:
        """Count one request; return seconds to wait when over the limit, else None."""
        now = time.monotonic() if now is None else now
        with self._lock:
            entry = self._store.get(identifier)
            if entry is None or now >= entry[1]:
                if len(self._store) > 10000:
                    self._cleanup(now)
                self._store[identifier] = [1, now + self.window_seconds]
                return None
            if entry[0] >= self.max_requests:
                return max(int(entry[1] - now + 0.999), 1)
            entry[0] += 1
            return None

    def _cleanup(self, now: float) -> None:
        for key in [k for k, (_, reset_at) in self._store.items() if now >= reset_at]:
            del self._store[key]

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


FETCH = RateLimiter("fetch", 100)
UPDATE = RateLimiter("update", 50)
DELETE = RateLimiter("delete", 30)

LIMITERS = (FETCH, UPDATE, DELETE)


def _enforce(limiter: RateLimiter, identifier: str) -> None:
    retry_after = limiter.check(identifier)
    if retry_after is not None:
        logger.warning("Rate limit %s exceeded by %s", limiter.name, identifier)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limited",
                "message": "Too many requests. Please try again later.",
                "retry_after": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )


def rate_limit(limiter: RateLimiter):
    """Dependency limiting callers by client address."""

    def _dependency(request: Request) -> None:
        client = request.client.host if request.client else "unknown"
        _enforce(limiter, f"ip:{client}")

    return _dependency


def admin_rate_limit(limiter: RateLimiter):
    """Dependency limiting admins by their user id; also enforces admin auth."""

    def _dependency(current_admin: Dict = Depends(get_current_admin)) -> Dict:
        _enforce(limiter, f"admin:{current_admin['id']}")
        return current_admin

    return _dependency
