"""
Attempt limiting for credential endpoints.

Login and the password reset routes are guarded by a token bucket per client
address and path: each client gets ``auth_rate_limit_attempts`` tries that
refill evenly over ``auth_rate_limit_window_seconds``. Buckets live in
process memory and reset on restart.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request

from roboclub.config import Settings
from roboclub.auth.errors import RateLimitedError

logger = logging.getLogger("roboclub.auth.rate_limit")


@dataclass
class Bucket:
    tokens: float
    last_refill: float


class TokenBucket:
    """
    Token bucket limiter keyed by an arbitrary string.

    Attributes:
        rate: Refill rate in tokens per second
        burst: Bucket capacity
    """

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst <= 0:
            raise ValueError("burst must be positive")
        self.rate = rate
        self.burst = burst
        self.clock = clock
        self._buckets: Dict[str, Bucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["TokenBucket"]:
        """Build the limiter for credential routes, or None when disabled."""
        attempts = settings.auth_rate_limit_attempts
        window = settings.auth_rate_limit_window_seconds
        if attempts <= 0 or window <= 0:
            return None
        return cls(rate=attempts / window, burst=attempts)

    def _refill(self, bucket: Bucket, now: float) -> None:
        elapsed = now - bucket.last_refill
        bucket.tokens = min(self.burst, bucket.tokens + elapsed * self.rate)
        bucket.last_refill = now

    def consume(self, key: str) -> Tuple[bool, float]:
        """
        Take one token for ``key``.

        Returns:
            (allowed, retry_after_seconds); retry_after is 0 when allowed
        """
        with self._lock:
            now = self.clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = Bucket(tokens=float(self.burst), last_refill=now)
            self._refill(bucket, now)

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True, 0.0
            return False, (1 - bucket.tokens) / self.rate

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


def get_client_identifier(request: Request) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the peer address."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return f"ip:{forwarded_for.split(',')[0].strip()}"
    if request.client:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def limit_auth_attempts(request: Request) -> None:
    """
    Dependency charging one attempt against the caller for this route.

    Raises:
        RateLimitedError: the caller has no attempts left
    """
    limiter = request.app.state.services.rate_limiter
    if limiter is None:
        return
    client_id = get_client_identifier(request)
    allowed, retry_after = limiter.consume(f"{request.url.path}|{client_id}")
    if not allowed:
        logger.warning(
            f"Rate limit exceeded for {client_id} on {request.url.path}; "
            f"retry in {retry_after:.1f}s"
        )
        raise RateLimitedError(headers={
            "Retry-After": str(max(1, math.ceil(retry_after))),
            "X-RateLimit-Limit": str(limiter.burst),
            "X-RateLimit-Remaining": "0",
        })
