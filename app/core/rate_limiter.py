"""
Fixed-window rate limiting for authentication endpoints.

Counters live in Redis (INCR inside a MULTI pipeline) or, for single-process
development and tests, in a lock-guarded in-memory table.
"""

import logging
import time
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Endpoint classes; each has its own counter per client key
LOGIN = "login"
OTP_ISSUE = "otp_issue"
OTP_VERIFY = "otp_verify"
PASSCODE_VERIFY = "passcode_verify"
BIOMETRIC = "biometric"

# How often the in-memory table drops ended windows
MEMORY_SWEEP_INTERVAL_SECONDS = 60


class RateLimiter:
    """
    Per-key request counter with a fixed window.

    Usage:
        allowed, remaining = rate_limiter.allow("login:203.0.113.7", 5, 900)
    """

    def __init__(
        self,
        backend: Optional[str] = None,
        redis_client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or settings.RATE_LIMIT_BACKEND
        self.clock = clock
        self._lock = Lock()
        self._windows: Dict[str, List[float]] = {}  # key -> [window_end, count]
        self._last_sweep = clock()
        self.redis_client = None

        if self.backend == "redis":
            self.redis_client = redis_client or redis.Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
                decode_responses=True,
                socket_timeout=2,
            )

    def allow(self, key: str, max_attempts: int, window_seconds: int) -> Tuple[bool, int]:
        """
        Count one request against ``key`` and decide whether it may proceed.

        Args:
            key: Counter key, e.g. "otp_issue:203.0.113.7"
            max_attempts: Requests allowed per window
            window_seconds: Window length in seconds

        Returns:
            Tuple[bool, int]: (allowed, remaining requests in this window)
        """
        if self.redis_client is not None:
            return self._allow_redis(key, max_attempts, window_seconds)
        return self._allow_memory(key, max_attempts, window_seconds)

    def _allow_memory(self, key: str, max_attempts: int, window_seconds: int) -> Tuple[bool, int]:
        now = self.clock()
        with self._lock:
            if now - self._last_sweep >= MEMORY_SWEEP_INTERVAL_SECONDS:
                self._sweep(now)

            window = self._windows.get(key)
            if window is None or now >= window[0]:
                window = [now + window_seconds, 0]
                self._windows[key] = window

            if window[1] >= max_attempts:
                return False, 0

            window[1] += 1
            return True, int(max_attempts - window[1])

    def _sweep(self, now: float) -> None:
        """Drop windows that have ended. Caller holds the lock."""
        expired = [key for key, (expires_at, _) in self._windows.items() if now >= expires_at]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now

    def _allow_redis(self, key: str, max_attempts: int, window_seconds: int) -> Tuple[bool, int]:
        redis_key = f"ratelimit:{key}"
        try:
            pipe = self.redis_client.pipeline(transaction=True)
            # Window starts with the first request; NX keeps the original expiry
            pipe.set(redis_key, 0, ex=window_seconds, nx=True)
            pipe.incr(redis_key)
            _, count = pipe.execute()
        except redis.RedisError as e:
            # Fail open so a Redis outage does not lock every user out
            logger.error(f"Redis rate limiter error for {key}: {e}")
            return True, max_attempts

        count = int(count)
        if count > max_attempts:
            return False, 0
        return True, max_attempts - count

    def reset(self, key: Optional[str] = None) -> None:
        """
        Reset one key, or every key when ``key`` is None.

        Useful for testing or manual intervention.
        """
        if self.redis_client is not None:
            try:
                if key is None:
                    for redis_key in self.redis_client.scan_iter("ratelimit:*"):
                        self.redis_client.delete(redis_key)
                else:
                    self.redis_client.delete(f"ratelimit:{key}")
            except redis.RedisError as e:
                logger.error(f"Redis reset error: {e}")
            return

        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


# Singleton instance
rate_limiter = RateLimiter()
