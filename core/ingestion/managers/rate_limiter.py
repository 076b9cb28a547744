"""
Rate Limiter
Sliding-window admission control for outgoing prompt requests
"""
import time
from collections import deque
from typing import Callable, Dict, Optional, Tuple

from loguru import logger


# Requests allowed per window, by action type
DEFAULT_ACTION_LIMITS: Dict[str, Tuple[int, int]] = {
    "trade": (10, 60),
    "scan": (60, 60),
    "research": (30, 60),
    "polymarket_bet": (5, 60),
}


class RateLimiter:
    """
    Sliding-window rate limiter.

    Tracks the timestamps of admitted requests and refuses new ones once
    `max_requests` fall inside the trailing `time_window`.
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        time_window: int = 60,  # seconds
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            name: Limiter name for logging
            max_requests: Maximum requests allowed in time window
            time_window: Time window in seconds
            clock: Monotonic clock in seconds
        """
        self.name = name
        self.max_requests = max_requests
        self.time_window = time_window
        self._clock = clock

        self._requests: deque = deque()

        logger.debug(
            f"Initialized rate limiter '{name}': "
            f"{max_requests} requests per {time_window}s"
        )

    def _evict(self, now: float) -> None:
        cutoff = now - self.time_window
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()

    def check(self) -> Tuple[bool, float]:
        """
        Check whether a request may be made now.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = self._clock()
        self._evict(now)

        if len(self._requests) < self.max_requests:
            return True, 0.0

        retry_after = self._requests[0] + self.time_window - now
        logger.warning(
            f"Rate limit reached for '{self.name}': "
            f"{len(self._requests)}/{self.max_requests} in {self.time_window}s"
        )
        return False, max(retry_after, 0.0)

    def record(self) -> None:
        """Count one request against the window."""
        self._requests.append(self._clock())

    def get_remaining(self) -> int:
        self._evict(self._clock())
        return max(0, self.max_requests - len(self._requests))

    def get_reset_in(self) -> Optional[float]:
        """Seconds until the oldest request leaves the window, None if idle."""
        now = self._clock()
        self._evict(now)
        if not self._requests:
            return None
        return self._requests[0] + self.time_window - now

    def get_stats(self) -> Dict[str, object]:
        remaining = self.get_remaining()
        current = self.max_requests - remaining
        return {
            "name": self.name,
            "max_requests": self.max_requests,
            "time_window_seconds": self.time_window,
            "current_requests": current,
            "remaining": remaining,
            "reset_in_seconds": self.get_reset_in(),
            "utilization_percent": (current / self.max_requests) * 100 if self.max_requests else 0.0,
        }

    def reset(self) -> None:
        self._requests.clear()
        logger.info(f"Reset rate limiter '{self.name}'")


class ActionRateLimiter:
    """
    One sliding window per (action type, user id).

    Unknown action types are not limited.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, Tuple[int, int]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = dict(limits or DEFAULT_ACTION_LIMITS)
        self._clock = clock
        self.limiters: Dict[str, RateLimiter] = {}

    def _get(self, action_type: str, user_id: str) -> Optional[RateLimiter]:
        if action_type not in self.limits:
            return None
        key = f"{action_type}:{user_id}"
        limiter = self.limiters.get(key)
        if limiter is None:
            max_requests, window = self.limits[action_type]
            limiter = RateLimiter(key, max_requests, window, clock=self._clock)
            self.limiters[key] = limiter
        return limiter

    def check(self, action_type: str, user_id: str) -> Tuple[bool, float]:
        limiter = self._get(action_type, user_id)
        if limiter is None:
            return True, 0.0
        return limiter.check()

    def record(self, action_type: str, user_id: str) -> None:
        limiter = self._get(action_type, user_id)
        if limiter is not None:
            limiter.record()

    def get_stats(self) -> Dict[str, Dict[str, object]]:
        return {key: limiter.get_stats() for key, limiter in self.limiters.items()}

    def reset_all(self) -> None:
        for limiter in self.limiters.values():
            limiter.reset()
        logger.info("Reset all rate limiters")
