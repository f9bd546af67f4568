"""Sliding-window throttle for outgoing upstream requests."""

from collections import deque
from time import monotonic, sleep
from threading import Lock
from typing import Callable, Deque, Optional

# Configuration
RATE_LIMIT_REQUESTS = 60  # Max requests per window
RATE_LIMIT_WINDOW_SECONDS = 60  # Window size in seconds


class RateLimiter:
    """
    Sliding window rate limiter shared by every upstream call.

    `acquire()` blocks until a slot is free instead of rejecting, so callers
    queue up behind the limit. Thread-safe implementation.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = monotonic,
        sleeper: Callable[[float], None] = sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleeper
        self._requests: Deque[float] = deque()
        self._lock = Lock()

    def _prune(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self._requests and self._requests[0] <= window_start:
            self._requests.popleft()

    def try_acquire(self) -> Optional[float]:
        """
        Record a request if the window has room.

        Returns:
            None if the request was recorded, otherwise seconds until a slot frees up
        """
        now = self._clock()
        with self._lock:
            self._prune(now)
            if len(self._requests) >= self.max_requests:
                oldest_in_window = self._requests[0]
                return max(0.01, oldest_in_window + self.window_seconds - now)
            self._requests.append(now)
            return None

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a request slot is available.

        Args:
            timeout: Max seconds to wait (None waits indefinitely)

        Returns:
            True once the slot is recorded, False if the timeout elapsed
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            retry_after = self.try_acquire()
            if retry_after is None:
                return True
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                retry_after = min(retry_after, remaining)
            self._sleep(retry_after)

    def remaining(self) -> int:
        """Number of requests still allowed in the current window."""
        with self._lock:
            self._prune(self._clock())
            return max(0, self.max_requests - len(self._requests))

    def reset(self) -> None:
        """Forget all recorded requests."""
        with self._lock:
            self._requests.clear()
