"""
Request coalescing (singleflight) for cache computes.

The first caller for a key runs the compute; callers arriving while it is
in flight subscribe to the same Future and settle with its outcome.
"""
import threading
import time
import logging
from concurrent.futures import Future, TimeoutError as FuturesTimeout
from typing import Dict, Optional, Callable, Any
from dataclasses import dataclass, field

from app.errors import UpstreamUnavailable

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlight:
    """One running compute and the Future its subscribers settle on."""
    key: str
    future: Future = field(default_factory=Future)
    started_at: float = field(default_factory=time.monotonic)
    subscribers: int = 0


class RequestCoalescer:
    """
    At most one in-flight compute per key.

    Subscribers wait until the compute settles, so every caller sees the
    initiator's result or error. When a wait bound is configured and
    exceeded, the subscriber gets UpstreamUnavailable instead, which the
    cache treats like any failed recompute (stale fallback, 503).

    Usage:
        coalescer = RequestCoalescer()
        result = coalescer.run("driver:539129", lambda: client.fetch_driver_profile(539129))
    """

    def __init__(self, wait_timeout: Optional[float] = None):
        """
        Args:
            wait_timeout: Max seconds a subscriber waits; None waits for settlement
        """
        self._in_flight: Dict[str, InFlight] = {}
        self._lock = threading.Lock()
        self._wait_timeout = wait_timeout
        self._coalesced_total = 0

    def run(self, key: str, compute_fn: Callable[[], Any]) -> Any:
        """
        Run compute_fn for key, or subscribe to the compute already running.

        Raises:
            UpstreamUnavailable: A subscriber's wait bound elapsed first
            Exception: compute_fn's error, raised in every caller
        """
        with self._lock:
            flight = self._in_flight.get(key)
            initiator = flight is None
            if initiator:
                flight = self._in_flight[key] = InFlight(key=key)
            else:
                flight.subscribers += 1
                self._coalesced_total += 1

        if initiator:
            self._settle(flight, compute_fn)
        else:
            logger.debug(f"Joined in-flight compute for {key} (subscribers: {flight.subscribers})")

        try:
            return flight.future.result(timeout=None if initiator else self._wait_timeout)
        except FuturesTimeout:
            waited = time.monotonic() - flight.started_at
            logger.error(f"Gave up on in-flight compute for {key} after {waited:.1f}s")
            raise UpstreamUnavailable(
                f"Timed out waiting for in-flight request {key}", retryable=True
            ) from None

    def _settle(self, flight: InFlight, compute_fn: Callable[[], Any]) -> None:
        # Unregistered before settling: a woken caller that retries starts a fresh compute
        try:
            value = compute_fn()
        except BaseException as e:
            logger.warning(f"Compute failed for {flight.key}: {e}")
            self._release(flight)
            flight.future.set_exception(e)
        else:
            self._release(flight)
            flight.future.set_result(value)

    def _release(self, flight: InFlight) -> None:
        with self._lock:
            if self._in_flight.get(flight.key) is flight:
                del self._in_flight[flight.key]

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "coalesced_total": self._coalesced_total,
            }
