"""Per-credential request throttling for the Close.io API.

Requests are issued from worker threads, so the limiter blocks the calling
thread rather than the event loop.
"""
import logging
import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class Throttle:
    """Sliding window limiter: at most `rate` acquisitions per `per_seconds`."""

    def __init__(
        self,
        rate: int,
        per_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate < 1 or per_seconds <= 0:
            raise ValueError("rate must be >= 1 and per_seconds > 0")
        self.rate = rate
        self.per_seconds = per_seconds
        self._clock = clock
        self._sleep = sleep
        self._sent: Deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until a request slot is free, then claim it."""
        while True:
            with self._lock:
                now = self._clock()
                while self._sent and now - self._sent[0] >= self.per_seconds:
                    self._sent.popleft()
                if len(self._sent) < self.rate:
                    self._sent.append(now)
                    return
                wait = self.per_seconds - (now - self._sent[0])
            logger.debug("Throttle full (%d/%ss), waiting %.3fs", self.rate, self.per_seconds, wait)
            self._sleep(wait)


class ThrottleRegistry:
    """Hands out one shared Throttle per API key.

    Defaults come from THROTTLE_RATE (requests) and THROTTLE_RATE_PER
    (milliseconds), 40 requests per 1000 ms when unset.
    """

    def __init__(self, rate: Optional[int] = None, per_ms: Optional[int] = None):
        self.rate = rate or int(os.environ.get("THROTTLE_RATE", "40"))
        self.per_ms = per_ms or int(os.environ.get("THROTTLE_RATE_PER", "1000"))
        self._throttles: Dict[str, Throttle] = {}
        self._lock = threading.Lock()

    def for_key(self, api_key: str) -> Throttle:
        with self._lock:
            if api_key not in self._throttles:
                self._throttles[api_key] = Throttle(self.rate, self.per_ms / 1000.0)
            return self._throttles[api_key]
