from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RequestRateLimiter:
    """Cooperative per-process throttle over a fixed request window.

    Not safe for concurrent use: the counter and window start are plain
    attributes shared by every caller in the process.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._count = 0
        self._window_start = clock()

    @property
    def request_count(self) -> int:
        return self._count

    def acquire(self) -> float:
        """Count one request, sleeping out the window when over quota.

        Returns the number of seconds slept.
        """
        now = self._clock()
        if now - self._window_start > self.window_seconds:
            self._count = 0
            self._window_start = now

        self._count += 1
        if self._count <= self.max_requests:
            return 0.0

        wait_seconds = max(0.0, self.window_seconds - (now - self._window_start))
        logger.info("Halaxy rate limit reached, waiting %.2fs", wait_seconds)
        if wait_seconds:
            self._sleep(wait_seconds)
        self._count = 1
        self._window_start = self._clock()
        return wait_seconds
