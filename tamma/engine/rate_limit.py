"""Sliding-window rate limiter for escalation notifications."""

import time
from collections import deque
from collections.abc import Callable

import structlog

log = structlog.get_logger(__name__)


class NotificationRateLimiter:
    """Allow at most ``limit`` notifications per ``window`` seconds per reason type.

    Alerts over the limit are kept in a per-reason digest that the next
    permitted notification of the same reason type carries along.
    """

    def __init__(
        self,
        limit: int = 5,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._sent: dict[str, deque[float]] = {}
        self._digest: dict[str, list[str]] = {}

    def _prune(self, reason_type: str, now: float) -> deque[float]:
        sent = self._sent.setdefault(reason_type, deque())
        while sent and now - sent[0] >= self.window:
            sent.popleft()
        return sent

    def try_acquire(self, reason_type: str) -> bool:
        """Take a slot for ``reason_type`` if one is free."""
        now = self._clock()
        sent = self._prune(reason_type, now)
        if len(sent) >= self.limit:
            return False
        sent.append(now)
        return True

    def suppress(self, reason_type: str, line: str) -> int:
        """Add a suppressed alert to the digest and return the digest size."""
        digest = self._digest.setdefault(reason_type, [])
        digest.append(line)
        log.info("notification_suppressed", reason_type=reason_type, pending_digest=len(digest))
        return len(digest)

    def take_digest(self, reason_type: str) -> list[str]:
        """Remove and return the suppressed alerts for ``reason_type``."""
        return self._digest.pop(reason_type, [])

    def pending_digest(self, reason_type: str) -> int:
        return len(self._digest.get(reason_type, []))
