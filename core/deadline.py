"""
core/deadline.py -- Per-request deadline carried through mediated calls.

The transport layer builds one Deadline per request. The mediator checks it
before resolving the session, before invoking a handler, and before each
target of a bulk operation. Nothing is interrupted mid-write: a write that has
started runs to commit inside its own transaction, and the next check point
is where the request stops.

The clock is injectable so tests can expire a deadline deterministically.
"""

from __future__ import annotations

import time
from typing import Callable

from core.errors import DeadlineExceeded


class Deadline:
    """A point on a monotonic clock after which the request stops doing work."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.expires_at = clock() + seconds

    @classmethod
    def never(cls) -> "Deadline":
        return cls(float("inf"))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self) -> None:
        """Raise DeadlineExceeded if the deadline has passed."""
        if self.expired():
            raise DeadlineExceeded()
