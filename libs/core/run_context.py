from __future__ import annotations

import threading
import time

from .errors import Cancelled


class RunContext:
    """Deadline and cancellation signal passed through every call boundary of one run.

    Cancellation is cooperative: callers invoke ``check()`` at loop boundaries and
    before external calls, and use ``wait()`` instead of ``time.sleep`` so that
    backoff delays end as soon as the run is cancelled.
    """

    def __init__(
        self,
        *,
        deadline_at: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.deadline_at = deadline_at
        self._cancel_event = cancel_event or threading.Event()

    @classmethod
    def with_timeout(cls, timeout_s: float | None) -> "RunContext":
        if timeout_s is None or timeout_s <= 0:
            return cls()
        return cls(deadline_at=time.monotonic() + float(timeout_s))

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline_at is not None and time.monotonic() >= self.deadline_at

    def remaining_s(self) -> float | None:
        if self.deadline_at is None:
            return None
        return self.deadline_at - time.monotonic()

    def check(self) -> None:
        if self._cancel_event.is_set():
            raise Cancelled("run_cancelled", reason="cancelled")
        if self.expired:
            raise Cancelled("run_deadline_exceeded", reason="deadline")

    def bound_timeout(self, timeout_s: float | None) -> float | None:
        """Smaller of the per-call timeout and the time left before the run deadline."""
        remaining = self.remaining_s()
        if remaining is None:
            return timeout_s
        if timeout_s is None or timeout_s <= 0:
            return max(0.0, remaining)
        return max(0.0, min(float(timeout_s), remaining))

    def wait(self, seconds: float) -> None:
        self.check()
        delay = self.bound_timeout(seconds) or 0.0
        if delay > 0:
            self._cancel_event.wait(delay)
        self.check()
