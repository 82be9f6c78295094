from __future__ import annotations

import threading
import time

import pytest

from libs.core.errors import Cancelled
from libs.core.run_context import RunContext


def test_context_without_deadline_never_expires() -> None:
    ctx = RunContext.with_timeout(None)
    assert ctx.remaining_s() is None
    assert ctx.bound_timeout(25.0) == 25.0
    ctx.check()


def test_bound_timeout_is_capped_by_remaining_time() -> None:
    ctx = RunContext.with_timeout(2.0)
    assert ctx.bound_timeout(25.0) <= 2.0
    assert ctx.bound_timeout(0.5) == 0.5
    assert 0 < ctx.bound_timeout(None) <= 2.0


def test_check_distinguishes_cancellation_from_deadline() -> None:
    cancelled = RunContext()
    cancelled.cancel()
    with pytest.raises(Cancelled) as excinfo:
        cancelled.check()
    assert excinfo.value.reason == "cancelled"

    expired = RunContext(deadline_at=time.monotonic() - 0.1)
    assert expired.expired
    with pytest.raises(Cancelled) as excinfo:
        expired.check()
    assert excinfo.value.reason == "deadline"


def test_wait_returns_early_on_cancel() -> None:
    event = threading.Event()
    ctx = RunContext(cancel_event=event)
    threading.Timer(0.05, event.set).start()
    started_at = time.monotonic()
    with pytest.raises(Cancelled):
        ctx.wait(5.0)
    assert time.monotonic() - started_at < 2.0


def test_wait_zero_is_a_check() -> None:
    ctx = RunContext()
    ctx.wait(0)
    ctx.cancel()
    with pytest.raises(Cancelled):
        ctx.wait(0)
