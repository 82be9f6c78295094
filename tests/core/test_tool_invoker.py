from __future__ import annotations

import time

import pytest

from libs.core.errors import Cancelled, ToolInvocationError
from libs.core.models import ReviewArgs, ReviewResult, TraceEventType
from libs.core.run_context import RunContext
from libs.core.run_trace import TraceRecorder
from libs.core.tool_invoker import ToolInvoker

OK_REVIEW = {"summary": "Looks fine", "issues": [], "suggestions": []}


class _FakeChannel:
    def __init__(self, outcome) -> None:
        self._outcome = outcome
        self.calls: list[tuple[str, dict]] = []
        self.contexts: list = []

    def call_tool(self, name, arguments, ctx=None):
        self.calls.append((name, dict(arguments)))
        self.contexts.append(ctx)
        if callable(self._outcome):
            return self._outcome()
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome


class _Fallback:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> ReviewResult:
        self.calls += 1
        return ReviewResult(summary="local")


def _invoke(channel, ctx=None, timeout_s=5.0, fallback=None):
    fallback = fallback or _Fallback()
    trace = TraceRecorder()
    outcome = ToolInvoker(channel, timeout_s=timeout_s).invoke(
        "code_review",
        ReviewArgs(file_name="a.py", data="print(1)"),
        fallback,
        ctx or RunContext(),
        trace,
        ReviewResult,
    )
    return outcome, trace, fallback


def test_success_returns_typed_result_and_sends_wire_arguments() -> None:
    channel = _FakeChannel(OK_REVIEW)
    outcome, trace, fallback = _invoke(channel)
    assert outcome.used_fallback is False
    assert outcome.result.summary == "Looks fine"
    assert outcome.error is None
    assert channel.calls == [("code_review", {"fileName": "a.py", "data": "print(1)"})]
    assert fallback.calls == 0
    assert trace.events[0].type == TraceEventType.reasoning
    assert "calling tool 'code_review'" in trace.events[0].details


def test_run_context_is_passed_to_the_channel() -> None:
    channel = _FakeChannel(OK_REVIEW)
    ctx = RunContext.with_timeout(30)
    _invoke(channel, ctx=ctx)
    assert channel.contexts == [ctx]


def test_json_string_result_is_accepted() -> None:
    outcome, _trace, _fallback = _invoke(_FakeChannel('{"summary": "from text", "issues": []}'))
    assert outcome.result.summary == "from text"


def test_channel_failure_uses_fallback_and_notes_it_in_trace() -> None:
    error = ToolInvocationError("mcp_sdk_all_routes_failed:boom", "runtime.upstream_unavailable")
    outcome, trace, fallback = _invoke(_FakeChannel(error))
    assert outcome.used_fallback is True
    assert outcome.result.summary == "local"
    assert outcome.error == "mcp_sdk_all_routes_failed:boom"
    assert outcome.error_kind == "ToolInvocationError"
    assert fallback.calls == 1
    notes = [event.details for event in trace.events]
    assert any("using local fallback" in note for note in notes)


def test_empty_result_uses_fallback() -> None:
    outcome, _trace, _fallback = _invoke(_FakeChannel({}))
    assert outcome.used_fallback is True
    assert outcome.error.startswith("tool_result_empty")


def test_result_failing_validation_uses_fallback() -> None:
    outcome, _trace, _fallback = _invoke(_FakeChannel({"issues": "not a list"}))
    assert outcome.used_fallback is True
    assert outcome.error.startswith("output schema validation failed")


def test_per_call_timeout_uses_fallback() -> None:
    def _slow():
        time.sleep(0.5)
        return OK_REVIEW

    outcome, _trace, _fallback = _invoke(_FakeChannel(_slow), timeout_s=0.05)
    assert outcome.used_fallback is True
    assert outcome.error_kind == "CallTimeoutError"


def test_cancelled_before_call_never_reaches_channel() -> None:
    ctx = RunContext()
    ctx.cancel()
    channel = _FakeChannel(OK_REVIEW)
    fallback = _Fallback()
    with pytest.raises(Cancelled):
        _invoke(channel, ctx=ctx, fallback=fallback)
    assert channel.calls == []
    assert fallback.calls == 0


def test_cancellation_racing_a_failure_propagates_without_fallback() -> None:
    ctx = RunContext()

    def _cancel_then_fail():
        ctx.cancel()
        raise RuntimeError("connection reset")

    fallback = _Fallback()
    with pytest.raises(Cancelled):
        _invoke(_FakeChannel(_cancel_then_fail), ctx=ctx, fallback=fallback)
    assert fallback.calls == 0


def test_expired_run_deadline_is_reported_as_cancellation() -> None:
    ctx = RunContext(deadline_at=time.monotonic() - 1)
    with pytest.raises(Cancelled) as excinfo:
        _invoke(_FakeChannel(OK_REVIEW), ctx=ctx)
    assert excinfo.value.reason == "deadline"
