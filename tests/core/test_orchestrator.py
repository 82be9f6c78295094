from __future__ import annotations

import json
import time

import pytest

from libs.core.aggregation import FALLBACK_SUMMARY, ReportAggregator
from libs.core.errors import Cancelled, InvalidRequest, LLMProviderError, ToolInvocationError
from libs.core.llm_provider import LLMResponse
from libs.core.models import PmRequest, TraceEventType
from libs.core.orchestrator import (
    AUTO_DESCRIPTION_HEADER,
    NO_DESCRIPTION,
    PmOrchestrator,
    guess_component_name,
    resolve_component_description,
)
from libs.core.planner import LlmPlanner
from libs.core.response_cache import ResponseCache
from libs.core.run_context import RunContext
from libs.core.steps import MISSING_DATA_ERROR, StepExecutor
from libs.core.structured_client import StructuredLLMClient
from libs.core.tool_invoker import ToolInvoker

OK_REVIEW = {"summary": "Looks fine", "issues": [], "suggestions": []}
OK_DOCS = {
    "markdown": "# Doc",
    "umlPlantUml": "@startuml\n@enduml",
    "structuredJson": {"componentName": "Foo", "description": "d"},
}
LLM_REPORT = {
    "meta": {},
    "toolResults": {},
    "risks": [{"title": "No tests"}],
    "nextActions": ["Add unit tests"],
    "summary": "All good",
    "trace": [],
}


class _FakeChannel:
    def __init__(self, handler=None) -> None:
        self._handler = handler
        self.calls: list[tuple[str, dict]] = []

    def call_tool(self, name, arguments, ctx=None):
        self.calls.append((name, dict(arguments)))
        if self._handler is not None:
            return self._handler(name, arguments)
        return OK_REVIEW if name == "code_review" else OK_DOCS


class _FailingChannel(_FakeChannel):
    def call_tool(self, name, arguments, ctx=None):
        self.calls.append((name, dict(arguments)))
        raise ToolInvocationError("mcp_sdk_all_routes_failed:down", "runtime.upstream_unavailable")


class _FakeProvider:
    def __init__(self, outcome) -> None:
        self._outcome = outcome
        self.calls = 0

    def generate(self, system_prompt, messages, *, timeout_s=None):
        self.calls += 1
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return LLMResponse(content=self._outcome)


class _SlowProvider(_FakeProvider):
    def __init__(self, outcome, delay_s: float) -> None:
        super().__init__(outcome)
        self.delay_s = delay_s

    def generate(self, system_prompt, messages, *, timeout_s=None):
        time.sleep(self.delay_s)
        return super().generate(system_prompt, messages, timeout_s=timeout_s)


def _orchestrator(channel, provider, max_chars_per_file: int = 30_000) -> PmOrchestrator:
    client = StructuredLLMClient(provider, ResponseCache(), retry_delays_s=(0.0, 0.0, 0.0))
    executor = StepExecutor(ToolInvoker(channel, timeout_s=5.0), max_chars_per_file=max_chars_per_file)
    return PmOrchestrator(executor, ReportAggregator(LlmPlanner(client)))


def _request(*files, **kwargs) -> PmRequest:
    return PmRequest(files=list(files), **kwargs)


def test_failing_tool_on_empty_file_yields_fallback_warning() -> None:
    channel = _FailingChannel()
    report = _orchestrator(channel, _FakeProvider(json.dumps(LLM_REPORT))).orchestrate(
        _request({"fileName": "Foo.cs", "data": ""})
    )
    entries = report.tool_results["code_review"]
    assert len(entries) == 1
    assert entries[0]["usedFallback"] is True
    assert entries[0]["exception"] == "ToolInvocationError"
    issues = entries[0]["result"]["issues"]
    assert {"severity": "warning", "title": "Empty file content"}.items() <= issues[0].items()


def test_oversized_content_is_truncated_before_sending() -> None:
    channel = _FakeChannel()
    report = _orchestrator(channel, _FakeProvider(json.dumps(LLM_REPORT)), max_chars_per_file=10).orchestrate(
        _request({"fileName": "big.py", "data": "x" * 25})
    )
    entry = report.tool_results["code_review"][0]
    assert entry["truncated"] is True
    assert entry["usedFallback"] is False
    review_calls = [args for name, args in channel.calls if name == "code_review"]
    assert len(review_calls[0]["data"]) == 10


def test_rate_limited_aggregation_keeps_real_results() -> None:
    provider = _FakeProvider(LLMProviderError("Too Many Requests", status_code=429))
    report = _orchestrator(_FakeChannel(), provider).orchestrate(
        _request({"fileName": "a.py", "data": "print(1)"})
    )
    assert report.meta["aggregation"] == "fallback_quota"
    assert report.summary == FALLBACK_SUMMARY
    assert report.tool_results["code_review"]
    assert report.tool_results["generate_docs"]["usedFallback"] is False
    assert report.trace
    assert report.risks == []
    assert report.next_actions == []
    assert provider.calls == 4


def test_blank_names_fail_before_any_external_call() -> None:
    channel = _FakeChannel()
    provider = _FakeProvider(json.dumps(LLM_REPORT))
    with pytest.raises(InvalidRequest):
        _orchestrator(channel, provider).orchestrate(
            _request({"fileName": "  ", "data": "x"}, {"fileName": "", "data": "y"})
        )
    assert channel.calls == []
    assert provider.calls == 0


@pytest.mark.parametrize("files", [None, []])
def test_missing_files_are_rejected(files) -> None:
    with pytest.raises(InvalidRequest):
        _orchestrator(_FakeChannel(), _FakeProvider("{}")).orchestrate(PmRequest(files=files))


def test_every_external_call_failing_still_yields_full_report() -> None:
    report = _orchestrator(_FailingChannel(), _FakeProvider(ValueError("model exploded"))).orchestrate(
        _request({"fileName": "a.py", "data": "x"}, {"fileName": "b.py", "data": "y"})
    )
    assert [entry["fileName"] for entry in report.tool_results["code_review"]] == ["a.py", "b.py"]
    assert all(entry["usedFallback"] for entry in report.tool_results["code_review"])
    docs = report.tool_results["generate_docs"]
    assert docs["usedFallback"] is True
    assert docs["result"]["markdown"].startswith("# a\n")
    assert report.meta["aggregation"] == "fallback_generic"
    assert report.meta["filesCount"] == 2


def test_one_failing_file_does_not_stop_the_others() -> None:
    def _handler(name, arguments):
        if name == "code_review" and arguments["fileName"] == "b.py":
            raise RuntimeError("reviewer crashed")
        return OK_REVIEW if name == "code_review" else OK_DOCS

    report = _orchestrator(_FakeChannel(_handler), _FakeProvider(json.dumps(LLM_REPORT))).orchestrate(
        _request(
            {"fileName": "a.py", "data": "1"},
            {"fileName": "b.py", "data": "2"},
            {"fileName": "c.py", "data": "3"},
        )
    )
    entries = report.tool_results["code_review"]
    assert [entry["usedFallback"] for entry in entries] == [False, True, False]
    assert entries[1]["error"] == "reviewer crashed"


def test_cancellation_mid_loop_stops_the_run() -> None:
    ctx = RunContext()

    def _handler(name, arguments):
        if arguments.get("fileName") == "b.py":
            ctx.cancel()
            raise RuntimeError("interrupted")
        return OK_REVIEW

    channel = _FakeChannel(_handler)
    provider = _FakeProvider(json.dumps(LLM_REPORT))
    with pytest.raises(Cancelled):
        _orchestrator(channel, provider).orchestrate(
            _request(
                {"fileName": "a.py", "data": "1"},
                {"fileName": "b.py", "data": "2"},
                {"fileName": "c.py", "data": "3"},
            ),
            ctx,
        )
    assert [args["fileName"] for _name, args in channel.calls] == ["a.py", "b.py"]
    assert provider.calls == 0


def test_expired_deadline_before_the_steps_propagates_as_cancellation() -> None:
    with pytest.raises(Cancelled) as excinfo:
        _orchestrator(_FakeChannel(), _FakeProvider("{}")).orchestrate(
            _request({"fileName": "a.py", "data": "1"}),
            RunContext(deadline_at=time.monotonic() - 1),
        )
    assert excinfo.value.reason == "deadline"


def test_deadline_during_aggregation_yields_timeout_fallback() -> None:
    provider = _SlowProvider(json.dumps(LLM_REPORT), delay_s=1.0)
    started_at = time.monotonic()
    report = _orchestrator(_FakeChannel(), provider).orchestrate(
        _request({"fileName": "a.py", "data": "1"}),
        RunContext.with_timeout(0.4),
    )
    assert time.monotonic() - started_at < 1.0
    assert report.meta["aggregation"] == "fallback_timeout"
    assert report.summary == FALLBACK_SUMMARY
    assert report.tool_results["code_review"][0]["usedFallback"] is False
    assert report.tool_results["generate_docs"]["usedFallback"] is False


def test_missing_content_is_recorded_and_blank_names_are_dropped() -> None:
    channel = _FakeChannel()
    report = _orchestrator(channel, _FakeProvider(json.dumps(LLM_REPORT))).orchestrate(
        _request({"fileName": "a.py"}, {"fileName": " ", "data": "x"}, {"fileName": "b.py", "data": "ok"})
    )
    entries = report.tool_results["code_review"]
    assert entries[0] == {"fileName": "a.py", "error": MISSING_DATA_ERROR}
    assert entries[1]["fileName"] == "b.py"
    assert len(entries) == 2
    assert report.meta["filesCount"] == 2
    assert [args["fileName"] for name, args in channel.calls if name == "code_review"] == ["b.py"]


def test_llm_aggregation_report() -> None:
    provider = _FakeProvider("Here is the report:\n" + json.dumps(LLM_REPORT))
    channel = _FakeChannel()
    report = _orchestrator(channel, provider).orchestrate(
        _request({"fileName": "src/Foo.cs", "data": "class Foo {}"})
    )
    assert report.meta["aggregation"] == "llm"
    assert report.meta["componentName"] == "Foo"
    assert report.meta["filesCount"] == 1
    assert report.summary == "All good"
    assert report.next_actions == ["Add unit tests"]
    assert set(report.tool_results) == {"code_review", "generate_docs"}
    docs_args = [args for name, args in channel.calls if name == "generate_docs"][0]
    assert docs_args["componentName"] == "Foo"
    assert provider.calls == 1


def test_trace_is_ordered_and_brackets_each_tool_call() -> None:
    report = _orchestrator(_FakeChannel(), _FakeProvider(json.dumps(LLM_REPORT))).orchestrate(
        _request({"fileName": "a.py", "data": "1"}, {"fileName": "b.py", "data": "2"}),
    )
    tool_events = [
        (event.type, event.tool)
        for event in report.trace
        if event.type != TraceEventType.reasoning
    ]
    assert tool_events == [
        (TraceEventType.tool_call_start, "code_review"),
        (TraceEventType.tool_call_end, "code_review"),
        (TraceEventType.tool_call_start, "code_review"),
        (TraceEventType.tool_call_end, "code_review"),
        (TraceEventType.tool_call_start, "generate_docs"),
        (TraceEventType.tool_call_end, "generate_docs"),
    ]
    timestamps = [event.ts for event in report.trace]
    assert timestamps == sorted(timestamps)


def test_explicit_component_name_and_description_are_used() -> None:
    channel = _FakeChannel()
    report = _orchestrator(channel, _FakeProvider(json.dumps(LLM_REPORT))).orchestrate(
        _request(
            {"fileName": "a.py", "data": "1"},
            componentName=" Billing ",
            componentDescription="Handles invoices.",
        )
    )
    assert report.meta["componentName"] == "Billing"
    docs_args = [args for name, args in channel.calls if name == "generate_docs"][0]
    assert docs_args == {"componentName": "Billing", "description": "Handles invoices."}


@pytest.mark.parametrize(
    ("file_name", "expected"),
    [
        ("Foo.cs", "Foo"),
        ("src/app/service.py", "service"),
        ("C:\\repo\\Billing.Service.cs", "Billing.Service"),
        ("dir/", "Component"),
        ("   ", "Component"),
    ],
)
def test_guess_component_name(file_name: str, expected: str) -> None:
    assert guess_component_name(file_name) == expected


def test_description_is_synthesized_from_file_contents() -> None:
    request = _request(
        {"fileName": "a.py", "data": "A" * 1000},
        {"fileName": "b.py", "data": "   "},
        {"fileName": "c.py", "data": "C" * 1000},
        {"fileName": "d.py", "data": "D" * 1000},
    )
    description = resolve_component_description(request)
    assert description.startswith(AUTO_DESCRIPTION_HEADER)
    assert "File: a.py" in description
    assert "File: b.py" not in description
    assert "File: c.py" in description
    assert "File: d.py" not in description
    assert "A" * 300 + "..." in description


def test_description_without_files() -> None:
    assert resolve_component_description(PmRequest()) == NO_DESCRIPTION


def test_empty_model_reply_yields_explicit_fallback_summary() -> None:
    report = _orchestrator(_FakeChannel(), _FakeProvider("")).orchestrate(
        _request({"fileName": "a.py", "data": "1"})
    )
    assert report.meta["aggregation"] == "fallback_generic"
    assert report.summary == FALLBACK_SUMMARY
