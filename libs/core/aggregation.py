from __future__ import annotations

from typing import Any, Sequence

import structlog

from .errors import Cancelled, LLMProviderError, LLMTransportError
from .logging import get_logger
from .models import AggregationTag, PmRequest, Report, TraceEvent, utcnow
from .planner import LlmPlanner
from .run_context import RunContext

FALLBACK_SUMMARY = "Fallback PM report: LLM aggregation is unavailable."


def classify_aggregation_failure(exc: BaseException) -> AggregationTag:
    """Map an aggregation failure to the diagnostic tag reported in ``meta.aggregation``.

    Wrapped errors are classified by the first recognizable link in their cause chain.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        tag = _classify_one(current)
        if tag is not None:
            return tag
        current = current.__cause__ or current.__context__
    return AggregationTag.fallback_generic


def _classify_one(exc: BaseException) -> AggregationTag | None:
    if isinstance(exc, LLMProviderError):
        lowered = (exc.detail or "").lower()
        if exc.provider_status == 429 or "resource_exhausted" in lowered:
            return AggregationTag.fallback_quota
        if exc.provider_status == 503 or "unavailable" in lowered or "overloaded" in lowered:
            return AggregationTag.fallback_overloaded
        return AggregationTag.fallback_api
    if isinstance(exc, (LLMTransportError, ConnectionError)):
        return AggregationTag.fallback_network
    if isinstance(exc, TimeoutError):
        return AggregationTag.fallback_timeout
    if isinstance(exc, Cancelled) and exc.reason == "deadline":
        return AggregationTag.fallback_timeout
    return None


class ReportAggregator:
    """Builds the final report; never returns a partially filled one."""

    def __init__(self, planner: LlmPlanner, logger: structlog.BoundLogger | None = None) -> None:
        self.planner = planner
        self._logger = logger or get_logger("pm")

    def aggregate(
        self,
        request: PmRequest,
        tool_results: dict[str, Any],
        trace: Sequence[TraceEvent],
        ctx: RunContext,
        *,
        files_count: int,
        component_name: str,
    ) -> Report:
        try:
            report = self.planner.aggregate(request, tool_results, trace, ctx)
        except Exception as exc:  # noqa: BLE001
            # Only a caller-driven cancellation propagates; a run deadline falls back.
            if isinstance(exc, Cancelled) and exc.reason != "deadline":
                raise
            if ctx.cancelled:
                raise Cancelled("run_cancelled", reason="cancelled") from exc
            tag = classify_aggregation_failure(exc)
            self._logger.warning(
                "aggregation_failed",
                aggregation=tag.value,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return build_fallback_report(
                tool_results,
                trace,
                files_count=files_count,
                component_name=component_name,
                tag=tag,
                error=exc,
            )
        meta = dict(report.meta)
        meta.update(
            {
                "timestamp": utcnow().isoformat(),
                "filesCount": files_count,
                "componentName": component_name,
                "aggregation": AggregationTag.llm.value,
            }
        )
        return report.model_copy(
            update={"meta": meta, "tool_results": dict(tool_results), "trace": list(trace)}
        )


def build_fallback_report(
    tool_results: dict[str, Any],
    trace: Sequence[TraceEvent],
    *,
    files_count: int,
    component_name: str,
    tag: AggregationTag,
    error: BaseException,
) -> Report:
    return Report(
        meta={
            "timestamp": utcnow().isoformat(),
            "filesCount": files_count,
            "componentName": component_name,
            "aggregation": tag.value,
            "llm_error": error.__class__.__name__,
            "llm_error_message": str(error),
        },
        tool_results=dict(tool_results),
        risks=[],
        next_actions=[],
        summary=FALLBACK_SUMMARY,
        trace=list(trace),
    )
