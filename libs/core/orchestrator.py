from __future__ import annotations

import os
from typing import Any, Dict, List

import structlog

from .aggregation import ReportAggregator
from .errors import Cancelled, InvalidRequest
from .logging import get_logger
from .models import PmFile, PmRequest, Report, RunState
from .run_context import RunContext
from .run_trace import TraceRecorder
from .state_machine import RunStateTracker
from .steps import CODE_REVIEW_TOOL, GENERATE_DOCS_TOOL, StepExecutor

DEFAULT_COMPONENT_NAME = "Component"
NO_DESCRIPTION = "No component description provided"
AUTO_DESCRIPTION_HEADER = "Component description generated automatically from the input files"
DESCRIPTION_MAX_CHARS = 800
DESCRIPTION_CHUNK_CHARS = 300


class PmOrchestrator:
    """Runs one PM job end to end: validate, review files, generate docs, aggregate.

    Always returns a complete ``Report``; only ``InvalidRequest`` and ``Cancelled``
    escape as failures.
    """

    def __init__(
        self,
        executor: StepExecutor,
        aggregator: ReportAggregator,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.executor = executor
        self.aggregator = aggregator
        self._logger = logger or get_logger("pm")

    def orchestrate(self, request: PmRequest, ctx: RunContext | None = None) -> Report:
        ctx = ctx or RunContext()
        states = RunStateTracker()
        files = validate_files(request)
        component_name = resolve_component_name(request, files)
        description = resolve_component_description(request)

        trace = TraceRecorder(self._logger)
        tool_results: Dict[str, Any] = {}
        trace.step(f"PM: start. Files to review: {len(files)}")
        try:
            states.advance(RunState.reviewing_files)
            tool_results[CODE_REVIEW_TOOL] = self.executor.review_files(files, ctx, trace)

            states.advance(RunState.generating_docs)
            tool_results[GENERATE_DOCS_TOOL] = self.executor.generate_docs(
                component_name, description, ctx, trace
            )

            states.advance(RunState.aggregating)
            trace.step("PM: requesting final report aggregation from the LLM")
            report = self.aggregator.aggregate(
                request,
                tool_results,
                trace.events,
                ctx,
                files_count=len(files),
                component_name=component_name,
            )
        except Cancelled as exc:
            self._logger.info(
                "pm_run_cancelled", state=states.state.value, reason=exc.reason, trace_events=len(trace)
            )
            raise
        states.advance(RunState.done)
        self._logger.info(
            "pm_run_finished",
            files_count=len(files),
            component_name=component_name,
            aggregation=report.meta.get("aggregation"),
            trace_events=len(report.trace),
        )
        return report


def validate_files(request: PmRequest) -> List[PmFile]:
    if not request.files:
        raise InvalidRequest("Invalid request: 'files' is missing or empty.")
    files = [item for item in request.files if item.file_name and item.file_name.strip()]
    if not files:
        raise InvalidRequest("Invalid request: every item in 'files' has a blank 'fileName'.")
    return files


def resolve_component_name(request: PmRequest, files: List[PmFile]) -> str:
    if request.component_name and request.component_name.strip():
        return request.component_name.strip()
    return guess_component_name(files[0].file_name)


def guess_component_name(file_name: str) -> str:
    base = os.path.basename(file_name.replace("\\", "/"))
    stem, _ext = os.path.splitext(base)
    stem = stem.strip()
    return stem or DEFAULT_COMPONENT_NAME


def resolve_component_description(request: PmRequest) -> str:
    if request.component_description and request.component_description.strip():
        return request.component_description.strip()
    if not request.files:
        return NO_DESCRIPTION

    lines = [AUTO_DESCRIPTION_HEADER]
    used = 0
    for item in request.files:
        if not item.data or not item.data.strip():
            continue
        chunk = item.data.strip()
        if len(chunk) > DESCRIPTION_CHUNK_CHARS:
            chunk = chunk[:DESCRIPTION_CHUNK_CHARS] + "..."
        if used + len(chunk) > DESCRIPTION_MAX_CHARS:
            break
        lines.append("")
        lines.append(f"File: {item.file_name}")
        lines.append(chunk)
        used += len(chunk)
    return "\n".join(lines) + "\n"
