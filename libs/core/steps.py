from __future__ import annotations

from typing import Any, Dict, List

import structlog

from .errors import Cancelled
from .fallbacks import DEFAULT_MAX_CHARS_PER_FILE, local_docs_fallback, local_review_fallback
from .logging import get_logger
from .models import DocsArgs, DocumentationResult, PmFile, ReviewArgs, ReviewResult, ToolOutcome
from .run_context import RunContext
from .run_trace import TraceRecorder
from .telemetry import PmTelemetry
from .tool_invoker import ToolInvoker

CODE_REVIEW_TOOL = "code_review"
GENERATE_DOCS_TOOL = "generate_docs"

MISSING_DATA_ERROR = "Missing 'data' field (file content)."


class StepExecutor:
    """Runs the review and documentation steps of one orchestration run, in order.

    Every file produces exactly one entry; a failing file degrades its own entry and
    the loop continues. Only cancellation leaves the loop early.
    """

    def __init__(
        self,
        invoker: ToolInvoker,
        *,
        max_chars_per_file: int = DEFAULT_MAX_CHARS_PER_FILE,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.invoker = invoker
        self.max_chars_per_file = max_chars_per_file
        self._logger = logger or get_logger("pm")
        self._telemetry = PmTelemetry(self._logger)

    def review_files(
        self, files: List[PmFile], ctx: RunContext, trace: TraceRecorder
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        total = len(files)
        for index, item in enumerate(files, start=1):
            ctx.check()
            if item.data is None:
                self._logger.warning("file_skipped_missing_data", file_name=item.file_name)
                entries.append({"fileName": item.file_name, "error": MISSING_DATA_ERROR})
                continue

            safe_data = self.prepare_data(item.file_name, item.data)
            truncated = len(safe_data) != len(item.data)
            trace.step(f"PM: code_review for file {index}/{total}: {item.file_name}")
            trace.tool_start(CODE_REVIEW_TOOL, item.file_name)
            try:
                arguments = ReviewArgs(file_name=item.file_name, data=safe_data)
                self._telemetry.log_tool_args(CODE_REVIEW_TOOL, arguments)
                outcome: ToolOutcome[ReviewResult] = self.invoker.invoke(
                    CODE_REVIEW_TOOL,
                    arguments,
                    lambda: self._review_fallback(item.file_name, safe_data, trace),
                    ctx,
                    trace,
                    ReviewResult,
                )
            except Cancelled:
                trace.tool_end(CODE_REVIEW_TOOL, "cancelled")
                raise
            except Exception as exc:  # noqa: BLE001
                trace.tool_end(CODE_REVIEW_TOOL, f"error: {exc}")
                self._logger.warning(
                    "code_review_step_failed",
                    file_name=item.file_name,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                entries.append(
                    {
                        "fileName": item.file_name,
                        "usedFallback": True,
                        "truncated": truncated,
                        "result": _dump(local_review_fallback(item.file_name, safe_data, self.max_chars_per_file)),
                        "error": str(exc),
                        "exception": exc.__class__.__name__,
                    }
                )
                continue

            entries.append(_entry({"fileName": item.file_name, "truncated": truncated}, outcome))
            trace.tool_end(CODE_REVIEW_TOOL, "ok")
        return entries

    def generate_docs(
        self,
        component_name: str,
        description: str,
        ctx: RunContext,
        trace: TraceRecorder,
    ) -> Dict[str, Any]:
        ctx.check()
        trace.step(f"PM: generate_docs for component '{component_name}'")
        trace.tool_start(GENERATE_DOCS_TOOL, component_name)
        try:
            arguments = DocsArgs(component_name=component_name, description=description)
            self._telemetry.log_tool_args(GENERATE_DOCS_TOOL, arguments)
            outcome: ToolOutcome[DocumentationResult] = self.invoker.invoke(
                GENERATE_DOCS_TOOL,
                arguments,
                lambda: self._docs_fallback(component_name, description, trace),
                ctx,
                trace,
                DocumentationResult,
            )
        except Cancelled:
            trace.tool_end(GENERATE_DOCS_TOOL, "cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            trace.tool_end(GENERATE_DOCS_TOOL, f"error: {exc}")
            self._logger.warning(
                "generate_docs_step_failed",
                component_name=component_name,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return {
                "usedFallback": True,
                "result": _dump(local_docs_fallback(component_name, description)),
                "error": str(exc),
                "exception": exc.__class__.__name__,
            }
        trace.tool_end(GENERATE_DOCS_TOOL, "ok")
        return _entry({}, outcome)

    def prepare_data(self, file_name: str, data: str) -> str:
        if len(data) <= self.max_chars_per_file:
            return data
        self._logger.warning(
            "file_truncated",
            file_name=file_name,
            length=len(data),
            max_chars=self.max_chars_per_file,
        )
        return data[: self.max_chars_per_file]

    def _review_fallback(self, file_name: str, data: str, trace: TraceRecorder) -> ReviewResult:
        trace.step("PM: code_review tool unavailable, returning local report (no LLM).")
        return local_review_fallback(file_name, data, self.max_chars_per_file)

    def _docs_fallback(
        self, component_name: str, description: str, trace: TraceRecorder
    ) -> DocumentationResult:
        trace.step("PM: generate_docs tool unavailable, returning local documentation (no LLM).")
        return local_docs_fallback(component_name, description)


def _entry(base: Dict[str, Any], outcome: ToolOutcome[Any]) -> Dict[str, Any]:
    entry = dict(base)
    entry["usedFallback"] = outcome.used_fallback
    entry["result"] = _dump(outcome.result)
    if outcome.error is not None:
        entry["error"] = outcome.error
        entry["exception"] = outcome.error_kind
    return entry


def _dump(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json", by_alias=True)
    return result
