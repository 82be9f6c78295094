from __future__ import annotations

import time
from typing import Any, Callable, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from libs.framework.tool_runtime import ToolChannel, classify_tool_error, run_bounded

from .errors import Cancelled, ToolInvocationError
from .logging import get_logger
from .models import ToolOutcome
from .run_context import RunContext
from .run_trace import TraceRecorder

DEFAULT_TOOL_TIMEOUT_S = 60.0

ResultT = TypeVar("ResultT", bound=BaseModel)


class ToolInvoker:
    """Calls one external tool and degrades to a local fallback on any non-cancellation failure.

    ``fallback`` must be pure and local: it never touches the tool channel or the model.
    """

    def __init__(
        self,
        channel: ToolChannel,
        *,
        timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.channel = channel
        self.timeout_s = timeout_s
        self._logger = logger or get_logger("pm")

    def invoke(
        self,
        tool_name: str,
        arguments: BaseModel,
        fallback: Callable[[], ResultT],
        ctx: RunContext,
        trace: TraceRecorder,
        result_model: Type[ResultT],
    ) -> ToolOutcome[ResultT]:
        ctx.check()
        trace.step(f"PM: calling tool '{tool_name}'")
        self._logger.info("tool_call_started", tool_name=tool_name)
        payload = arguments.model_dump(by_alias=True)
        started_at = time.monotonic()
        try:
            raw = run_bounded(
                lambda: self.channel.call_tool(tool_name, payload, ctx),
                self.timeout_s,
                ctx,
                label="tool_call",
            )
            result = _coerce_result(tool_name, raw, result_model)
        except Cancelled:
            self._logger.info("tool_call_cancelled", tool_name=tool_name)
            raise
        except Exception as exc:  # noqa: BLE001
            # A cancellation that raced with the failure still wins.
            ctx.check()
            error_text = str(exc) or exc.__class__.__name__
            error_code = (
                exc.error_code if isinstance(exc, ToolInvocationError) else classify_tool_error(error_text)
            )
            trace.step(
                f"PM: tool '{tool_name}' failed ({exc.__class__.__name__}), using local fallback"
            )
            self._logger.warning(
                "tool_call_failed",
                tool_name=tool_name,
                error=error_text,
                error_code=error_code,
                error_type=exc.__class__.__name__,
                duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
            )
            return ToolOutcome(
                result=fallback(),
                used_fallback=True,
                error=error_text,
                error_kind=exc.__class__.__name__,
            )
        trace.step(f"PM: tool '{tool_name}' returned a result")
        self._logger.info(
            "tool_call_finished",
            tool_name=tool_name,
            duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
        )
        return ToolOutcome(result=result, used_fallback=False)


def _coerce_result(tool_name: str, raw: Any, result_model: Type[ResultT]) -> ResultT:
    if raw is None or (isinstance(raw, (dict, list, str)) and not raw):
        raise ToolInvocationError(f"tool_result_empty:{tool_name}", "contract.output_empty")
    if isinstance(raw, result_model):
        return raw
    try:
        if isinstance(raw, str):
            return result_model.model_validate_json(raw)
        return result_model.model_validate(raw)
    except ValidationError as exc:
        raise ToolInvocationError(
            f"output schema validation failed: {tool_name}: {exc.error_count()} validation errors",
            "contract.output_invalid",
        ) from exc
