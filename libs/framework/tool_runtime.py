from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

from jsonschema import Draft202012Validator

from libs.core.errors import CallTimeoutError, Cancelled, ToolInvocationError
from libs.core.models import ToolSpec
from libs.core.run_context import RunContext

tool_input_type = dict[str, Any]
tool_output_type = dict[str, Any]

T = TypeVar("T")

_POLL_INTERVAL_S = 0.05


class ToolChannel(Protocol):
    def call_tool(
        self, name: str, arguments: tool_input_type, ctx: RunContext | None = None
    ) -> Any: ...


@dataclass
class Tool:
    spec: ToolSpec
    handler: Callable[[tool_input_type, RunContext | None], tool_output_type]


class ToolRegistry:
    """In-process tool channel: schema-checked handlers behind ``call_tool``."""

    def __init__(self, max_output_bytes: int = 200_000) -> None:
        self._tools: dict[str, Tool] = {}
        self.max_output_bytes = max_output_bytes

    def register(self, tool: Tool) -> None:
        self._tools[tool.spec.name] = tool

    def list_specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def get(self, name: str) -> Tool:
        if name not in self._tools:
            raise ToolInvocationError(f"unknown_tool:{name}", "contract.tool_not_found")
        return self._tools[name]

    def call_tool(
        self, name: str, arguments: tool_input_type, ctx: RunContext | None = None
    ) -> tool_output_type:
        tool = self.get(name)
        try:
            validate_schema(tool.spec.input_schema, arguments, "input")
            result = run_bounded(
                lambda: tool.handler(arguments, ctx), tool.spec.timeout_s, ctx, label=name
            )
            validate_schema(tool.spec.output_schema, result, "output")
            result_bytes = json.dumps(result, ensure_ascii=True).encode("utf-8")
        except (ToolInvocationError, Cancelled):
            raise
        except Exception as exc:  # noqa: BLE001
            raw_error = str(exc)
            raise ToolInvocationError(raw_error, classify_tool_error(raw_error)) from exc
        if len(result_bytes) > self.max_output_bytes:
            raise ToolInvocationError("Tool output exceeded max size", "contract.output_invalid")
        return result


def classify_tool_error(error_text: str) -> str:
    normalized = (error_text or "").strip()
    lowered = normalized.lower()
    if lowered.startswith("contract."):
        return lowered.split(":", 1)[0]
    if normalized.startswith("input schema validation failed"):
        return "contract.input_invalid"
    if normalized.startswith("output schema validation failed"):
        return "contract.output_invalid"
    if normalized.startswith("unknown_tool:"):
        return "contract.tool_not_found"
    if normalized.startswith("tool_result_empty"):
        return "contract.output_empty"
    if "validation error" in lowered or "invalid_json" in lowered:
        return "contract.output_invalid"
    if (
        normalized.startswith("mcp_sdk_timeout:")
        or "timed out" in lowered
        or "timeout" in lowered
    ):
        return "runtime.timeout"
    if normalized.startswith("mcp_sdk_all_routes_failed:"):
        return "runtime.upstream_unavailable"
    if normalized.startswith("mcp_sdk_error:"):
        return "runtime.upstream_error"
    if normalized.startswith("mcp_tool_error"):
        return "runtime.tool_reported_error"
    return "runtime.tool_error"


def sanitize_payload(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}

    def sanitize(value: Any) -> Any:
        if isinstance(value, (str, int, float, bool)) or value is None:
            return value
        if isinstance(value, dict):
            cleaned: dict[str, Any] = {}
            for key, item in value.items():
                if isinstance(key, str) and key.startswith("_"):
                    continue
                cleaned_item = sanitize(item)
                if cleaned_item is not skip:
                    cleaned[key] = cleaned_item
            return cleaned
        if isinstance(value, list):
            cleaned_list = []
            for item in value:
                cleaned_item = sanitize(item)
                if cleaned_item is not skip:
                    cleaned_list.append(cleaned_item)
            return cleaned_list
        try:
            json.dumps(value, ensure_ascii=True)
            return value
        except Exception:  # noqa: BLE001
            return str(value)

    skip = object()
    return sanitize(payload) or {}


def run_bounded(
    handler: Callable[[], T],
    timeout_s: float | None,
    ctx: RunContext | None = None,
    *,
    label: str = "call",
) -> T:
    """Run ``handler`` under a timeout composed with the run's deadline and cancellation.

    Raises ``Cancelled`` when the run is cancelled or its deadline passes while
    waiting, and ``CallTimeoutError`` when only the per-call timeout expires.
    """
    if ctx is not None:
        ctx.check()
        timeout_s = ctx.bound_timeout(timeout_s)
    elif not timeout_s or timeout_s <= 0:
        return handler()
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(handler)
    started_at = time.monotonic()
    try:
        while True:
            wait_s = _POLL_INTERVAL_S if ctx is not None else timeout_s
            if timeout_s is not None:
                remaining_s = timeout_s - (time.monotonic() - started_at)
                if remaining_s <= 0:
                    future.cancel()
                    if ctx is not None:
                        ctx.check()
                    raise CallTimeoutError(f"{label}_timed_out:timed out after {timeout_s:.1f}s")
                wait_s = min(wait_s, remaining_s)
            try:
                return future.result(timeout=wait_s)
            except FuturesTimeoutError:
                # The handler itself raised a TimeoutError.
                if future.done():
                    raise
                if ctx is not None and ctx.cancelled:
                    future.cancel()
                    ctx.check()
    finally:
        # Never block caller on hung worker threads.
        executor.shutdown(wait=False, cancel_futures=True)


def validate_schema(schema: dict[str, Any] | None, payload: Any, label: str) -> None:
    if not schema:
        return
    try:
        validator = Draft202012Validator(schema)
    except Exception as exc:  # noqa: BLE001
        raise ToolInvocationError(f"Invalid {label} schema: {exc}", "contract.schema_invalid") from exc
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        messages = "; ".join(
            f"{'/'.join(map(str, err.path)) or '<root>'}: {err.message}" for err in errors[:5]
        )
        raise ToolInvocationError(
            f"{label} schema validation failed: {messages}", f"contract.{label}_invalid"
        )
