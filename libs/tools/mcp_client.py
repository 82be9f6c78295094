from __future__ import annotations

import asyncio
import inspect
import json
import os
import re
import time
from typing import Any, Callable

import structlog
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client

from libs.core.errors import ToolInvocationError
from libs.core.logging import get_logger
from libs.core.run_context import RunContext
from libs.framework.tool_runtime import classify_tool_error

MCP_ROUTES = ("/mcp/rpc/mcp", "/mcp/rpc")

# Phases that end before the tool call is sent to the server.
PRE_CALL_PHASES = ("stream_open", "initialize")


def extract_mcp_error_phase(error_text: str) -> str | None:
    match = re.search(r"(?:^|[;,\s:])phase=([a-zA-Z0-9_]+)", error_text or "")
    if not match:
        return None
    return match.group(1)


def resolve_mcp_timeout_s() -> float:
    for key in ("MCP_TOOL_TIMEOUT_S", "MCP_TIMEOUT_S"):
        env_timeout = os.getenv(key)
        if not env_timeout:
            continue
        try:
            return max(1.0, float(env_timeout))
        except ValueError:
            return 45.0
    return 45.0


def resolve_mcp_max_retries() -> int:
    env_retries = os.getenv("MCP_TOOL_MAX_RETRIES")
    if env_retries:
        try:
            return max(0, int(env_retries))
        except ValueError:
            return 1
    return 1


def resolve_mcp_retry_sleep_s() -> float:
    env_sleep = os.getenv("MCP_TOOL_RETRY_SLEEP_S")
    if env_sleep:
        try:
            return max(0.0, float(env_sleep))
        except ValueError:
            return 0.25
    return 0.25


def streamable_http_client_kwargs(
    client_factory: Callable[..., Any], timeout_s: float
) -> dict[str, Any]:
    """Best-effort timeout kwargs for different MCP SDK versions."""
    connect_timeout = min(10.0, timeout_s)
    try:
        params = inspect.signature(client_factory).parameters
    except (TypeError, ValueError):
        return {}
    candidates: dict[str, Any] = {
        "timeout": timeout_s,
        "request_timeout": timeout_s,
        "read_timeout": timeout_s,
        "connect_timeout": connect_timeout,
        "sse_read_timeout": timeout_s,
    }
    return {name: value for name, value in candidates.items() if name in params}


def is_retryable_mcp_error(message: str) -> bool:
    lower = message.lower()
    return (
        lower.startswith("mcp_sdk_error:")
        or lower.startswith("mcp_sdk_timeout:")
        or "session terminated" in lower
        or "timeout" in lower
    )


def is_pre_call_mcp_error(message: str) -> bool:
    """True when the failure happened before the tool call reached the server."""
    return extract_mcp_error_phase(message) in PRE_CALL_PHASES


class McpToolChannel:
    """Tool channel backed by an MCP server reachable over streamable HTTP.

    Tries the primary route first and the legacy route second. Only failures
    that happened before the tool call was sent are retried or moved to the
    legacy route; once the call may have been delivered it is never sent again.
    """

    def __init__(
        self,
        service_url: str,
        *,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        retry_sleep_s: float | None = None,
        call_sdk: Callable[[str, str, dict[str, Any], float], dict[str, Any]] | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.service_url = service_url.rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else resolve_mcp_timeout_s()
        self.max_retries = max_retries if max_retries is not None else resolve_mcp_max_retries()
        self.retry_sleep_s = retry_sleep_s if retry_sleep_s is not None else resolve_mcp_retry_sleep_s()
        self._call_sdk = call_sdk or call_mcp_tool_sdk
        self._logger = logger or get_logger("pm")

    def call_tool(
        self, name: str, arguments: dict[str, Any], ctx: RunContext | None = None
    ) -> dict[str, Any]:
        ctx = ctx or RunContext()
        started_at = time.monotonic()
        deadline = started_at + ctx.bound_timeout(self.timeout_s)
        errors: list[str] = []
        for mcp_path in MCP_ROUTES:
            mcp_url = f"{self.service_url}{mcp_path}"
            for attempt in range(self.max_retries + 1):
                ctx.check()
                remaining_s = deadline - time.monotonic()
                if remaining_s <= 0.05:
                    self._fail(
                        name, f"mcp_sdk_timeout:mcp_call_timed_out_after_{self.timeout_s:.1f}s", errors
                    )
                try:
                    result = self._call_sdk(mcp_url, name, arguments, remaining_s)
                except Exception as exc:  # noqa: BLE001
                    if isinstance(exc, ToolInvocationError):
                        error_text = exc.detail
                    else:
                        error_detail = "; ".join(flatten_exception_messages(exc))
                        error_text = f"mcp_sdk_error:error_type={exc.__class__.__name__};{error_detail}"
                    if error_text.startswith("mcp_tool_error"):
                        self._fail(name, error_text, errors)
                    pre_call = is_pre_call_mcp_error(error_text)
                    retryable = pre_call and is_retryable_mcp_error(error_text)
                    self._logger.warning(
                        "mcp_attempt_failed",
                        tool_name=name,
                        mcp_url=mcp_url,
                        attempt=attempt + 1,
                        error=error_text,
                        error_code=classify_tool_error(error_text),
                        retryable=retryable,
                    )
                    if not pre_call:
                        self._fail(name, error_text, errors)
                    if retryable and attempt < self.max_retries:
                        sleep_s = min(
                            self.retry_sleep_s * float(attempt + 1),
                            max(0.0, deadline - time.monotonic() - 0.05),
                        )
                        if sleep_s > 0:
                            ctx.wait(sleep_s)
                        continue
                    errors.append(f"{mcp_path}#{attempt + 1}:{error_text}")
                    break
                self._logger.info(
                    "mcp_call_succeeded",
                    tool_name=name,
                    mcp_url=mcp_url,
                    elapsed_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
                )
                return result
        joined = " | ".join(errors) if errors else "no_route_errors_recorded"
        self._fail(name, f"mcp_sdk_all_routes_failed:{joined}", errors)

    def _fail(self, name: str, error_text: str, errors: list[str]) -> None:
        error_code = classify_tool_error(error_text)
        self._logger.error(
            "mcp_call_failed",
            tool_name=name,
            error=error_text,
            error_code=error_code,
            attempt_errors=list(errors),
        )
        raise ToolInvocationError(error_text, error_code)


def call_mcp_tool_sdk(
    mcp_url: str,
    tool_name: str,
    arguments: dict[str, Any],
    timeout_s: float,
) -> dict[str, Any]:
    streamable_kwargs = streamable_http_client_kwargs(streamable_http_client, timeout_s)
    phase = "stream_open"

    async def _run_call() -> Any:
        nonlocal phase
        async with streamable_http_client(mcp_url, **streamable_kwargs) as (
            read_stream,
            write_stream,
            _session_id,
        ):
            async with ClientSession(read_stream, write_stream) as session:
                phase = "initialize"
                await session.initialize()
                phase = "call_tool"
                return await session.call_tool(tool_name, arguments)

    started_at = time.monotonic()
    try:
        result = asyncio.run(asyncio.wait_for(_run_call(), timeout=timeout_s))
    except TimeoutError as exc:
        elapsed_s = time.monotonic() - started_at
        detail = f"phase={phase};mcp_call_timed_out_after_{timeout_s:.1f}s;elapsed_s={elapsed_s:.3f}"
        raise ToolInvocationError(f"mcp_sdk_timeout:{detail}", "runtime.timeout") from exc
    except Exception as exc:  # noqa: BLE001
        detail = "; ".join(flatten_exception_messages(exc))
        error_text = f"mcp_sdk_error:phase={phase};error_type={exc.__class__.__name__};{detail}"
        raise ToolInvocationError(error_text, "runtime.upstream_error") from exc
    return extract_mcp_sdk_result(result)


def flatten_exception_messages(exc: BaseException) -> list[str]:
    messages = [str(exc)]
    nested = getattr(exc, "exceptions", None)
    if isinstance(nested, (list, tuple)):
        for child in nested:
            if isinstance(child, BaseException):
                messages.extend(flatten_exception_messages(child))
    deduped: list[str] = []
    seen: set[str] = set()
    for message in messages:
        normalized = message.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped or [exc.__class__.__name__]


def extract_mcp_sdk_result(result: Any) -> dict[str, Any]:
    if getattr(result, "isError", False):
        error_detail = extract_mcp_error_detail(result)
        if error_detail:
            raise ToolInvocationError(f"mcp_tool_error:{error_detail}", "runtime.tool_reported_error")
        raise ToolInvocationError("mcp_tool_error", "runtime.tool_reported_error")

    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        return normalize_mcp_structured_result(structured)

    content = getattr(result, "content", None)
    if isinstance(content, list):
        for item in content:
            text = getattr(item, "text", None)
            if isinstance(text, str) and text.strip():
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    return parsed

    raise ToolInvocationError("mcp_sdk_result_invalid", "contract.output_invalid")


def normalize_mcp_structured_result(structured: dict[str, Any]) -> dict[str, Any]:
    # FastMCP wraps tool outputs as {"result": <tool_output>}.
    result_value = structured.get("result")
    if isinstance(result_value, dict):
        return result_value
    return structured


def extract_mcp_error_detail(result: Any) -> str:
    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        return json.dumps(structured, ensure_ascii=True)
    content = getattr(result, "content", None)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            text = getattr(item, "text", None)
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
        if parts:
            return " | ".join(parts)
    return ""
