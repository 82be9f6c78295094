from __future__ import annotations

import time
from typing import Optional

from fastapi import FastAPI, HTTPException
from prometheus_client import Counter, Histogram, make_asgi_app

from libs.core import llm_provider, logging as core_logging
from libs.core.aggregation import ReportAggregator, classify_aggregation_failure
from libs.core.errors import Cancelled, InvalidRequest, PmError
from libs.core.llm_provider import LLMProvider
from libs.core.models import PmPlan, PmRequest, Report
from libs.core.orchestrator import PmOrchestrator, validate_files
from libs.core.planner import LlmPlanner
from libs.core.response_cache import ResponseCache
from libs.core.run_context import RunContext
from libs.core.settings import PmSettings
from libs.core.steps import StepExecutor
from libs.core.structured_client import StructuredLLMClient
from libs.core.tool_invoker import ToolInvoker
from libs.framework.tool_runtime import ToolChannel, ToolRegistry
from libs.tools.code_review import code_review_tool
from libs.tools.mcp_client import McpToolChannel

core_logging.configure_logging("pm")
LOGGER = core_logging.get_logger("pm")

SETTINGS = PmSettings.from_env()

pm_runs_total = Counter("pm_runs_total", "PM orchestration runs", ["aggregation"])
pm_run_failures_total = Counter("pm_run_failures_total", "PM runs ending without a report", ["reason"])
pm_run_duration_seconds = Histogram("pm_run_duration_seconds", "PM orchestration run duration")


def build_provider(settings: PmSettings) -> LLMProvider:
    return llm_provider.resolve_provider(
        settings.llm_provider,
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        temperature=settings.openai_temperature,
        max_output_tokens=settings.openai_max_output_tokens,
        timeout_s=settings.llm_timeout_s,
    )


def build_tool_channel(settings: PmSettings, client: StructuredLLMClient) -> ToolChannel:
    if settings.tools_url:
        return McpToolChannel(settings.tools_url, timeout_s=settings.tool_timeout_s, logger=LOGGER)
    registry = ToolRegistry()
    registry.register(code_review_tool(client, timeout_s=int(settings.tool_timeout_s)))
    return registry


def build_orchestrator(
    settings: PmSettings,
    *,
    provider: Optional[LLMProvider] = None,
    channel: Optional[ToolChannel] = None,
    cache: Optional[ResponseCache] = None,
) -> tuple[PmOrchestrator, LlmPlanner]:
    cache = cache if cache is not None else ResponseCache(default_ttl_s=settings.cache_ttl_s)
    client = StructuredLLMClient(
        provider if provider is not None else build_provider(settings),
        cache,
        timeout_s=settings.llm_timeout_s,
        logger=LOGGER,
    )
    planner = LlmPlanner(client)
    invoker = ToolInvoker(
        channel if channel is not None else build_tool_channel(settings, client),
        timeout_s=settings.tool_timeout_s,
        logger=LOGGER,
    )
    executor = StepExecutor(invoker, max_chars_per_file=settings.max_chars_per_file, logger=LOGGER)
    return PmOrchestrator(executor, ReportAggregator(planner, LOGGER), LOGGER), planner


ORCHESTRATOR, PLANNER = build_orchestrator(SETTINGS)

app = FastAPI(title="PM Orchestrator Service")
app.state.orchestrator = ORCHESTRATOR
app.state.planner = PLANNER
app.mount("/metrics", make_asgi_app())


def _http_error(error: PmError) -> HTTPException:
    if isinstance(error, Cancelled) and error.reason == "deadline":
        return HTTPException(status_code=504, detail=error.detail)
    return HTTPException(status_code=error.status_code, detail=error.detail)


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@app.post("/pm/orchestrate", response_model=Report)
def orchestrate_endpoint(request: PmRequest) -> Report:
    started_at = time.monotonic()
    ctx = RunContext.with_timeout(SETTINGS.run_timeout_s)
    try:
        report = app.state.orchestrator.orchestrate(request, ctx)
    except InvalidRequest as exc:
        pm_run_failures_total.labels(reason="invalid_request").inc()
        raise _http_error(exc) from exc
    except Cancelled as exc:
        pm_run_failures_total.labels(reason=exc.reason).inc()
        raise _http_error(exc) from exc
    finally:
        pm_run_duration_seconds.observe(max(0.0, time.monotonic() - started_at))
    pm_runs_total.labels(aggregation=str(report.meta.get("aggregation", "unknown"))).inc()
    return report


@app.post("/pm/plan", response_model=PmPlan)
def plan_endpoint(request: PmRequest) -> PmPlan:
    ctx = RunContext.with_timeout(SETTINGS.run_timeout_s)
    try:
        validate_files(request)
        return app.state.planner.create_plan(request, ctx)
    except PmError as exc:
        LOGGER.warning(
            "plan_failed",
            error=exc.detail,
            error_type=exc.__class__.__name__,
            classification=classify_aggregation_failure(exc).value,
        )
        raise _http_error(exc) from exc
