from __future__ import annotations

from fastapi import FastAPI, HTTPException

from libs.core import llm_provider, logging as core_logging
from libs.core.errors import PmError
from libs.core.models import ReviewArgs, ReviewResult
from libs.core.response_cache import ResponseCache
from libs.core.settings import PmSettings
from libs.core.structured_client import StructuredLLMClient
from libs.tools.code_review import review_code
from services.reviewer.app.mcp import create_mcp_asgi_app

core_logging.configure_logging("reviewer")
LOGGER = core_logging.get_logger("reviewer")

SETTINGS = PmSettings.from_env()
LLM_PROVIDER_INSTANCE = llm_provider.resolve_provider(
    SETTINGS.llm_provider,
    api_key=SETTINGS.openai_api_key,
    model=SETTINGS.openai_model,
    base_url=SETTINGS.openai_base_url,
    temperature=SETTINGS.openai_temperature,
    max_output_tokens=SETTINGS.openai_max_output_tokens,
    timeout_s=SETTINGS.llm_timeout_s,
)
REVIEW_CLIENT = StructuredLLMClient(
    LLM_PROVIDER_INSTANCE,
    ResponseCache(default_ttl_s=SETTINGS.cache_ttl_s),
    timeout_s=SETTINGS.llm_timeout_s,
    logger=LOGGER,
)

app = FastAPI(title="PM Code Review Service")
app.state.review_client = REVIEW_CLIENT
MCP_APP, MCP_SESSION_MANAGER = create_mcp_asgi_app(REVIEW_CLIENT)
app.mount("/mcp/rpc", MCP_APP)


@app.on_event("startup")
async def _startup_mcp_session_manager() -> None:
    session_cm = MCP_SESSION_MANAGER.run()
    app.state._mcp_session_cm = session_cm
    await session_cm.__aenter__()


@app.on_event("shutdown")
async def _shutdown_mcp_session_manager() -> None:
    session_cm = getattr(app.state, "_mcp_session_cm", None)
    if session_cm is not None:
        await session_cm.__aexit__(None, None, None)


@app.post("/review", response_model=ReviewResult)
def review_endpoint(request: ReviewArgs) -> ReviewResult:
    try:
        return review_code(app.state.review_client, request.file_name, request.data)
    except PmError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
