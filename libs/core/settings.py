from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .fallbacks import DEFAULT_MAX_CHARS_PER_FILE
from .response_cache import DEFAULT_TTL_S
from .structured_client import DEFAULT_LLM_TIMEOUT_S
from .tool_invoker import DEFAULT_TOOL_TIMEOUT_S


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _resolve_float(primary: str | None, fallback: str | None, default: float) -> float:
    parsed_primary = _parse_optional_float(primary)
    if parsed_primary is not None:
        return parsed_primary
    parsed_fallback = _parse_optional_float(fallback)
    if parsed_fallback is not None:
        return parsed_fallback
    return default


@dataclass(frozen=True)
class PmSettings:
    llm_provider: str = "mock"
    openai_api_key: str = ""
    openai_model: str = ""
    openai_base_url: str = "https://api.openai.com"
    openai_temperature: Optional[float] = None
    openai_max_output_tokens: Optional[int] = None
    llm_timeout_s: float = DEFAULT_LLM_TIMEOUT_S
    tool_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S
    cache_ttl_s: float = DEFAULT_TTL_S
    max_chars_per_file: int = DEFAULT_MAX_CHARS_PER_FILE
    run_timeout_s: Optional[float] = None
    tools_url: str = ""

    @classmethod
    def from_env(cls) -> "PmSettings":
        return cls(
            llm_provider=os.getenv("LLM_PROVIDER", "mock"),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com"),
            openai_temperature=_parse_optional_float(os.getenv("OPENAI_TEMPERATURE")),
            openai_max_output_tokens=_parse_optional_int(os.getenv("OPENAI_MAX_OUTPUT_TOKENS")),
            llm_timeout_s=_resolve_float(
                os.getenv("PM_LLM_TIMEOUT_S"), os.getenv("OPENAI_TIMEOUT_S"), DEFAULT_LLM_TIMEOUT_S
            ),
            tool_timeout_s=_resolve_float(
                os.getenv("PM_TOOL_TIMEOUT_S"), os.getenv("MCP_TOOL_TIMEOUT_S"), DEFAULT_TOOL_TIMEOUT_S
            ),
            cache_ttl_s=_resolve_float(os.getenv("PM_CACHE_TTL_S"), None, DEFAULT_TTL_S),
            max_chars_per_file=max(
                1, _parse_optional_int(os.getenv("PM_MAX_CHARS_PER_FILE")) or DEFAULT_MAX_CHARS_PER_FILE
            ),
            run_timeout_s=_parse_optional_float(os.getenv("PM_RUN_TIMEOUT_S")),
            tools_url=os.getenv("PM_TOOLS_URL", ""),
        )
