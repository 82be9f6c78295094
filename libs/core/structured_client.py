from __future__ import annotations

import time
from typing import Any, Sequence

import structlog

from libs.framework.tool_runtime import run_bounded

from .errors import Cancelled, LLMProviderError, ProtocolError, TransientProviderError
from .json_extract import extract_json
from .llm_provider import LLMProvider
from .logging import get_logger
from .response_cache import ResponseCache, make_cache_key
from .run_context import RunContext

DEFAULT_LLM_TIMEOUT_S = 25.0
DEFAULT_RETRY_DELAYS_S: tuple[float, ...] = (0.25, 0.8, 2.0)

REPAIR_INSTRUCTION = "Fix output. Return ONLY valid JSON, no extra text.\n\nBAD_OUTPUT:\n"

_RETRYABLE_STATUS_CODES = {429, 503}
_RETRYABLE_MARKERS = ("resource_exhausted", "unavailable")


def is_retryable_provider_error(exc: BaseException) -> bool:
    """Rate-limited or unavailable provider errors; matching rules are provider-specific."""
    if not isinstance(exc, LLMProviderError):
        return False
    if exc.provider_status in _RETRYABLE_STATUS_CODES:
        return True
    lowered = (exc.detail or "").lower()
    return any(marker in lowered for marker in _RETRYABLE_MARKERS)


class StructuredLLMClient:
    """Turns a free-text model into a JSON-returning call.

    At most two logical model calls per request (the original and one repair),
    each retried on transient provider errors. Successful extractions are cached
    by ``(kind, system_prompt, user_prompt)``.
    """

    def __init__(
        self,
        provider: LLMProvider,
        cache: ResponseCache | None = None,
        *,
        timeout_s: float = DEFAULT_LLM_TIMEOUT_S,
        retry_delays_s: Sequence[float] = DEFAULT_RETRY_DELAYS_S,
        cache_ttl_s: float | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.timeout_s = timeout_s
        self.retry_delays_s = tuple(retry_delays_s)
        self.cache_ttl_s = cache_ttl_s
        self._logger = logger or get_logger("pm")

    def ask_structured(
        self,
        kind: str,
        system_prompt: str,
        user_prompt: str,
        ctx: RunContext | None = None,
    ) -> str:
        ctx = ctx or RunContext()
        key = make_cache_key(kind, system_prompt, user_prompt)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None and cached.strip():
                self._logger.info("llm_cache_hit", kind=kind)
                return cached

        text = self._call(kind, system_prompt, user_prompt, ctx)
        extracted = extract_json(text)
        if extracted is None:
            self._logger.warning("llm_invalid_json_repairing", kind=kind, response_chars=len(text))
            repaired = self._call(kind, system_prompt, REPAIR_INSTRUCTION + text, ctx)
            extracted = extract_json(repaired)
            if extracted is None:
                self._logger.error(
                    "llm_invalid_json_after_repair",
                    kind=kind,
                    response_chars=len(text),
                    repaired_chars=len(repaired),
                )
                raise ProtocolError(f"invalid_json:{kind}:model failed to return valid JSON after repair")

        if self.cache is not None:
            self.cache.set(key, extracted, self.cache_ttl_s)
        return extracted

    def _call(self, kind: str, system_prompt: str, user_prompt: str, ctx: RunContext) -> str:
        messages = [{"role": "user", "content": user_prompt}]
        attempts = len(self.retry_delays_s) + 1
        for attempt in range(attempts):
            ctx.check()
            started_at = time.monotonic()
            try:
                response = run_bounded(
                    lambda: self.provider.generate(
                        system_prompt, messages, timeout_s=ctx.bound_timeout(self.timeout_s)
                    ),
                    self.timeout_s,
                    ctx,
                    label="llm_call",
                )
            except Cancelled:
                raise
            except LLMProviderError as exc:
                retryable = is_retryable_provider_error(exc)
                self._logger.warning(
                    "llm_generate_failed",
                    kind=kind,
                    attempt=attempt + 1,
                    attempts_total=attempts,
                    status_code=exc.provider_status,
                    retryable=retryable,
                    duration_ms=_elapsed_ms(started_at),
                    error=exc.detail,
                )
                if not retryable:
                    raise
                if attempt >= attempts - 1:
                    raise TransientProviderError(
                        f"provider_retries_exhausted:{exc.detail}",
                        status_code=exc.provider_status,
                    ) from exc
                ctx.wait(self.retry_delays_s[attempt])
                continue
            self._logger.info(
                "llm_generate_finished",
                kind=kind,
                provider_type=self.provider.__class__.__name__,
                attempt=attempt + 1,
                prompt_chars=len(user_prompt),
                duration_ms=_elapsed_ms(started_at),
            )
            text = _response_text(response)
            return text if text.strip() else "{}"
        # Unreachable: the final attempt either returns or raises.
        raise TransientProviderError("provider_retries_exhausted")


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    return content if isinstance(content, str) else ""


def _elapsed_ms(started_at: float) -> int:
    return int(max(0.0, time.monotonic() - started_at) * 1000)
