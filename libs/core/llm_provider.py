from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import CallTimeoutError, LLMProviderError, LLMTransportError

Message = Dict[str, str]


@dataclass
class LLMResponse:
    content: str


class LLMProvider:
    def generate(
        self,
        system_prompt: str,
        messages: List[Message],
        *,
        timeout_s: Optional[float] = None,
    ) -> LLMResponse:  # pragma: no cover - interface
        raise NotImplementedError


class MockLLMProvider(LLMProvider):
    def generate(
        self,
        system_prompt: str,
        messages: List[Message],
        *,
        timeout_s: Optional[float] = None,
    ) -> LLMResponse:
        return LLMResponse(content="Mock response")


class OpenAIProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com",
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_s = timeout_s

    def generate(
        self,
        system_prompt: str,
        messages: List[Message],
        *,
        timeout_s: Optional[float] = None,
    ) -> LLMResponse:
        payload: Dict[str, Any] = {
            "model": self.model,
            "instructions": system_prompt,
            "input": [
                {"role": message.get("role", "user"), "content": message.get("content", "")}
                for message in messages
            ],
        }
        if self.temperature is not None and _model_supports_temperature(self.model):
            payload["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            payload["max_output_tokens"] = self.max_output_tokens
        effective_timeout = timeout_s if timeout_s is not None else self.timeout_s
        retried_without_temperature = False
        while True:
            request = Request(
                f"{self.base_url}/v1/responses",
                data=json.dumps(payload).encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                method="POST",
            )
            try:
                with urlopen(request, timeout=effective_timeout) as response:
                    body = response.read().decode("utf-8")
                data = json.loads(body)
                return LLMResponse(content=_extract_output_text(data))
            except HTTPError as exc:
                detail = exc.read().decode("utf-8") if exc.fp else str(exc)
                if (
                    "temperature" in payload
                    and not retried_without_temperature
                    and _is_unsupported_temperature_error(detail)
                ):
                    payload.pop("temperature", None)
                    retried_without_temperature = True
                    continue
                raise LLMProviderError(f"OpenAI API error: {detail}", status_code=exc.code) from exc
            except (TimeoutError, socket.timeout) as exc:
                raise CallTimeoutError(
                    f"OpenAI API request timed out after {effective_timeout}s"
                ) from exc
            except URLError as exc:
                if isinstance(exc.reason, (TimeoutError, socket.timeout)):
                    raise CallTimeoutError(
                        f"OpenAI API request timed out after {effective_timeout}s"
                    ) from exc
                raise LLMTransportError(f"OpenAI API connection error: {exc}") from exc


def resolve_provider(
    provider_name: str,
    *,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    timeout_s: Optional[float] = None,
) -> LLMProvider:
    name = (provider_name or "mock").lower()
    if name == "openai":
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        if not model:
            raise ValueError("OPENAI_MODEL is required when LLM_PROVIDER=openai")
        return OpenAIProvider(
            api_key=api_key,
            model=model,
            base_url=base_url or "https://api.openai.com",
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            timeout_s=timeout_s or 30.0,
        )
    return MockLLMProvider()


def _extract_output_text(response: Dict[str, Any]) -> str:
    parts: list[str] = []
    for item in response.get("output", []):
        if item.get("type") != "message":
            continue
        for content in item.get("content", []):
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
    return "".join(parts).strip()


def _model_supports_temperature(model: str) -> bool:
    normalized = (model or "").strip().lower()
    # GPT-5 responses currently reject temperature.
    return not normalized.startswith("gpt-5")


def _is_unsupported_temperature_error(detail: str) -> bool:
    lowered = (detail or "").lower()
    return "unsupported parameter" in lowered and "temperature" in lowered
