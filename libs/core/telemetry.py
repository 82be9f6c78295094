from __future__ import annotations

import hashlib
import json
from typing import Any

import structlog
from pydantic import BaseModel

from libs.framework.tool_runtime import sanitize_payload

from .logging import verbose_args_enabled
from .models import DocsArgs, ReviewArgs

MAX_VERBOSE_JSON_CHARS = 20_000


class PmTelemetry:
    """Structured logs describing the arguments sent to each tool."""

    def __init__(self, logger: structlog.BoundLogger) -> None:
        self._logger = logger

    def log_tool_args(self, tool_name: str, arguments: BaseModel) -> None:
        if isinstance(arguments, ReviewArgs):
            self._logger.info(
                "tool_args",
                tool=tool_name,
                file_name=arguments.file_name,
                data_sha256=sha256_hex(arguments.data),
                data_len=len(arguments.data),
            )
        elif isinstance(arguments, DocsArgs):
            self._logger.info(
                "tool_args",
                tool=tool_name,
                component_name=arguments.component_name,
                description_len=len(arguments.description),
            )
        else:
            self._logger.info(
                "tool_args",
                tool=tool_name,
                args_type=f"{type(arguments).__module__}.{type(arguments).__qualname__}",
            )

        if verbose_args_enabled():
            self._log_verbose_args(tool_name, arguments)

    def _log_verbose_args(self, tool_name: str, arguments: BaseModel) -> None:
        try:
            encoded = json.dumps(
                sanitize_payload(arguments.model_dump(by_alias=True, exclude_none=True)),
                ensure_ascii=False,
            )
        except (TypeError, ValueError) as exc:
            self._logger.debug("tool_args_verbose_failed", tool=tool_name, error=str(exc))
            return
        if len(encoded) > MAX_VERBOSE_JSON_CHARS:
            encoded = encoded[:MAX_VERBOSE_JSON_CHARS] + "...(truncated)"
        self._logger.debug("tool_args_verbose", tool=tool_name, args_json=encoded)


def sha256_hex(value: Any) -> str | None:
    if not value:
        return None
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest().upper()
