from __future__ import annotations

from typing import Any, Dict

from pydantic import ValidationError

from libs.core import prompts
from libs.core.errors import ProtocolError
from libs.core.logging import get_logger
from libs.core.models import ReviewArgs, ReviewResult, ToolSpec
from libs.core.run_context import RunContext
from libs.core.structured_client import StructuredLLMClient
from libs.framework.tool_runtime import Tool

LOGGER = get_logger("reviewer")

CODE_REVIEW_INPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "fileName": {"type": "string", "minLength": 1},
        "data": {"type": "string"},
    },
    "required": ["fileName", "data"],
    "additionalProperties": False,
}

CODE_REVIEW_OUTPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string", "minLength": 1},
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "severity": {"type": "string", "enum": ["info", "warning", "error"]},
                    "title": {"type": "string"},
                    "details": {"type": "string"},
                },
                "required": ["severity", "title", "details"],
            },
        },
        "suggestions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["summary", "issues", "suggestions"],
}


def review_code(
    client: StructuredLLMClient,
    file_name: str,
    data: str,
    ctx: RunContext | None = None,
) -> ReviewResult:
    LOGGER.info("code_review_started", file_name=file_name, data_len=len(data))
    json_text = client.ask_structured(
        "review", prompts.REVIEW_SYSTEM_PROMPT, prompts.review_user_prompt(file_name, data), ctx
    )
    try:
        result = ReviewResult.model_validate_json(json_text)
    except ValidationError as exc:
        LOGGER.error("code_review_invalid_result", file_name=file_name, error=str(exc))
        raise ProtocolError(f"invalid_review_result:{exc.error_count()} validation errors") from exc
    LOGGER.info("code_review_finished", file_name=file_name, issues=len(result.issues))
    return result


def code_review_tool(client: StructuredLLMClient, timeout_s: int = 30) -> Tool:
    def handler(payload: Dict[str, Any], ctx: RunContext | None = None) -> Dict[str, Any]:
        args = ReviewArgs.model_validate(payload)
        return review_code(client, args.file_name, args.data, ctx).model_dump(mode="json")

    return Tool(
        spec=ToolSpec(
            name="code_review",
            description="Review one source file and return structured findings.",
            input_schema=CODE_REVIEW_INPUT_SCHEMA,
            output_schema=CODE_REVIEW_OUTPUT_SCHEMA,
            timeout_s=timeout_s,
        ),
        handler=handler,
    )
