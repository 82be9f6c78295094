from __future__ import annotations

import json
from typing import Any, Sequence

from pydantic import BaseModel

PLAN_SYSTEM_PROMPT = (
    "You are a PM planner. Return ONLY valid JSON. No markdown, no code fences, no extra text.\n"
    "Output MUST start with '{' and end with '}'.\n"
    "\n"
    "Input request JSON contains:\n"
    "- files: array of { fileName: string, data: string }\n"
    "- componentName: string|null\n"
    "- componentDescription: string|null\n"
    "\n"
    'You MUST create one "code_review" step for EACH file in "files".\n'
    'You MUST create exactly one "generate_docs" step for the component.\n'
    "\n"
    "Allowed tools: code_review, generate_docs.\n"
    "\n"
    'For tool "code_review" arguments MUST be exactly:\n'
    '{ "fileName": string, "data": string }\n'
    "\n"
    'For tool "generate_docs" arguments MUST be exactly:\n'
    '{ "componentName": string, "description": string }\n'
    "\n"
    "Schema:\n"
    "{\n"
    '  "objective": string,\n'
    '  "steps": [\n'
    '    { "id": string, "tool": "code_review"|"generate_docs", "arguments": object, '
    '"onFail": "continue"|"stop" }\n'
    "  ]\n"
    "}\n"
)

AGGREGATE_SYSTEM_PROMPT = (
    "You are a PM aggregator. Return ONLY valid JSON. No markdown, no extra text.\n"
    "\n"
    "Return JSON that matches EXACTLY this schema:\n"
    "{\n"
    '  "meta": object,\n'
    '  "toolResults": object,\n'
    '  "risks": [ object ],\n'
    '  "nextActions": [ object ],\n'
    '  "summary": string,\n'
    '  "trace": [ { "ts": string, "type": string, "tool": string|null, "details": string|null } ]\n'
    "}\n"
    "\n"
    "Rules:\n"
    "- summary: 3-5 short lines.\n"
    "- risks / nextActions can be empty arrays.\n"
)

REVIEW_SYSTEM_PROMPT = (
    "You are a senior software engineer performing a strict code review.\n"
    "\n"
    "Return ONLY valid JSON.\n"
    "No markdown.\n"
    "No comments.\n"
    "No explanations.\n"
    "No backticks.\n"
    "\n"
    "Always check:\n"
    "1. Bugs, security, performance, design flaws.\n"
    "2. Naming conventions for classes, methods, and files.\n"
    "3. That the main class name matches the file name.\n"
    "\n"
    "Schema:\n"
    "{\n"
    '  "summary": string,\n'
    '  "issues": [\n'
    '    { "severity": "info" | "warning" | "error", "title": string, "details": string }\n'
    "  ],\n"
    '  "suggestions": [ string ]\n'
    "}\n"
    "\n"
    "Rules:\n"
    "- Find real bugs, security risks, performance problems and design flaws.\n"
    "- Be strict and professional.\n"
    "- If code is clean, return empty arrays for issues and suggestions.\n"
)


def _dump(value: Any) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    elif isinstance(value, (list, tuple)):
        value = [
            item.model_dump(mode="json", by_alias=True) if isinstance(item, BaseModel) else item
            for item in value
        ]
    return json.dumps(value, ensure_ascii=False, default=str)


def plan_user_prompt(request: BaseModel) -> str:
    return "Request JSON:\n" + _dump(request)


def aggregate_user_prompt(
    request: BaseModel, tool_results: dict[str, Any], trace: Sequence[BaseModel]
) -> str:
    return (
        "Request:\n"
        + _dump(request)
        + "\nToolResults:\n"
        + _dump(tool_results)
        + "\nTrace:\n"
        + _dump(list(trace))
    )


def review_user_prompt(file_name: str, data: str) -> str:
    return f"File: {file_name}\n\nAnalyze the following code:\n\n{data}\n"
