from __future__ import annotations

import json
from typing import Any, Sequence

from pydantic import ValidationError

from . import prompts
from .errors import ProtocolError
from .models import PlanTool, PmPlan, PmRequest, Report, TraceEvent
from .run_context import RunContext
from .structured_client import StructuredLLMClient


class LlmPlanner:
    """Plan creation and report aggregation on top of the structured client."""

    def __init__(self, client: StructuredLLMClient) -> None:
        self.client = client

    def create_plan(self, request: PmRequest, ctx: RunContext | None = None) -> PmPlan:
        json_text = self.client.ask_structured(
            "plan", prompts.PLAN_SYSTEM_PROMPT, prompts.plan_user_prompt(request), ctx
        )
        try:
            plan = PmPlan.model_validate_json(json_text)
        except ValidationError as exc:
            raise ProtocolError(f"plan_invalid:{exc.error_count()} validation errors") from exc
        docs_steps = [step for step in plan.steps if step.tool == PlanTool.generate_docs]
        if len(docs_steps) != 1:
            raise ProtocolError(f"plan_invalid:expected one generate_docs step, got {len(docs_steps)}")
        return plan

    def aggregate(
        self,
        request: PmRequest,
        tool_results: dict[str, Any],
        trace: Sequence[TraceEvent],
        ctx: RunContext | None = None,
    ) -> Report:
        json_text = self.client.ask_structured(
            "agg",
            prompts.AGGREGATE_SYSTEM_PROMPT,
            prompts.aggregate_user_prompt(request, tool_results, trace),
            ctx,
        )
        payload = json.loads(json_text)
        if not isinstance(payload, dict):
            raise ProtocolError("report_invalid:expected a JSON object")
        # The run's real tool results and trace replace whatever the model echoed back.
        payload.pop("toolResults", None)
        payload.pop("trace", None)
        try:
            report = Report.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError(f"report_invalid:{exc.error_count()} validation errors") from exc
        if not report.summary.strip():
            raise ProtocolError("report_invalid:summary is empty")
        return report.model_copy(update={"tool_results": dict(tool_results), "trace": list(trace)})
