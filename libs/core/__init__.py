__all__ = [
    "models",
    "errors",
    "run_context",
    "json_extract",
    "response_cache",
    "llm_provider",
    "structured_client",
    "planner",
    "aggregation",
    "tool_invoker",
    "fallbacks",
    "steps",
    "state_machine",
    "orchestrator",
    "run_trace",
    "telemetry",
    "settings",
    "logging",
]
