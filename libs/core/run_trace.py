from __future__ import annotations

from typing import List, Optional

import structlog

from .logging import get_logger
from .models import TraceEvent, TraceEventType, utcnow


class TraceRecorder:
    """Append-only trace of one orchestration run.

    Owned by a single run; events are kept in invocation order.
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._events: List[TraceEvent] = []
        self._logger = logger or get_logger("pm")

    def record(
        self,
        event_type: TraceEventType,
        tool: Optional[str] = None,
        details: Optional[str] = None,
    ) -> TraceEvent:
        event = TraceEvent(ts=utcnow(), type=event_type, tool=tool, details=details)
        self._events.append(event)
        return event

    def step(self, message: str) -> None:
        self.record(TraceEventType.reasoning, details=message)
        self._logger.info("pm_reasoning", message=message)

    def tool_start(self, tool: str, details: Optional[str] = None) -> None:
        self.record(TraceEventType.tool_call_start, tool=tool, details=details)

    def tool_end(self, tool: str, details: str) -> None:
        self.record(TraceEventType.tool_call_end, tool=tool, details=details)

    @property
    def events(self) -> List[TraceEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)
