from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunState(str, Enum):
    validating = "validating"
    reviewing_files = "reviewing_files"
    generating_docs = "generating_docs"
    aggregating = "aggregating"
    done = "done"


class TraceEventType(str, Enum):
    reasoning = "REASONING"
    tool_call_start = "TOOL_CALL_START"
    tool_call_end = "TOOL_CALL_END"


class ReviewSeverity(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class AggregationTag(str, Enum):
    llm = "llm"
    fallback_quota = "fallback_quota"
    fallback_overloaded = "fallback_overloaded"
    fallback_api = "fallback_api"
    fallback_network = "fallback_network"
    fallback_timeout = "fallback_timeout"
    fallback_generic = "fallback_generic"


class PlanTool(str, Enum):
    code_review = "code_review"
    generate_docs = "generate_docs"


class OnFail(str, Enum):
    continue_ = "continue"
    stop = "stop"


class TraceEvent(_WireModel):
    model_config = ConfigDict(frozen=True)

    ts: datetime
    type: TraceEventType
    tool: Optional[str] = None
    details: Optional[str] = None


class PmFile(_WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    file_name: str = Field(default="", alias="fileName")
    data: Optional[str] = None


class PmRequest(_WireModel):
    files: Optional[List[PmFile]] = None
    component_name: Optional[str] = Field(default=None, alias="componentName")
    component_description: Optional[str] = Field(default=None, alias="componentDescription")


class ReviewArgs(_WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    file_name: str = Field(alias="fileName", min_length=1)
    data: str


class DocsArgs(_WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    component_name: str = Field(alias="componentName", min_length=1)
    description: str


class ReviewIssue(BaseModel):
    severity: ReviewSeverity
    title: str
    details: str


class ReviewResult(BaseModel):
    summary: str
    issues: List[ReviewIssue] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("summary")
    @classmethod
    def _summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("summary is empty")
        return value


class DocumentationJson(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    component_name: str = Field(alias="componentName")
    description: str = ""


class DocumentationResult(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    markdown: str = ""
    uml_plant_uml: Optional[str] = Field(default=None, alias="umlPlantUml")
    uml_plant_uml_image_base64: Optional[str] = Field(default=None, alias="umlPlantUmlImageBase64")
    structured_json: Optional[DocumentationJson] = Field(default=None, alias="structuredJson")


class Report(_WireModel):
    meta: Dict[str, Any] = Field(default_factory=dict)
    tool_results: Dict[str, Any] = Field(default_factory=dict, alias="toolResults")
    risks: List[Any] = Field(default_factory=list)
    next_actions: List[Any] = Field(default_factory=list, alias="nextActions")
    summary: str = ""
    trace: List[TraceEvent] = Field(default_factory=list)


class PmPlanStep(_WireModel):
    id: str
    tool: PlanTool
    arguments: Dict[str, Any] = Field(default_factory=dict)
    on_fail: OnFail = Field(default=OnFail.continue_, alias="onFail")


class PmPlan(_WireModel):
    objective: str = ""
    steps: List[PmPlanStep] = Field(default_factory=list)


class ToolSpec(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]
    output_schema: Dict[str, Any]
    timeout_s: int = 30


@dataclass(frozen=True)
class ToolOutcome(Generic[T]):
    result: T
    used_fallback: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
