from __future__ import annotations

from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Confidence = Literal["low", "medium", "high"]


class CollaboratorModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldSpec(CollaboratorModel):
    name: str
    description: str = ""
    required: bool = True


class PaginationHint(CollaboratorModel):
    strategy: Literal["page_count", "item_count", "unknown"] = "unknown"
    target_value: int | None = None
    notes: str | None = None


class PlannerResult(CollaboratorModel):
    base_url: str | None = None
    objective: str
    extraction_fields: list[FieldSpec] = Field(default_factory=list)
    pagination_hint: PaginationHint = Field(default_factory=PaginationHint)
    confidence: Confidence = "medium"
    reasoning_text: str | None = None
    model: str | None = None
    trace_id: str | None = None


class ReconResult(CollaboratorModel):
    final_url: str
    markdown_body: str | None = None
    html_body: str | None = None
    page_metadata: dict[str, Any] | None = None
    summary: Any = None


class PaginationRequest(CollaboratorModel):
    url: str
    markdown_body: str | None = None
    html_body: str | None = None
    page_metadata: dict[str, Any] | None = None
    summary: Any = None


class PaginationResult(CollaboratorModel):
    strategy: Literal["next_link", "load_more", "unknown"] = "unknown"
    confidence: Confidence = "medium"
    selector: str | None = None
    href_template: str | None = None
    actions: list[dict[str, Any]] = Field(default_factory=list)
    notes: str | None = None


class ExtractionField(CollaboratorModel):
    name: str
    description: str = ""
    required: bool = True
    type: str = "string"
    example: Any = None
    source: Literal["plan", "llm", "inferred"] = "llm"


class ExtractionRequest(CollaboratorModel):
    prompt: str
    plan: PlannerResult
    recon: ReconResult
    pagination_hint: PaginationResult | None = None


class ExtractionResult(CollaboratorModel):
    refined_prompt: str
    fields: list[ExtractionField] = Field(default_factory=list)
    sample_data: Any = None
    notes: str | None = None


class JobAssemblyRequest(CollaboratorModel):
    prompt: str
    plan: PlannerResult
    pagination_result: PaginationResult | None = None
    extraction_result: ExtractionResult


class JobAssemblyResult(CollaboratorModel):
    crawl_config: dict[str, Any]
    field_schema: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    summary: dict[str, Any] = Field(default_factory=dict)


class ExecutionRequest(CollaboratorModel):
    run_id: str
    plan_id: str | None = None
    crawl_config: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)


class Planner(Protocol):
    async def plan(self, prompt: str) -> PlannerResult: ...


class Recon(Protocol):
    async def fetch(self, url: str) -> ReconResult: ...


class PaginationInference(Protocol):
    async def infer(self, request: PaginationRequest) -> PaginationResult: ...


class ExtractionSchema(Protocol):
    async def generate(self, request: ExtractionRequest) -> ExtractionResult: ...


class JobAssembler(Protocol):
    async def assemble(self, request: JobAssemblyRequest) -> JobAssemblyResult: ...


class CrawlExecutor(Protocol):
    async def execute(self, url: str, options: dict[str, Any]) -> dict[str, Any]: ...


class ExecutionTrigger(Protocol):
    async def trigger(self, request: ExecutionRequest) -> Any: ...
