from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from scrapeprep.models.enums import (
    ExecutionStatus,
    LogSeverity,
    PlanStatus,
    RunPhase,
    RunStatus,
    StepStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Persisted entity; serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Run(RecordModel):
    id: str
    prompt: str
    status: RunStatus = RunStatus.queued
    phase: RunPhase = RunPhase.plan
    plan_id: str | None = None
    summary: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class Plan(RecordModel):
    id: str
    run_id: str
    status: PlanStatus = PlanStatus.planning
    error: str | None = None
    prompt: str
    objective: str | None = None
    base_url: str | None = None
    starting_url: str | None = None
    site: str | None = None
    reasoning: str | None = None
    model: str | None = None
    trace_id: str | None = None
    sample: Any = None
    schema_: Any = Field(default=None, alias="schema")
    pagination: Any = None
    config: Any = None
    meta: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump()
        row["schema"] = row.pop("schema_")
        return row


class RunStep(RecordModel):
    id: str
    run_id: str
    identifier: str
    label: str
    parent_step_id: str | None = None
    position: int = 0
    status: StepStatus = StepStatus.pending
    context: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RunLog(RecordModel):
    id: str
    run_id: str
    step_id: str | None = None
    sequence: int
    severity: LogSeverity = LogSeverity.info
    message: str
    payload: Any = None
    created_at: datetime = Field(default_factory=utcnow)


class Execution(RecordModel):
    id: str
    run_id: str
    plan_id: str | None = None
    engine: str
    status: ExecutionStatus = ExecutionStatus.queued
    config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None
    result: Any = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionLog(RecordModel):
    id: str
    execution_id: str
    run_id: str
    sequence: int
    severity: LogSeverity = LogSeverity.info
    message: str
    payload: Any = None
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionWithLogs(RecordModel):
    execution: Execution
    logs: list[ExecutionLog] = Field(default_factory=list)


class RunSnapshot(Run):
    """Run plus everything hanging off it, as read in one pass."""

    plan: Plan | None = None
    steps: list[RunStep] = Field(default_factory=list)
    logs: list[RunLog] = Field(default_factory=list)
    executions: list[ExecutionWithLogs] = Field(default_factory=list)

    @property
    def last_sequence(self) -> int:
        return self.logs[-1].sequence if self.logs else 0


class RunListItem(RecordModel):
    run: Run
    plan: Plan | None = None
