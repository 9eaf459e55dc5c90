from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from scrapeprep.models.run import (
    Execution,
    ExecutionLog,
    Plan,
    RecordModel,
    Run,
    RunLog,
    RunSnapshot,
    RunStep,
)


class EventType(StrEnum):
    snapshot = "run.snapshot"
    run_updated = "run.updated"
    plan_updated = "run.plan.updated"
    step_updated = "run.step.updated"
    log_appended = "run.log.appended"
    execution_created = "run.execution.created"
    execution_updated = "run.execution.updated"
    execution_log = "run.execution.log"


class RunEvent(BaseModel):
    run_id: str
    type: EventType
    data: RecordModel

    def payload(self) -> dict[str, Any]:
        return self.data.model_dump(mode="json", by_alias=True)

    @property
    def sequence(self) -> int | None:
        if isinstance(self.data, RunLog):
            return self.data.sequence
        return None

    @classmethod
    def snapshot(cls, snapshot: RunSnapshot) -> RunEvent:
        return cls(run_id=snapshot.id, type=EventType.snapshot, data=snapshot)

    @classmethod
    def run_updated(cls, run: Run) -> RunEvent:
        return cls(run_id=run.id, type=EventType.run_updated, data=run)

    @classmethod
    def plan_updated(cls, plan: Plan) -> RunEvent:
        return cls(run_id=plan.run_id, type=EventType.plan_updated, data=plan)

    @classmethod
    def step_updated(cls, step: RunStep) -> RunEvent:
        return cls(run_id=step.run_id, type=EventType.step_updated, data=step)

    @classmethod
    def log_appended(cls, log: RunLog) -> RunEvent:
        return cls(run_id=log.run_id, type=EventType.log_appended, data=log)

    @classmethod
    def execution_created(cls, execution: Execution) -> RunEvent:
        return cls(run_id=execution.run_id, type=EventType.execution_created, data=execution)

    @classmethod
    def execution_updated(cls, execution: Execution) -> RunEvent:
        return cls(run_id=execution.run_id, type=EventType.execution_updated, data=execution)

    @classmethod
    def execution_log(cls, log: ExecutionLog) -> RunEvent:
        return cls(run_id=log.run_id, type=EventType.execution_log, data=log)
