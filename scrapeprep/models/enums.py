from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from scrapeprep.models.errors import InvalidTransition


class RunStatus(StrEnum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"


class RunPhase(StrEnum):
    plan = "plan"
    execute = "execute"


class PlanStatus(StrEnum):
    planning = "planning"
    completed = "completed"
    failed = "failed"


class StepStatus(StrEnum):
    pending = "pending"
    in_progress = "in_progress"
    success = "success"
    error = "error"


class LogSeverity(StrEnum):
    info = "info"
    warning = "warning"
    error = "error"
    debug = "debug"


class ExecutionStatus(StrEnum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.queued: frozenset({RunStatus.running, RunStatus.failed}),
    RunStatus.running: frozenset({RunStatus.completed, RunStatus.failed}),
    RunStatus.completed: frozenset(),
    RunStatus.failed: frozenset(),
}

PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.planning: frozenset({PlanStatus.completed, PlanStatus.failed}),
    PlanStatus.completed: frozenset(),
    PlanStatus.failed: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.pending: frozenset({StepStatus.in_progress, StepStatus.success, StepStatus.error}),
    StepStatus.in_progress: frozenset({StepStatus.success, StepStatus.error}),
    StepStatus.success: frozenset(),
    StepStatus.error: frozenset(),
}

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.queued: frozenset(
        {ExecutionStatus.running, ExecutionStatus.failed, ExecutionStatus.cancelled}
    ),
    ExecutionStatus.running: frozenset(
        {ExecutionStatus.completed, ExecutionStatus.failed, ExecutionStatus.cancelled}
    ),
    ExecutionStatus.completed: frozenset(),
    ExecutionStatus.failed: frozenset(),
    ExecutionStatus.cancelled: frozenset(),
}

TERMINAL_RUN_STATUSES = frozenset(s for s, nxt in RUN_TRANSITIONS.items() if not nxt)
TERMINAL_STEP_STATUSES = frozenset(s for s, nxt in STEP_TRANSITIONS.items() if not nxt)


def check_transition(
    kind: str,
    table: Mapping[Any, frozenset[Any]],
    current: StrEnum,
    new: StrEnum,
) -> None:
    """Reject a status change the transition table does not allow.

    Re-asserting the current status is accepted while it is not terminal.
    """

    allowed = table[current]
    if new == current and allowed:
        return
    if new not in allowed:
        raise InvalidTransition(f"{kind} cannot move from {current.value} to {new.value}")
