from __future__ import annotations

import asyncio
import logging
import threading
import uuid
import weakref
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import Connection, Table, create_engine, event, func, insert, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from scrapeprep.api.run_tables import (
    execution_logs_table,
    executions_table,
    metadata,
    plans_table,
    run_logs_table,
    run_steps_table,
    runs_table,
)
from scrapeprep.models.enums import (
    EXECUTION_TRANSITIONS,
    PLAN_TRANSITIONS,
    RUN_TRANSITIONS,
    STEP_TRANSITIONS,
    TERMINAL_RUN_STATUSES,
    ExecutionStatus,
    LogSeverity,
    PlanStatus,
    RunPhase,
    RunStatus,
    StepStatus,
    check_transition,
)
from scrapeprep.models.errors import InvalidInput, NotFound, StoreFailure
from scrapeprep.models.run import (
    Execution,
    ExecutionLog,
    ExecutionWithLogs,
    Plan,
    Run,
    RunListItem,
    RunLog,
    RunSnapshot,
    RunStep,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SEQUENCE_ATTEMPTS = 5
_MAX_LIST_LIMIT = 200

_RUN_FIELDS = {"status", "phase", "plan_id", "summary", "error", "completed_at"}
_PLAN_FIELDS = {
    "status",
    "error",
    "prompt",
    "objective",
    "base_url",
    "starting_url",
    "site",
    "reasoning",
    "model",
    "trace_id",
    "sample",
    "schema",
    "pagination",
    "config",
    "meta",
}
_STEP_FIELDS = {"status", "label", "context", "started_at", "completed_at"}
_EXECUTION_FIELDS = {"status", "result", "error", "metadata", "started_at", "completed_at"}


def _new_id() -> str:
    return uuid.uuid4().hex


class SqlRunStore:
    """Durable store for runs, plans, steps, logs and executions.

    SQL runs on worker threads via ``asyncio.to_thread`` so every call is a
    suspension point for the event loop. Log sequence numbers are allocated
    under a per-run lock held across the read-max/insert transaction.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None
        # Set for in-memory SQLite, where every thread shares one connection.
        self._connection_lock: threading.Lock | None = None
        self._sequence_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._setup_engine()
        metadata.create_all(self.engine)

    def _setup_engine(self) -> None:
        engine_args: dict[str, Any] = {}
        if self.url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            database = make_url(self.url).database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            else:
                engine_args["poolclass"] = StaticPool
                self._connection_lock = threading.Lock()
        self._engine = create_engine(self.url, echo=False, **engine_args)
        if self.url.startswith("sqlite"):
            SqlRunStore._configure_sqlite(self._engine)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            # Let SQLAlchemy emit BEGIN itself so it can take the write lock up front.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        @event.listens_for(engine, "begin")
        def begin_immediate(conn: Connection) -> None:
            # A deferred read that later writes fails outright in WAL mode when
            # another connection committed in between; IMMEDIATE waits instead.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StoreFailure("Run store is closed")
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(self._run_serialized, fn, *args)
        except SQLAlchemyError as e:
            logger.error("Run store operation %s failed: %s", fn.__name__, e)
            raise StoreFailure(str(e)) from e

    def _run_serialized(self, fn: Callable[..., T], *args: Any) -> T:
        if self._connection_lock is None:
            return fn(*args)
        with self._connection_lock:
            return fn(*args)

    def _sequence_lock(self, key: str) -> asyncio.Lock:
        lock = self._sequence_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._sequence_locks[key] = lock
        return lock

    # runs

    async def create_run(
        self,
        prompt: str,
        status: RunStatus = RunStatus.queued,
        phase: RunPhase = RunPhase.plan,
    ) -> Run:
        now = utcnow()
        run = Run(
            id=_new_id(),
            prompt=prompt,
            status=status,
            phase=phase,
            created_at=now,
            updated_at=now,
        )

        def _insert() -> None:
            with self.engine.begin() as conn:
                conn.execute(insert(runs_table).values(**run.model_dump(by_alias=False)))

        await self._call(_insert)
        return run

    async def get_run(self, run_id: str) -> Run | None:
        def _get() -> Run | None:
            with self.engine.connect() as conn:
                row = _fetch_by_id(conn, runs_table, run_id)
            return Run.model_validate(row) if row else None

        return await self._call(_get)

    async def update_run(self, run_id: str, **changes: Any) -> Run:
        _check_fields("run", changes, _RUN_FIELDS)
        row = await self._call(
            _update_row, self.engine, runs_table, "run", run_id, changes, RunStatus, RUN_TRANSITIONS, ()
        )
        return Run.model_validate(row)

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> tuple[Run, bool]:
        """Move a run to a terminal status unless it is already terminal.

        Returns the stored run and whether this call changed it.
        """

        if status not in TERMINAL_RUN_STATUSES:
            raise InvalidInput(f"{status.value} is not a terminal run status")

        def _finalize() -> tuple[Run, bool]:
            with self.engine.begin() as conn:
                row = _fetch_by_id(conn, runs_table, run_id)
                if row is None:
                    raise NotFound("run", run_id)
                current = RunStatus(row["status"])
                if current in TERMINAL_RUN_STATUSES:
                    return Run.model_validate(row), False
                check_transition("run", RUN_TRANSITIONS, current, status)
                now = utcnow()
                result = conn.execute(
                    update(runs_table)
                    .where(runs_table.c.id == run_id)
                    .where(runs_table.c.status.not_in([s.value for s in TERMINAL_RUN_STATUSES]))
                    .values(status=status.value, summary=summary, error=error, completed_at=now, updated_at=now)
                )
                changed = result.rowcount == 1
                updated = _fetch_by_id(conn, runs_table, run_id)
            return Run.model_validate(updated), changed

        return await self._call(_finalize)

    async def list_runs(self, limit: int = 50) -> list[RunListItem]:
        limit = max(1, min(limit, _MAX_LIST_LIMIT))

        def _list() -> list[RunListItem]:
            with self.engine.connect() as conn:
                runs = [
                    Run.model_validate(r)
                    for r in conn.execute(
                        select(runs_table).order_by(runs_table.c.created_at.desc()).limit(limit)
                    ).mappings()
                ]
                plan_ids = [r.plan_id for r in runs if r.plan_id]
                plans: dict[str, Plan] = {}
                if plan_ids:
                    for p in conn.execute(
                        select(plans_table).where(plans_table.c.id.in_(plan_ids))
                    ).mappings():
                        plans[p["id"]] = Plan.model_validate(p)
            return [RunListItem(run=r, plan=plans.get(r.plan_id or "")) for r in runs]

        return await self._call(_list)

    # plans

    async def create_plan(
        self,
        run_id: str,
        prompt: str,
        objective: str | None = None,
        base_url: str | None = None,
        starting_url: str | None = None,
        site: str | None = None,
        reasoning: str | None = None,
        model: str | None = None,
        trace_id: str | None = None,
    ) -> Plan:
        now = utcnow()
        plan = Plan(
            id=_new_id(),
            run_id=run_id,
            prompt=prompt,
            objective=objective,
            base_url=base_url,
            starting_url=starting_url or base_url,
            site=site,
            reasoning=reasoning,
            model=model,
            trace_id=trace_id,
            created_at=now,
            updated_at=now,
        )

        def _insert() -> None:
            with self.engine.begin() as conn:
                if _fetch_by_id(conn, runs_table, run_id) is None:
                    raise NotFound("run", run_id)
                conn.execute(insert(plans_table).values(**plan.to_row()))

        await self._call(_insert)
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        def _get() -> Plan | None:
            with self.engine.connect() as conn:
                row = _fetch_by_id(conn, plans_table, plan_id)
            return Plan.model_validate(row) if row else None

        return await self._call(_get)

    async def update_plan(self, plan_id: str, **changes: Any) -> Plan:
        _check_fields("plan", changes, _PLAN_FIELDS)
        row = await self._call(
            _update_row, self.engine, plans_table, "plan", plan_id, changes, PlanStatus, PLAN_TRANSITIONS, ()
        )
        return Plan.model_validate(row)

    # steps

    async def upsert_step(
        self,
        run_id: str,
        identifier: str,
        label: str,
        parent_step_id: str | None = None,
        position: int = 0,
    ) -> RunStep:
        """Create the step keyed on ``(run_id, identifier)`` or return the existing one."""

        def _select(conn: Connection) -> Mapping[str, Any] | None:
            return (
                conn.execute(
                    select(run_steps_table)
                    .where(run_steps_table.c.run_id == run_id)
                    .where(run_steps_table.c.identifier == identifier)
                )
                .mappings()
                .first()
            )

        def _upsert() -> RunStep:
            try:
                with self.engine.begin() as conn:
                    existing = _select(conn)
                    if existing is not None:
                        return RunStep.model_validate(existing)
                    if _fetch_by_id(conn, runs_table, run_id) is None:
                        raise NotFound("run", run_id)
                    now = utcnow()
                    values = {
                        "id": _new_id(),
                        "run_id": run_id,
                        "identifier": identifier,
                        "label": label,
                        "parent_step_id": parent_step_id,
                        "position": position,
                        "status": StepStatus.pending.value,
                        "created_at": now,
                        "updated_at": now,
                    }
                    conn.execute(insert(run_steps_table).values(**values))
                    return RunStep.model_validate(values)
            except IntegrityError:
                # Another writer created it first.
                with self.engine.connect() as conn:
                    existing = _select(conn)
                if existing is None:
                    raise
                return RunStep.model_validate(existing)

        async with self._sequence_lock(f"run:{run_id}"):
            return await self._call(_upsert)

    async def update_step(self, step_id: str, **changes: Any) -> RunStep:
        _check_fields("step", changes, _STEP_FIELDS)
        row = await self._call(
            _update_row,
            self.engine,
            run_steps_table,
            "step",
            step_id,
            changes,
            StepStatus,
            STEP_TRANSITIONS,
            ("started_at", "completed_at"),
        )
        return RunStep.model_validate(row)

    async def get_steps(self, run_id: str) -> list[RunStep]:
        def _get() -> list[RunStep]:
            with self.engine.connect() as conn:
                return _select_steps(conn, run_id)

        return await self._call(_get)

    # logs

    async def append_log(
        self,
        run_id: str,
        message: str,
        step_id: str | None = None,
        severity: LogSeverity = LogSeverity.info,
        payload: Any = None,
    ) -> RunLog:
        values = {
            "run_id": run_id,
            "step_id": step_id,
            "severity": LogSeverity(severity).value,
            "message": message,
            "payload": payload,
        }
        async with self._sequence_lock(f"run:{run_id}"):
            row = await self._call(
                _insert_sequenced,
                self.engine,
                run_logs_table,
                run_logs_table.c.run_id,
                run_id,
                runs_table,
                "run",
                values,
            )
        return RunLog.model_validate(row)

    async def get_logs_after(self, run_id: str, sequence: int) -> list[RunLog]:
        def _get() -> list[RunLog]:
            with self.engine.connect() as conn:
                return _select_logs(conn, run_id, sequence)

        return await self._call(_get)

    async def get_snapshot(self, run_id: str) -> RunSnapshot:
        def _get() -> RunSnapshot:
            with self.engine.begin() as conn:
                row = _fetch_by_id(conn, runs_table, run_id)
                if row is None:
                    raise NotFound("run", run_id)
                run = Run.model_validate(row)
                plan_row = _fetch_by_id(conn, plans_table, run.plan_id) if run.plan_id else None
                return RunSnapshot(
                    **run.model_dump(),
                    plan=Plan.model_validate(plan_row) if plan_row else None,
                    steps=_select_steps(conn, run_id),
                    logs=_select_logs(conn, run_id, 0),
                    executions=_select_executions(conn, run_id),
                )

        return await self._call(_get)

    # executions

    async def create_execution(
        self,
        run_id: str,
        engine: str,
        config: dict[str, Any],
        plan_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Execution:
        now = utcnow()
        execution = Execution(
            id=_new_id(),
            run_id=run_id,
            plan_id=plan_id,
            engine=engine,
            config=config,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

        def _insert() -> None:
            with self.engine.begin() as conn:
                if _fetch_by_id(conn, runs_table, run_id) is None:
                    raise NotFound("run", run_id)
                conn.execute(insert(executions_table).values(**execution.model_dump()))

        await self._call(_insert)
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        def _get() -> Execution | None:
            with self.engine.connect() as conn:
                row = _fetch_by_id(conn, executions_table, execution_id)
            return Execution.model_validate(row) if row else None

        return await self._call(_get)

    async def update_execution(self, execution_id: str, **changes: Any) -> Execution:
        _check_fields("execution", changes, _EXECUTION_FIELDS)
        row = await self._call(
            _update_row,
            self.engine,
            executions_table,
            "execution",
            execution_id,
            changes,
            ExecutionStatus,
            EXECUTION_TRANSITIONS,
            ("started_at", "completed_at"),
        )
        return Execution.model_validate(row)

    async def append_execution_log(
        self,
        execution_id: str,
        run_id: str,
        message: str,
        severity: LogSeverity = LogSeverity.info,
        payload: Any = None,
    ) -> ExecutionLog:
        values = {
            "execution_id": execution_id,
            "run_id": run_id,
            "severity": LogSeverity(severity).value,
            "message": message,
            "payload": payload,
        }
        async with self._sequence_lock(f"execution:{execution_id}"):
            row = await self._call(
                _insert_sequenced,
                self.engine,
                execution_logs_table,
                execution_logs_table.c.execution_id,
                execution_id,
                executions_table,
                "execution",
                values,
            )
        return ExecutionLog.model_validate(row)

    async def get_execution_logs(self, execution_id: str, after: int = 0) -> list[ExecutionLog]:
        def _get() -> list[ExecutionLog]:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(execution_logs_table)
                    .where(execution_logs_table.c.execution_id == execution_id)
                    .where(execution_logs_table.c.sequence > after)
                    .order_by(execution_logs_table.c.sequence)
                ).mappings()
                return [ExecutionLog.model_validate(r) for r in rows]

        return await self._call(_get)

    async def list_executions(self, run_id: str) -> list[ExecutionWithLogs]:
        def _get() -> list[ExecutionWithLogs]:
            with self.engine.connect() as conn:
                return _select_executions(conn, run_id)

        return await self._call(_get)


def _check_fields(kind: str, changes: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise InvalidInput(f"Unknown {kind} fields: {', '.join(sorted(unknown))}")


def _fetch_by_id(conn: Connection, table: Table, entity_id: str) -> Mapping[str, Any] | None:
    return conn.execute(select(table).where(table.c.id == entity_id)).mappings().first()


def _update_row(
    engine: Engine,
    table: Table,
    kind: str,
    entity_id: str,
    changes: dict[str, Any],
    status_type: type[Any],
    transitions: Mapping[Any, frozenset[Any]],
    set_once: tuple[str, ...],
) -> Mapping[str, Any]:
    with engine.begin() as conn:
        row = _fetch_by_id(conn, table, entity_id)
        if row is None:
            raise NotFound(kind, entity_id)
        values = dict(changes)
        if values.get("status") is not None:
            new_status = status_type(values["status"])
            check_transition(kind, transitions, status_type(row["status"]), new_status)
            values["status"] = new_status.value
        else:
            values.pop("status", None)
        for key in set_once:
            if row[key] is not None or values.get(key) is None:
                values.pop(key, None)
        if "updated_at" in table.c:
            values["updated_at"] = utcnow()
        conn.execute(update(table).where(table.c.id == entity_id).values(**values))
        updated = _fetch_by_id(conn, table, entity_id)
    if updated is None:
        raise NotFound(kind, entity_id)
    return updated


def _insert_sequenced(
    engine: Engine,
    table: Table,
    scope_column: Any,
    scope_id: str,
    owner_table: Table,
    owner_kind: str,
    values: dict[str, Any],
) -> dict[str, Any]:
    """Insert a log row with the next sequence number in its scope.

    Callers hold the scope's lock; the unique constraint turns a collision with
    a writer outside this process into a retry.
    """

    for attempt in range(1, _SEQUENCE_ATTEMPTS + 1):
        try:
            with engine.begin() as conn:
                if _fetch_by_id(conn, owner_table, scope_id) is None:
                    raise NotFound(owner_kind, scope_id)
                current = conn.execute(
                    select(func.coalesce(func.max(table.c.sequence), 0)).where(scope_column == scope_id)
                ).scalar_one()
                row = {
                    **values,
                    "id": _new_id(),
                    "sequence": int(current) + 1,
                    "created_at": utcnow(),
                }
                conn.execute(insert(table).values(**row))
                return row
        except IntegrityError:
            if attempt == _SEQUENCE_ATTEMPTS:
                raise
            logger.warning(
                "Sequence collision on %s for %s, retrying (%d/%d)",
                table.name,
                scope_id,
                attempt,
                _SEQUENCE_ATTEMPTS,
            )
    raise StoreFailure(f"Could not allocate a sequence for {scope_id}")


def _select_steps(conn: Connection, run_id: str) -> list[RunStep]:
    rows = conn.execute(
        select(run_steps_table)
        .where(run_steps_table.c.run_id == run_id)
        .order_by(run_steps_table.c.position, run_steps_table.c.created_at)
    ).mappings()
    return [RunStep.model_validate(r) for r in rows]


def _select_logs(conn: Connection, run_id: str, after: int) -> list[RunLog]:
    rows = conn.execute(
        select(run_logs_table)
        .where(run_logs_table.c.run_id == run_id)
        .where(run_logs_table.c.sequence > after)
        .order_by(run_logs_table.c.sequence)
    ).mappings()
    return [RunLog.model_validate(r) for r in rows]


def _select_executions(conn: Connection, run_id: str) -> list[ExecutionWithLogs]:
    executions = [
        Execution.model_validate(r)
        for r in conn.execute(
            select(executions_table)
            .where(executions_table.c.run_id == run_id)
            .order_by(executions_table.c.created_at.desc())
        ).mappings()
    ]
    if not executions:
        return []
    logs: dict[str, list[ExecutionLog]] = {}
    for r in conn.execute(
        select(execution_logs_table)
        .where(execution_logs_table.c.run_id == run_id)
        .order_by(execution_logs_table.c.sequence)
    ).mappings():
        logs.setdefault(r["execution_id"], []).append(ExecutionLog.model_validate(r))
    return [ExecutionWithLogs(execution=e, logs=logs.get(e.id, [])) for e in executions]
