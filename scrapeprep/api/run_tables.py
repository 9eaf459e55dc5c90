"""SQLAlchemy Core tables backing the run store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp; naive values read back from SQLite are UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


metadata = MetaData()

runs_table = Table(
    "runs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("prompt", Text, nullable=False),
    Column("status", String(32), nullable=False),
    Column("phase", String(32), nullable=False),
    Column("plan_id", String(64)),
    Column("summary", JSON),
    Column("error", Text),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Column("completed_at", UTCDateTime()),
)

plans_table = Table(
    "plans",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("run_id", String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
    Column("status", String(32), nullable=False),
    Column("error", Text),
    Column("prompt", Text, nullable=False),
    Column("objective", Text),
    Column("base_url", Text),
    Column("starting_url", Text),
    Column("site", String(255)),
    Column("reasoning", Text),
    Column("model", String(128)),
    Column("trace_id", String(64)),
    Column("sample", JSON),
    Column("schema", JSON),
    Column("pagination", JSON),
    Column("config", JSON),
    Column("meta", JSON),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
)

run_steps_table = Table(
    "run_steps",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("run_id", String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
    Column("identifier", String(128), nullable=False),
    Column("label", String(255), nullable=False),
    Column("parent_step_id", String(64), ForeignKey("run_steps.id")),
    Column("position", Integer, nullable=False, default=0),
    Column("status", String(32), nullable=False),
    Column("context", JSON),
    Column("started_at", UTCDateTime()),
    Column("completed_at", UTCDateTime()),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    UniqueConstraint("run_id", "identifier", name="uq_run_steps_run_identifier"),
)

run_logs_table = Table(
    "run_logs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("run_id", String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
    Column("step_id", String(64), ForeignKey("run_steps.id", ondelete="SET NULL")),
    Column("sequence", Integer, nullable=False),
    Column("severity", String(16), nullable=False),
    Column("message", Text, nullable=False),
    Column("payload", JSON),
    Column("created_at", UTCDateTime(), nullable=False),
    UniqueConstraint("run_id", "sequence", name="uq_run_logs_run_sequence"),
)

executions_table = Table(
    "executions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("run_id", String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
    Column("plan_id", String(64), ForeignKey("plans.id", ondelete="SET NULL")),
    Column("engine", String(64), nullable=False),
    Column("status", String(32), nullable=False),
    Column("config", JSON, nullable=False),
    Column("metadata", JSON),
    Column("result", JSON),
    Column("error", Text),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Column("started_at", UTCDateTime()),
    Column("completed_at", UTCDateTime()),
)

execution_logs_table = Table(
    "execution_logs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column(
        "execution_id",
        String(64),
        ForeignKey("executions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("run_id", String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
    Column("sequence", Integer, nullable=False),
    Column("severity", String(16), nullable=False),
    Column("message", Text, nullable=False),
    Column("payload", JSON),
    Column("created_at", UTCDateTime(), nullable=False),
    UniqueConstraint("execution_id", "sequence", name="uq_execution_logs_execution_sequence"),
)
