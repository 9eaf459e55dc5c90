from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from scrapeprep.agent.blueprint import (
    PLAN_EXTRACTION,
    PLAN_JOB,
    PLAN_PAGINATION,
    PLAN_RECON,
    PLAN_SUMMARY,
    STEP_BLUEPRINT,
    ensure_steps,
    get_stage,
    stages_after,
)
from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.models.enums import StepStatus


def test_blueprint_order_and_parents() -> None:
    assert [s.identifier for s in STEP_BLUEPRINT] == [
        PLAN_SUMMARY,
        PLAN_RECON,
        PLAN_PAGINATION,
        PLAN_EXTRACTION,
        PLAN_JOB,
    ]
    assert [s.position for s in STEP_BLUEPRINT] == [1, 2, 3, 4, 5]
    assert all(s.parent == PLAN_SUMMARY for s in STEP_BLUEPRINT[1:])
    assert get_stage(PLAN_JOB).label == "Job Assembly"
    assert [s.identifier for s in stages_after(PLAN_PAGINATION)] == [PLAN_EXTRACTION, PLAN_JOB]
    assert stages_after(PLAN_JOB) == []


def test_unknown_stage_raises() -> None:
    with pytest.raises(ValueError, match="Unknown step identifier"):
        get_stage("plan.unknown")


def test_ensure_steps_is_idempotent(tmp_path: Path) -> None:
    store = SqlRunStore(f"sqlite:///{tmp_path / 'runs.db'}")

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        first = await ensure_steps(store, run.id)
        second = await ensure_steps(store, run.id)

        assert [s.id for s in first] == [s.id for s in second]
        assert len(await store.get_steps(run.id)) == len(STEP_BLUEPRINT)
        root = first[0]
        assert root.parent_step_id is None
        assert all(s.parent_step_id == root.id for s in first[1:])
        assert all(s.status == StepStatus.pending for s in first)

    asyncio.run(main())
