from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.models.enums import ExecutionStatus, LogSeverity, PlanStatus, RunStatus, StepStatus
from scrapeprep.models.errors import InvalidInput, InvalidTransition, NotFound, StoreFailure


def _store(tmp_path: Path) -> SqlRunStore:
    return SqlRunStore(f"sqlite:///{tmp_path / 'runs.db'}")


def test_upsert_step_returns_existing_step(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        first = await store.upsert_step(run.id, "plan.summary", "Plan Summary", position=1)
        await store.update_step(first.id, status=StepStatus.in_progress)
        again = await store.upsert_step(run.id, "plan.summary", "Renamed", position=9)

        assert again.id == first.id
        assert again.label == "Plan Summary"
        assert again.status == StepStatus.in_progress
        assert len(await store.get_steps(run.id)) == 1

    asyncio.run(main())


def test_concurrent_upserts_create_one_step(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        steps = await asyncio.gather(
            *(store.upsert_step(run.id, "plan.recon", "Recon", position=2) for _ in range(10))
        )
        assert len({s.id for s in steps}) == 1

    asyncio.run(main())


def test_concurrent_log_appends_get_gapless_sequences(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        other = await store.create_run(prompt="another run")
        logs = await asyncio.gather(
            *(store.append_log(run.id, f"message {i}") for i in range(40)),
            *(store.append_log(other.id, f"other {i}") for i in range(5)),
        )

        ours = sorted(log.sequence for log in logs if log.run_id == run.id)
        assert ours == list(range(1, 41))
        theirs = sorted(log.sequence for log in logs if log.run_id == other.id)
        assert theirs == [1, 2, 3, 4, 5]

        after = await store.get_logs_after(run.id, 35)
        assert [log.sequence for log in after] == [36, 37, 38, 39, 40]

    asyncio.run(main())


def test_append_log_to_unknown_run_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(NotFound, match="run missing not found"):
        asyncio.run(store.append_log("missing", "hello"))


def test_step_transitions_are_enforced(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        step = await store.upsert_step(run.id, "plan.summary", "Plan Summary", position=1)
        started = await store.update_step(step.id, status=StepStatus.in_progress, started_at=run.created_at)
        done = await store.update_step(step.id, status=StepStatus.success, started_at=run.updated_at)

        assert done.started_at == started.started_at
        with pytest.raises(InvalidTransition, match="step cannot move from success to in_progress"):
            await store.update_step(step.id, status=StepStatus.in_progress)

    asyncio.run(main())


def test_update_rejects_unknown_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        with pytest.raises(InvalidInput, match="Unknown run fields: prompt"):
            await store.update_run(run.id, prompt="changed")

    asyncio.run(main())


def test_finalize_run_only_once(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        await store.update_run(run.id, status=RunStatus.running)

        first, changed = await store.finalize_run(run.id, RunStatus.completed, summary={"ok": True})
        second, changed_again = await store.finalize_run(run.id, RunStatus.failed, error="late")

        assert changed is True
        assert changed_again is False
        assert second.status == RunStatus.completed
        assert second.completed_at == first.completed_at
        assert second.error is None
        assert second.summary == {"ok": True}

        with pytest.raises(InvalidInput):
            await store.finalize_run(run.id, RunStatus.running)

    asyncio.run(main())


def test_plan_round_trip_and_list_runs(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        plan = await store.create_plan(
            run_id=run.id,
            prompt=run.prompt,
            objective="Collect products",
            base_url="https://shop.example.com/products/",
            starting_url="https://shop.example.com/products",
            site="shop.example.com",
        )
        await store.update_run(run.id, plan_id=plan.id)
        updated = await store.update_plan(
            plan.id, status=PlanStatus.completed, schema={"fields": [{"name": "price"}]}
        )
        assert updated.schema_ == {"fields": [{"name": "price"}]}
        await store.create_run(prompt="second run")

        items = await store.list_runs(limit=10)
        assert len(items) == 2
        planned = next(item for item in items if item.run.id == run.id)
        assert planned.plan is not None
        assert planned.plan.status == PlanStatus.completed
        assert planned.plan.site == "shop.example.com"

        assert len(await store.list_runs(limit=0)) == 1

    asyncio.run(main())


def test_snapshot_collects_everything(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        step = await store.upsert_step(run.id, "plan.summary", "Plan Summary", position=1)
        await store.append_log(run.id, "first", step_id=step.id)
        await store.append_log(run.id, "second", severity=LogSeverity.warning, payload={"n": 2})
        execution = await store.create_execution(run.id, engine="crawl", config={"url": "https://a.example"})
        await store.update_execution(execution.id, status=ExecutionStatus.running)
        await store.append_execution_log(execution.id, run.id, "Submitting crawl")

        snapshot = await store.get_snapshot(run.id)
        assert snapshot.id == run.id
        assert [s.identifier for s in snapshot.steps] == ["plan.summary"]
        assert [log.message for log in snapshot.logs] == ["first", "second"]
        assert snapshot.last_sequence == 2
        assert snapshot.logs[1].payload == {"n": 2}
        assert snapshot.executions[0].execution.status == ExecutionStatus.running
        assert [log.sequence for log in snapshot.executions[0].logs] == [1]

        with pytest.raises(NotFound):
            await store.get_snapshot("missing")

    asyncio.run(main())


def test_closed_store_raises_store_failure(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.close()

    with pytest.raises(StoreFailure):
        asyncio.run(store.create_run(prompt="collect products"))


@pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
def test_in_memory_store_keeps_its_tables(url: str) -> None:
    store = SqlRunStore(url)

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        step = await store.upsert_step(run.id, "plan.summary", "Plan Summary", position=1)
        logs = await asyncio.gather(*(store.append_log(run.id, f"message {i}") for i in range(20)))

        assert sorted(log.sequence for log in logs) == list(range(1, 21))
        snapshot = await store.get_snapshot(run.id)
        assert snapshot.id == run.id
        assert [s.id for s in snapshot.steps] == [step.id]
        assert [log.sequence for log in snapshot.logs] == list(range(1, 21))
        assert [log.sequence for log in await store.get_logs_after(run.id, 15)] == [16, 17, 18, 19, 20]

    try:
        asyncio.run(main())
    finally:
        store.close()
