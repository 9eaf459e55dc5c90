from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from scrapeprep.api.event_bus import RunEventBus
from scrapeprep.api.routes_runs import format_sse, sse_frames
from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.api.subscriptions import SubscriptionGateway
from scrapeprep.models.enums import RunStatus, StepStatus
from scrapeprep.models.errors import NotFound
from scrapeprep.models.events import EventType, RunEvent
from scrapeprep.models.run import RunLog


def _gateway(tmp_path: Path) -> SubscriptionGateway:
    return SubscriptionGateway(
        store=SqlRunStore(f"sqlite:///{tmp_path / 'runs.db'}"),
        bus=RunEventBus(),
    )


def test_finished_run_yields_snapshot_then_only_heartbeats(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path)
    store, bus = gateway.store, gateway.bus

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        await store.update_run(run.id, status=RunStatus.running)
        await store.append_log(run.id, "one")
        await store.append_log(run.id, "two")
        await store.finalize_run(run.id, RunStatus.completed)

        stream = gateway.stream(run.id, heartbeat_seconds=0.05)
        first = await anext(stream)
        assert first is not None
        assert first.type == EventType.snapshot
        assert first.data.status == RunStatus.completed
        assert [log.sequence for log in first.data.logs] == [1, 2]
        assert await anext(stream) is None
        assert bus.listener_count(run.id) == 1

        await stream.aclose()
        assert bus.listener_count(run.id) == 0

    asyncio.run(main())


def test_live_events_follow_snapshot_without_duplicates(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path)
    store, bus = gateway.store, gateway.bus

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        old = await store.append_log(run.id, "before subscribing")

        stream = gateway.stream(run.id)
        snapshot = await anext(stream)
        assert snapshot.data.last_sequence == 1

        bus.publish(run.id, RunEvent.log_appended(old))
        new = await store.append_log(run.id, "after subscribing")
        bus.publish(run.id, RunEvent.log_appended(new))
        updated = await store.update_run(run.id, status=RunStatus.running)
        bus.publish(run.id, RunEvent.run_updated(updated))

        second = await anext(stream)
        third = await anext(stream)
        assert second.type == EventType.log_appended
        assert second.sequence == 2
        assert third.type == EventType.run_updated

        await stream.aclose()
        assert bus.listener_count(run.id) == 0

    asyncio.run(main())


def test_unknown_run_raises_before_yielding(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path)

    async def main() -> None:
        stream = gateway.stream("missing")
        with pytest.raises(NotFound):
            await anext(stream)
        assert gateway.bus.listener_count("missing") == 0

    asyncio.run(main())


def test_format_sse_frames() -> None:
    log = RunLog(id="l1", run_id="r1", sequence=7, message="hello")

    frame = format_sse(RunEvent.log_appended(log))

    lines = frame.split("\n")
    assert lines[0] == "id: 7"
    assert lines[1] == "event: run.log.appended"
    assert lines[2].startswith("data: {")
    assert '"runId":"r1"' in lines[2]
    assert frame.endswith("\n\n")
    assert format_sse(None) == ":heartbeat\n\n"


def test_sse_frames_close_the_subscription(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path)

    async def main() -> None:
        run = await gateway.store.create_run(prompt="collect products")
        events = gateway.stream(run.id, heartbeat_seconds=0.05)
        first = await anext(events)
        frames = sse_frames(first, events)

        snapshot_frame = await anext(frames)
        heartbeat = await anext(frames)
        await frames.aclose()

        assert snapshot_frame.startswith("event: run.snapshot\n")
        assert heartbeat == ":heartbeat\n\n"
        assert gateway.bus.listener_count(run.id) == 0

    asyncio.run(main())


def test_concurrent_subscribers_see_the_same_events(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path)
    store, bus = gateway.store, gateway.bus

    async def main() -> None:
        run = await store.create_run(prompt="collect products")
        step = await store.upsert_step(run.id, "plan.summary", "Plan Summary", position=1)
        first, second = gateway.stream(run.id), gateway.stream(run.id)
        assert (await anext(first)).type == EventType.snapshot
        assert (await anext(second)).type == EventType.snapshot
        assert bus.listener_count(run.id) == 2

        log = await store.append_log(run.id, "planning")
        bus.publish(run.id, RunEvent.log_appended(log))
        updated = await store.update_run(run.id, status=RunStatus.running)
        bus.publish(run.id, RunEvent.run_updated(updated))
        started = await store.update_step(step.id, status=StepStatus.in_progress)
        bus.publish(run.id, RunEvent.step_updated(started))

        seen_first = [await anext(first) for _ in range(3)]
        seen_second = [await anext(second) for _ in range(3)]
        expected = [EventType.log_appended, EventType.run_updated, EventType.step_updated]
        assert [e.type for e in seen_first] == expected
        assert [e.type for e in seen_second] == expected
        assert [e.sequence for e in seen_first] == [e.sequence for e in seen_second]

        await first.aclose()
        assert bus.listener_count(run.id) == 1

        later = await store.append_log(run.id, "still streaming")
        bus.publish(run.id, RunEvent.log_appended(later))
        event = await anext(second)
        assert event.type == EventType.log_appended
        assert event.sequence == 2

        await second.aclose()
        assert bus.listener_count(run.id) == 0

    asyncio.run(main())
