from __future__ import annotations

import contextlib
import json
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from scrapeprep.agent.run_preparation import RunPreparationService
from scrapeprep.api.deps import get_config, get_preparation_service, get_subscription_gateway
from scrapeprep.api.subscriptions import SubscriptionGateway
from scrapeprep.config.schema import AppConfig
from scrapeprep.models.errors import InvalidInput
from scrapeprep.models.events import RunEvent
from scrapeprep.models.run import RunListItem

router = APIRouter(prefix="/api")


class CreateRunBody(BaseModel):
    prompt: str | None = None


@router.post("/runs", status_code=202)
async def create_run(
    body: CreateRunBody,
    service: RunPreparationService = Depends(get_preparation_service),
) -> JSONResponse:
    """Create a run and start preparing it in the background.

    Args:
        body: Run request holding the prompt.

    Returns:
        The queued run and its pending steps.
    """

    result = await service.create_run(body.prompt or "")
    return JSONResponse(
        status_code=202,
        content={
            "run": result.run.model_dump(mode="json", by_alias=True),
            "steps": [step.model_dump(mode="json", by_alias=True) for step in result.steps],
        },
    )


@router.get("/runs")
async def list_runs(
    limit: int = Query(default=50),
    service: RunPreparationService = Depends(get_preparation_service),
) -> dict[str, Any]:
    """List the most recent runs.

    Args:
        limit: Maximum rows, clamped to 1..200.

    Returns:
        Runs with a short summary of their plan.
    """

    items = await service.list_runs(limit)
    return {"runs": [_list_row(item) for item in items]}


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    service: RunPreparationService = Depends(get_preparation_service),
) -> dict[str, Any]:
    """Get a run with its plan, steps, logs and executions."""

    snapshot = await service.get_snapshot(run_id)
    return snapshot.model_dump(mode="json", by_alias=True)


@router.get("/runs/{run_id}/logs")
async def get_logs(
    run_id: str,
    after: int = Query(default=0),
    service: RunPreparationService = Depends(get_preparation_service),
) -> dict[str, Any]:
    """Get run logs with a sequence greater than ``after``.

    Args:
        run_id: Run identifier.
        after: Last sequence the caller already has.

    Returns:
        Logs in sequence order.
    """

    if after < 0:
        raise InvalidInput("after must be a non-negative integer")
    logs = await service.get_logs_after(run_id, after)
    return {"logs": [log.model_dump(mode="json", by_alias=True) for log in logs]}


@router.get("/runs/{run_id}/stream")
async def stream_run(
    run_id: str,
    gateway: SubscriptionGateway = Depends(get_subscription_gateway),
    config: AppConfig = Depends(get_config),
) -> StreamingResponse:
    """Stream a run snapshot followed by live run events as server-sent events."""

    events = gateway.stream(run_id, heartbeat_seconds=config.stream.heartbeat_seconds)
    # Reading the snapshot here lets an unknown run fail with 404 instead of an empty stream.
    first = await anext(events)
    return StreamingResponse(
        sse_frames(first, events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


async def sse_frames(
    first: RunEvent | None,
    events: AsyncIterator[RunEvent | None],
) -> AsyncIterator[str]:
    async with contextlib.aclosing(events):
        yield format_sse(first)
        async for event in events:
            yield format_sse(event)


def format_sse(event: RunEvent | None) -> str:
    if event is None:
        return ":heartbeat\n\n"
    lines = []
    if event.sequence is not None:
        lines.append(f"id: {event.sequence}")
    lines.append(f"event: {event.type.value}")
    lines.append(f"data: {json.dumps(event.payload(), separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


def _list_row(item: RunListItem) -> dict[str, Any]:
    row = item.run.model_dump(mode="json", by_alias=True)
    plan = item.plan
    row["planStatus"] = plan.status.value if plan else None
    row["site"] = plan.site if plan else None
    row["startUrl"] = plan.starting_url if plan else None
    row["objective"] = plan.objective if plan else None
    return row
