from __future__ import annotations

import time
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.testclient import TestClient

from scrapeprep.cli.server import create_app
from scrapeprep.config.schema import AppConfig, StoreSettings, StreamSettings
from scrapeprep.models.errors import StoreFailure
from tests.fakes import BASE_URL, FakeCollaborator, FakeExecutor, make_collaborators

PROMPT = "Collect product names and prices from shop.example.com"


def _app(tmp_path: Path, **collaborators: FakeCollaborator) -> FastAPI:
    config = AppConfig(
        store=StoreSettings(url=f"sqlite:///{tmp_path / 'runs.db'}"),
        stream=StreamSettings(heartbeat_seconds=0.05),
    )
    return create_app(
        config=config,
        collaborators=make_collaborators(**collaborators),
        executor=FakeExecutor(),
    )


def _wait_for(client: TestClient, run_id: str, done: Any) -> dict[str, Any]:
    deadline = time.monotonic() + 10
    while True:
        body = client.get(f"/api/runs/{run_id}").json()
        if done(body) or time.monotonic() > deadline:
            return body
        time.sleep(0.05)


def test_create_run_then_follow_it_to_completion(tmp_path: Path) -> None:
    with TestClient(_app(tmp_path)) as client:
        resp = client.post("/api/runs", json={"prompt": PROMPT})
        assert resp.status_code == 202
        created = resp.json()
        run_id = created["run"]["id"]
        assert created["run"]["status"] == "queued"
        assert [s["identifier"] for s in created["steps"]] == [
            "plan.summary",
            "plan.recon",
            "plan.pagination",
            "plan.extraction",
            "plan.job",
        ]
        assert all(s["status"] == "pending" for s in created["steps"])

        snapshot = _wait_for(
            client,
            run_id,
            lambda b: b["status"] == "completed"
            and b["executions"]
            and b["executions"][0]["execution"]["status"] == "completed",
        )
        assert snapshot["status"] == "completed"
        assert snapshot["phase"] == "execute"
        assert snapshot["planId"] == snapshot["plan"]["id"]
        assert snapshot["plan"]["startingUrl"] == BASE_URL
        assert snapshot["plan"]["schema"] == {"fields": [{"name": "name"}, {"name": "price"}]}
        assert all(s["status"] == "success" for s in snapshot["steps"])
        assert snapshot["executions"][0]["execution"]["result"]["url"] == BASE_URL

        listing = client.get("/api/runs", params={"limit": 5}).json()
        assert listing["runs"][0]["id"] == run_id
        assert listing["runs"][0]["planStatus"] == "completed"
        assert listing["runs"][0]["site"] == "shop.example.com"
        assert listing["runs"][0]["startUrl"] == BASE_URL
        assert listing["runs"][0]["objective"] == "Collect product names and prices"

        total = len(snapshot["logs"])
        logs = client.get(f"/api/runs/{run_id}/logs", params={"after": 2}).json()["logs"]
        assert [log["sequence"] for log in logs] == list(range(3, total + 1))


def test_failed_stage_is_visible_in_snapshot(tmp_path: Path) -> None:
    app = _app(tmp_path, recon=FakeCollaborator(error=RuntimeError("site unreachable")))
    with TestClient(app) as client:
        run_id = client.post("/api/runs", json={"prompt": PROMPT}).json()["run"]["id"]
        snapshot = _wait_for(client, run_id, lambda b: b["status"] == "failed")

        assert snapshot["status"] == "failed"
        assert snapshot["error"] == "site unreachable"
        assert snapshot["plan"]["status"] == "failed"
        assert snapshot["executions"] == []
        statuses = {s["identifier"]: s["status"] for s in snapshot["steps"]}
        assert statuses == {
            "plan.summary": "success",
            "plan.recon": "error",
            "plan.pagination": "error",
            "plan.extraction": "error",
            "plan.job": "error",
        }


def test_invalid_requests(tmp_path: Path) -> None:
    with TestClient(_app(tmp_path)) as client:
        resp = client.post("/api/runs", json={"prompt": "   "})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Prompt is required"}
        assert client.get("/api/runs").json() == {"runs": []}

        resp = client.get("/api/runs/missing")
        assert resp.status_code == 404
        assert resp.json() == {"error": "run missing not found"}

        assert client.get("/api/runs/missing/logs").status_code == 404
        assert client.get("/api/runs/missing/stream").status_code == 404

        run_id = client.post("/api/runs", json={"prompt": PROMPT}).json()["run"]["id"]
        resp = client.get(f"/api/runs/{run_id}/logs", params={"after": -1})
        assert resp.status_code == 400
        assert "after" in resp.json()["error"]


def test_store_failure_maps_to_503(tmp_path: Path) -> None:
    app = _app(tmp_path)

    class _BrokenService:
        async def list_runs(self, limit: int = 50) -> list[Any]:
            raise StoreFailure("database is locked")

    from scrapeprep.api import deps

    app.dependency_overrides[deps.get_preparation_service] = lambda: _BrokenService()
    client = TestClient(app)

    resp = client.get("/api/runs")
    assert resp.status_code == 503
    assert resp.json() == {"error": "run store unavailable"}
