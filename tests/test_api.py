"""HTTP, WebSocket and SSE surface tests against a real app instance."""

import json
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from testdash.api.main import create_app
from testdash.api.routers.projects import _resolve_project_dir
from testdash.config import MonitorSettings


@pytest.fixture
def client(tmp_path):
    settings = MonitorSettings(projects_root=tmp_path, cancel_grace=1.0, history_limit=20)
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _create(client, code, *, wait=True, subject="proj1", **extra):
    payload = {"subjectName": subject, "command": sys.executable, "args": ["-c", code], **extra}
    return client.post("/api/runs", params={"wait": wait}, json=payload)


def _frames(body):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestRunsRoutes:
    def test_create_and_wait_returns_completed_run(self, client):
        response = _create(client, "print('hello')", context="staging")

        assert response.status_code == 200
        body = response.json()
        run = body["run"]
        assert body["runId"] == run["id"]
        assert run["status"] == "completed"
        assert run["exitCode"] == 0
        assert run["context"] == "staging"
        assert [e["data"].strip() for e in run["stdout"]] == ["hello"]
        assert "process" not in run

    def test_create_without_wait_is_accepted(self, client):
        response = _create(client, "pass", wait=False)

        assert response.status_code == 202
        assert response.json()["run"]["status"] == "running"

    def test_get_run_and_unknown_run(self, client):
        run_id = _create(client, "import sys; sys.exit(4)").json()["runId"]

        found = client.get(f"/api/runs/{run_id}")
        missing = client.get("/api/runs/run_missing")

        assert found.status_code == 200
        assert found.json()["run"]["status"] == "failed"
        assert found.json()["run"]["exitCode"] == 4
        assert missing.status_code == 404

    def test_cancel_running_then_conflict(self, client):
        run_id = _create(client, "import time; time.sleep(30)", wait=False).json()["runId"]

        first = client.post(f"/api/runs/{run_id}/cancel")
        second = client.post(f"/api/runs/{run_id}/cancel")

        assert first.status_code == 200
        assert first.json()["run"]["status"] == "cancelled"
        assert first.json()["run"]["exitCode"] == -1
        assert second.status_code == 409
        assert client.post("/api/runs/run_missing/cancel").status_code == 404

    def test_list_search_active_and_history(self, client):
        failed = _create(client, "import sys; sys.exit(1)", subject="alpha").json()["runId"]
        _create(client, "pass", subject="beta")

        listed = client.get("/api/runs", params={"status": "failed"}).json()
        searched = client.get("/api/runs/search", params={"q": "ALPHA"}).json()
        history = client.get("/api/runs/history", params={"limit": 1}).json()
        active = client.get("/api/runs/active").json()

        assert [r["id"] for r in listed["runs"]] == [failed]
        assert [r["id"] for r in searched["runs"]] == [failed]
        assert history["total"] == 1
        assert history["runs"][0]["subjectName"] == "beta"
        assert active == {"runs": [], "total": 0}

    def test_invalid_status_filter_is_rejected(self, client):
        response = client.get("/api/runs/search", params={"status": "exploded"})

        assert response.status_code == 400

    def test_clear_runs(self, client):
        _create(client, "pass")
        _create(client, "pass")

        kept = client.delete("/api/runs", params={"olderThan": "2000-01-01T00:00:00+00:00"}).json()
        future = (datetime.now(timezone.utc) + timedelta(minutes=1)).isoformat()
        cleared = client.delete("/api/runs", params={"olderThan": future}).json()

        assert kept["clearedCount"] == 0
        assert cleared["clearedCount"] == 2
        assert client.get("/api/runs").json()["total"] == 0


class TestHealth:
    def test_healthz_reports_counts(self, client):
        _create(client, "pass")

        body = client.get("/healthz").json()

        assert body["status"] == "ok"
        assert body["service"] == "testdash"
        assert body["runCount"] == 1
        assert body["activeRuns"] == 0


class TestEventStreams:
    def test_websocket_receives_snapshot_then_run_events(self, client):
        with client.websocket_connect("/ws/runs") as websocket:
            snapshot = websocket.receive_json()
            assert snapshot["type"] == "active_runs_snapshot"
            assert snapshot["data"] == []

            run_id = _create(client, "print('hi', flush=True)").json()["runId"]

            received = []
            while not received or received[-1]["type"] != "run_completed":
                received.append(websocket.receive_json())

        types = [event["type"] for event in received]
        assert types[0] == "run_started"
        assert "output_appended" in types
        assert types.count("run_completed") == 1
        assert all(event["runId"] == run_id for event in received)

    def test_stream_of_finished_run_is_a_single_snapshot(self, client):
        run_id = _create(client, "print('done')").json()["runId"]

        response = client.get(f"/api/runs/{run_id}/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = _frames(response.text)
        assert [f["type"] for f in frames] == ["run_snapshot"]
        assert frames[0]["data"]["status"] == "completed"

    def test_stream_of_running_run_ends_with_completion(self, client):
        code = "import time; time.sleep(1); print('late', flush=True)"
        run_id = _create(client, code, wait=False).json()["runId"]

        frames = _frames(client.get(f"/api/runs/{run_id}/stream").text)

        assert frames[0]["type"] == "run_snapshot"
        assert frames[-1]["type"] == "run_completed"
        assert any(f["type"] == "output_appended" and "late" in f["data"]["data"] for f in frames)

    def test_stream_of_unknown_run_is_404(self, client):
        assert client.get("/api/runs/run_missing/stream").status_code == 404


class TestProjectRuns:
    def test_unknown_project_is_404(self, client):
        response = client.post(
            "/api/projects/nope/run-tests",
            json={"selectedTestFiles": ["a.spec.ts"], "websiteUrl": "http://shop.local"},
        )

        assert response.status_code == 404

    def test_invalid_request_is_400(self, client, tmp_path):
        (tmp_path / "shop").mkdir()

        response = client.post("/api/projects/shop/run-tests", json={"websiteUrl": "http://shop.local"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Please select at least one test file to run"

    def test_project_name_cannot_escape_root(self, tmp_path):
        (tmp_path / "root").mkdir()

        with pytest.raises(HTTPException) as excinfo:
            _resolve_project_dir(tmp_path / "root", "..")

        assert excinfo.value.status_code == 400
