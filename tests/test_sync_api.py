import json
import threading

import pytest

import channel_test_utils  # noqa: F401

import sync_api


class _BlockingRunner:
    """Runner that holds the job until released or cancelled."""

    def __init__(self, code=0):
        self.code = code
        self.release = threading.Event()
        self.started = threading.Event()
        self.args = []

    def __call__(self, job):
        self.args.append(job.args)
        self.started.set()
        while not self.release.wait(0.01):
            if job.cancel_event.is_set():
                return -15
        return self.code


@pytest.fixture
def runner():
    r = _BlockingRunner()
    yield r
    r.release.set()


@pytest.fixture
def client(runner, tmp_path, monkeypatch):
    monkeypatch.setattr(sync_api, "STATE_PATH", tmp_path / "state.json")
    monkeypatch.setattr(sync_api, "REPORT_PATH", tmp_path / "report.json")
    app = sync_api.create_app(sync_api.JobManager(runner=runner))
    app.config["TESTING"] = True
    return app.test_client()


def _jobs(client):
    return client.application.config["JOBS"]


def test_health_and_missing_files(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["isSyncing"] is False
    assert client.get("/report").get_json() == {"error": "No sync report yet"}
    status = client.get("/status").get_json()
    assert status["processedCount"] == 0
    assert client.get("/jobs/current").status_code == 404


def test_status_and_report(client, tmp_path):
    (tmp_path / "state.json").write_text(json.dumps({"processedMsgIds": [1, 2], "skippedMsgIds": [3], "lastMsgId": 3}))
    (tmp_path / "report.json").write_text(json.dumps({"newPosts": [], "errors": []}))
    status = client.get("/status").get_json()
    assert status["processedCount"] == 2
    assert status["skippedCount"] == 1
    assert status["lastMsgId"] == 3
    assert client.get("/report").get_json() == {"newPosts": [], "errors": []}


def test_single_flight_and_success(client, runner):
    resp = client.post("/sync/dry-run")
    assert resp.status_code == 202
    job = resp.get_json()
    assert job["mode"] == "dry-run"
    assert job["args"] == ["--dry-run"]
    assert runner.started.wait(2)

    busy = client.post("/sync")
    assert busy.status_code == 429
    assert busy.get_json()["job"]["id"] == job["id"]
    assert client.get("/health").get_json()["isSyncing"] is True

    runner.release.set()
    _jobs(client).current.join(2)
    current = client.get("/jobs/current").get_json()
    assert current["status"] == "succeeded"
    assert current["returncode"] == 0

    assert client.post("/sync/force").status_code == 202
    assert runner.started.wait(2)
    _jobs(client).current.join(2)
    assert runner.args == [["--dry-run"], ["--force-all"]]


def test_cancel_running_job(client, runner):
    assert client.post("/sync/cancel").status_code == 409
    client.post("/sync")
    assert runner.started.wait(2)
    resp = client.post("/sync/cancel")
    assert resp.status_code == 202
    _jobs(client).current.join(2)
    assert client.get("/jobs/current").get_json()["status"] == "cancelled"
    # a new run is accepted once the old one is gone
    assert client.post("/sync").status_code == 202


def test_job_cancelled_while_queued_never_runs():
    calls = []
    job = sync_api.SyncJob("normal", runner=lambda j: calls.append(j) or 0)
    job.cancel()
    finished = job.finished_at
    job.run()
    assert calls == []
    assert job.status == "cancelled"
    assert job.started_at is None
    assert job.finished_at == finished


def test_failed_job(tmp_path, monkeypatch):
    def crash(job):
        return 1

    app = sync_api.create_app(sync_api.JobManager(runner=crash))
    client = app.test_client()
    client.post("/sync")
    _jobs(client).current.join(2)
    job = client.get("/jobs/current").get_json()
    assert job["status"] == "failed"
    assert "code 1" in job["error"]


def test_unknown_path(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert "POST /sync" in resp.get_json()["paths"]
