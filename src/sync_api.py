"""Local HTTP control surface for the sync pipeline.

Endpoints::

    GET  /health        liveness and the current job
    GET  /status        persisted run state with counters
    GET  /report        last run report
    GET  /jobs/current  the most recent job
    POST /sync          start a normal run
    POST /sync/dry-run  start a run that writes nothing but the report
    POST /sync/force    start a run ignoring processed/skipped bookkeeping
    POST /sync/cancel   cancel the queued or running job

Only one job may be queued or running at a time; further sync requests get
HTTP 429.  Runs happen in a child ``python src/auto_sync.py`` process watched
by a background thread.

Usage: ``python src/sync_api.py``
"""

from __future__ import annotations

import subprocess
import sys
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, jsonify, request

from config_utils import REPO_ROOT, load_config, repo_path
from log_utils import get_logger, install_excepthook
from serde_utils import load_json

log = get_logger().bind(script=__file__)

cfg = load_config()
HOST = getattr(cfg, "SYNC_API_HOST", "127.0.0.1")
PORT = getattr(cfg, "SYNC_API_PORT", 4747)
STATE_PATH = repo_path(getattr(cfg, "STATE_PATH", "data/sync-state.json"))
REPORT_PATH = repo_path(getattr(cfg, "REPORT_PATH", "data/last-sync-report.json"))
SYNC_SCRIPT = Path(__file__).resolve().parent / "auto_sync.py"

MODES = {
    "normal": [],
    "dry-run": ["--dry-run"],
    "force": ["--force-all"],
}
PATHS = [
    "GET /health",
    "GET /status",
    "GET /report",
    "GET /jobs/current",
    "POST /sync",
    "POST /sync/dry-run",
    "POST /sync/force",
    "POST /sync/cancel",
]
POLL_INTERVAL = 1.0
KILL_TIMEOUT = 10
OUTPUT_TAIL = 2000

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def run_subprocess(job: "SyncJob") -> int:
    """Run ``auto_sync.py`` for ``job`` and return its exit code.

    The child is terminated when the job's cancel event is set.
    """
    cmd = [sys.executable, str(SYNC_SCRIPT), *job.args]
    with tempfile.TemporaryFile("w+", encoding="utf-8") as out:
        proc = subprocess.Popen(cmd, cwd=REPO_ROOT, stdout=out, stderr=subprocess.STDOUT, text=True)
        job.pid = proc.pid
        log.info("Sync process started", job=job.id, pid=proc.pid, args=job.args)
        while proc.poll() is None:
            if job.cancel_event.wait(POLL_INTERVAL):
                log.warning("Terminating sync process", job=job.id, pid=proc.pid)
                proc.terminate()
                try:
                    proc.wait(timeout=KILL_TIMEOUT)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                break
        out.seek(0)
        job.output = out.read()[-OUTPUT_TAIL:]
    return proc.returncode


class SyncJob:
    """One sync run with an observable lifecycle.

    ``status`` moves from ``queued`` to ``running`` and ends in
    ``succeeded``, ``failed`` or ``cancelled``.
    """

    def __init__(self, mode: str, runner=run_subprocess):
        self.id = uuid.uuid4().hex[:12]
        self.mode = mode
        self.args = list(MODES[mode])
        self.status = QUEUED
        self.created_at = _now()
        self.started_at: str | None = None
        self.finished_at: str | None = None
        self.returncode: int | None = None
        self.error: str | None = None
        self.output = ""
        self.pid: int | None = None
        self.cancel_event = threading.Event()
        self._runner = runner
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self.status in (QUEUED, RUNNING)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode,
            "args": self.args,
            "status": self.status,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "returncode": self.returncode,
            "error": self.error,
            "pid": self.pid,
            "output": self.output,
        }

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name=f"sync-{self.id}", daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def cancel(self) -> None:
        with self._lock:
            self.cancel_event.set()
            if self.status == QUEUED:
                self._finish(CANCELLED)

    def _finish(self, status: str) -> None:
        self.status = status
        self.finished_at = _now()
        log.info("Sync job finished", job=self.id, status=status, returncode=self.returncode)

    def run(self) -> None:
        with self._lock:
            # cancel() may have ended the job before the thread got here
            if self.status != QUEUED:
                return
            if self.cancel_event.is_set():
                self._finish(CANCELLED)
                return
            self.status = RUNNING
            self.started_at = _now()
        log.info("Sync job running", job=self.id, mode=self.mode)
        try:
            code = self._runner(self)
        except Exception as exc:
            log.exception("Sync job crashed", job=self.id)
            self.error = str(exc)
            self._finish(FAILED)
            return
        self.returncode = code
        if self.cancel_event.is_set():
            self._finish(CANCELLED)
        elif code == 0:
            self._finish(SUCCEEDED)
        else:
            self.error = f"auto_sync exited with code {code}"
            self._finish(FAILED)


class JobBusy(RuntimeError):
    """A job is already queued or running."""

    def __init__(self, job: SyncJob):
        super().__init__("Sync already in progress")
        self.job = job


class JobManager:
    """Single-flight holder of the current job."""

    def __init__(self, runner=run_subprocess):
        self._runner = runner
        self._lock = threading.Lock()
        self.current: SyncJob | None = None

    @property
    def busy(self) -> bool:
        return self.current is not None and self.current.active

    def submit(self, mode: str) -> SyncJob:
        with self._lock:
            if self.busy:
                raise JobBusy(self.current)
            job = SyncJob(mode, self._runner)
            self.current = job
            log.info("Sync job queued", job=job.id, mode=mode)
            job.start()
            return job

    def cancel(self) -> SyncJob | None:
        with self._lock:
            job = self.current
            if job is None or not job.active:
                return None
            log.info("Cancelling sync job", job=job.id, status=job.status)
            job.cancel()
            return job


def create_app(manager: JobManager | None = None) -> Flask:
    app = Flask(__name__)
    jobs = manager or JobManager()
    app.config["JOBS"] = jobs

    @app.before_request
    def _log_request():
        log.info("Request", method=request.method, path=request.path)

    @app.errorhandler(404)
    def _not_found(_exc):
        return jsonify({"error": "Not found", "paths": PATHS}), 404

    @app.route("/health")
    def health():
        job = jobs.current
        return jsonify(
            {
                "status": "ok",
                "isSyncing": jobs.busy,
                "job": job.to_dict() if job else None,
                "timestamp": _now(),
            }
        )

    @app.route("/status")
    def status():
        state = load_json(STATE_PATH)
        if not isinstance(state, dict):
            state = {"error": "sync-state.json not found"}
        return jsonify(
            {
                **state,
                "isSyncing": jobs.busy,
                "processedCount": len(state.get("processedMsgIds") or []),
                "skippedCount": len(state.get("skippedMsgIds") or []),
            }
        )

    @app.route("/report")
    def report():
        data = load_json(REPORT_PATH)
        if data is None:
            return jsonify({"error": "No sync report yet"})
        return jsonify(data)

    @app.route("/jobs/current")
    def current_job():
        job = jobs.current
        if job is None:
            return jsonify({"error": "No job yet"}), 404
        return jsonify(job.to_dict())

    def _start(mode: str):
        try:
            job = jobs.submit(mode)
        except JobBusy as exc:
            return jsonify({"error": str(exc), "job": exc.job.to_dict()}), 429
        return jsonify(job.to_dict()), 202

    @app.route("/sync", methods=["POST"])
    def sync():
        return _start("normal")

    @app.route("/sync/dry-run", methods=["POST"])
    def sync_dry_run():
        return _start("dry-run")

    @app.route("/sync/force", methods=["POST"])
    def sync_force():
        return _start("force")

    @app.route("/sync/cancel", methods=["POST"])
    def sync_cancel():
        job = jobs.cancel()
        if job is None:
            return jsonify({"error": "No sync in progress"}), 409
        return jsonify(job.to_dict()), 202

    return app


def main() -> None:
    install_excepthook(log)
    app = create_app()
    log.info("Sync API listening", host=HOST, port=PORT)
    app.run(host=HOST, port=PORT, threaded=True)


if __name__ == "__main__":
    main()
