from __future__ import annotations

from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
import json
import logging
import os
from pathlib import Path
import signal
from threading import Event, Lock, Thread
import time

from .observability import emit_worker_log, new_cycle_trace_id
from .sweeper import DeploymentSweeper, SweepReport


class SweepStatus:
    """Last sweep outcome, shared between the loop and the health endpoint."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.cycles = 0
        self.last_started_at: datetime | None = None
        self.last_trace_id: str | None = None
        self.last_errors: dict[str, str] = {}

    def record(self, report: SweepReport) -> None:
        with self._lock:
            self.cycles += 1
            self.last_started_at = report.started_at
            self.last_trace_id = report.trace_id
            self.last_errors = dict(report.errors)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "status": "degraded" if self.last_errors else "ok",
                "cycles": self.cycles,
                "last_sweep_at": self.last_started_at.isoformat() if self.last_started_at else None,
                "last_trace_id": self.last_trace_id,
                "failed_jobs": sorted(self.last_errors),
            }


def build_health_handler(status: SweepStatus) -> type[BaseHTTPRequestHandler]:
    class HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/health":
                self.send_response(404)
                self.end_headers()
                return

            body = json.dumps(status.snapshot(), sort_keys=True).encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args):
            return

    return HealthHandler


def load_worker_env_defaults(env_path: Path | None = None) -> None:
    """Apply KEY=VALUE lines from worker/.env without overriding the process environment."""
    env_path = env_path or Path(__file__).resolve().parents[1] / ".env"
    if not env_path.is_file():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if sep and key.strip():
            os.environ.setdefault(key.strip(), value.strip())


def start_health_server(status: SweepStatus) -> HTTPServer:
    host = os.getenv("WORKER_HEALTH_HOST", "0.0.0.0")
    port = int(os.getenv("WORKER_HEALTH_PORT", "8090"))
    server = HTTPServer((host, port), build_health_handler(status))
    Thread(target=server.serve_forever, daemon=True).start()
    emit_worker_log(event="health_server_started", host=host, port=port)
    return server


def run_sweep_loop(sweeper: DeploymentSweeper, status: SweepStatus, stop: Event, poll_interval: float) -> None:
    while not stop.is_set():
        trace_id = new_cycle_trace_id()
        try:
            report = sweeper.sweep_once(trace_id=trace_id)
            status.record(report)
            if not report.did_work and not report.errors:
                emit_worker_log(event="worker_heartbeat", trace_id=trace_id)
        except Exception:
            emit_worker_log(event="worker_cycle_failed", level=logging.ERROR, trace_id=trace_id)
            logging.exception("worker_cycle_failed")
        stop.wait(poll_interval)


def main() -> None:
    load_worker_env_defaults()
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    poll_interval = float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "15"))
    sweeper = DeploymentSweeper()
    status = SweepStatus()
    stop = Event()

    def _request_stop(signum, _frame) -> None:
        emit_worker_log(event="worker_stopping", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    server = start_health_server(status)
    emit_worker_log(event="worker_started", poll_interval_seconds=poll_interval, jobs=sweeper.enabled_jobs)
    started = time.monotonic()
    try:
        run_sweep_loop(sweeper, status, stop, poll_interval)
    finally:
        server.shutdown()
        emit_worker_log(event="worker_stopped", uptime_seconds=round(time.monotonic() - started, 1), cycles=status.cycles)


if __name__ == "__main__":
    main()
