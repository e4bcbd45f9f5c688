from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import sys
from typing import Any, Callable

from .observability import emit_worker_log, new_cycle_trace_id

REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_PATH = Path(os.getenv("WORKER_BACKEND_PATH", str(REPO_ROOT / "backend"))).resolve()
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from logic_deploy.core.errors import PipelineError  # noqa: E402
from logic_deploy.db.session import SessionLocal  # noqa: E402
from logic_deploy.services.approval_workflow import expire_timed_out_approvals  # noqa: E402
from logic_deploy.services.checkpoint_manager import discard_expired_checkpoints, fail_stale_rollbacks  # noqa: E402
from logic_deploy.services.deployment_orchestrator import start_due_maintenance_deployments  # noqa: E402
from logic_deploy.services.health_monitor import sweep_monitoring  # noqa: E402
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime  # noqa: E402


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepReport:
    started_at: datetime
    trace_id: str | None = None
    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def did_work(self) -> bool:
        return any(bool(value) for value in self.results.values())


class DeploymentSweeper:
    """Periodic housekeeping for the pipeline.

    Each job runs in its own session; one failing job never skips the others.
    """

    JOB_NAMES = (
        "expire_approvals",
        "start_due_maintenance",
        "monitor_health",
        "fail_stale_rollbacks",
        "discard_checkpoints",
    )

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] | None = None,
        runtime: TargetRuntime | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = logging.getLogger("worker.sweeper")
        self.session_factory = session_factory or SessionLocal
        self._runtime = runtime
        self.clock = clock
        enabled = os.getenv("WORKER_SWEEP_JOBS", ",".join(self.JOB_NAMES))
        self.enabled_jobs = [name.strip() for name in enabled.split(",") if name.strip() in self.JOB_NAMES]

    @property
    def runtime(self) -> TargetRuntime:
        if self._runtime is None:
            self._runtime = get_target_runtime()
        return self._runtime

    def _run_job(self, name: str, db, now: datetime) -> Any:
        if name == "expire_approvals":
            return expire_timed_out_approvals(db, now=now)
        if name == "start_due_maintenance":
            return start_due_maintenance_deployments(db, runtime=self.runtime, now=now)
        if name == "monitor_health":
            return sweep_monitoring(db, runtime=self.runtime, now=now)
        if name == "fail_stale_rollbacks":
            return fail_stale_rollbacks(db, now=now)
        if name == "discard_checkpoints":
            return discard_expired_checkpoints(db, now=now)
        raise ValueError(f"unknown sweep job '{name}'")

    def sweep_once(self, *, trace_id: str | None = None) -> SweepReport:
        trace_id = trace_id or new_cycle_trace_id()
        report = SweepReport(started_at=self.clock(), trace_id=trace_id)
        for name in self.enabled_jobs:
            db = self.session_factory()
            try:
                report.results[name] = self._run_job(name, db, self.clock())
            except PipelineError as exc:
                db.rollback()
                report.errors[name] = f"{exc.code}:{exc.reason}"
                emit_worker_log(
                    event="sweep_job_failed",
                    level=logging.ERROR,
                    trace_id=trace_id,
                    job=name,
                    code=exc.code,
                    detail=exc.reason,
                )
            except Exception as exc:
                db.rollback()
                report.errors[name] = str(exc)
                emit_worker_log(event="sweep_job_crashed", level=logging.ERROR, trace_id=trace_id, job=name, detail=str(exc))
                self.logger.exception("sweep_job_crashed job=%s", name)
            finally:
                db.close()

        if report.did_work or report.errors:
            emit_worker_log(event="sweep_completed", trace_id=trace_id, results=report.results, errors=report.errors)
        return report
