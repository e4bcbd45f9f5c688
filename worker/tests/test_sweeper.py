from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
from pathlib import Path
import sys
import unittest
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

WORKSPACE_ROOT = Path(__file__).resolve().parents[2]
WORKER_ROOT = WORKSPACE_ROOT / "worker"

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

if str(WORKER_ROOT) not in sys.path:
    sys.path.insert(0, str(WORKER_ROOT))

from worker import sweeper as sweeper_module  # noqa: E402
from worker.sweeper import DeploymentSweeper  # noqa: E402

from logic_deploy.core.errors import ExternalServiceError  # noqa: E402
from logic_deploy.db.base import Base  # noqa: E402
from logic_deploy.models import Checkpoint, Deployment, Release, Rollback  # noqa: E402
from logic_deploy.services.approval_workflow import request_approvals, round_state  # noqa: E402


class StaticRuntime:
    """Runtime stand-in for sweeps that never reach a target."""

    def health(self, target: str):
        raise AssertionError(f"unexpected health probe for {target}")


class DeploymentSweeperTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.now = datetime(2026, 10, 12, 8, 0, tzinfo=timezone.utc)

    def tearDown(self) -> None:
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _sweeper(self, now: datetime) -> DeploymentSweeper:
        return DeploymentSweeper(session_factory=self.session_factory, runtime=StaticRuntime(), clock=lambda: now)

    def _release_with_pending_round(self) -> str:
        with self.session_factory() as db:
            release = Release(project_id="line-1", version_id="v1", snapshot_id="snap-1", metadata_json={})
            db.add(release)
            db.commit()
            request_approvals(db, release.id, now=self.now)
            return release.id

    def test_idle_sweep_does_no_work(self) -> None:
        report = self._sweeper(self.now).sweep_once()

        self.assertFalse(report.did_work)
        self.assertEqual(report.errors, {})
        self.assertEqual(set(report.results), set(DeploymentSweeper.JOB_NAMES))

    def test_sweep_expires_timed_out_approval_rounds(self) -> None:
        release_id = self._release_with_pending_round()

        report = self._sweeper(self.now + timedelta(days=2)).sweep_once()

        self.assertTrue(report.did_work)
        self.assertEqual(report.results["expire_approvals"], [release_id])
        with self.session_factory() as db:
            self.assertEqual(round_state(db, release_id), "expired")

    def test_sweep_fails_rollbacks_stuck_in_progress(self) -> None:
        with self.session_factory() as db:
            release = Release(project_id="line-1", version_id="v1", snapshot_id="snap-1", metadata_json={})
            db.add(release)
            db.flush()
            deployment = Deployment(release_id=release.id, strategy="atomic", status="completed", targets=["plc-a"])
            db.add(deployment)
            db.flush()
            checkpoint = Checkpoint(
                deployment_id=deployment.id,
                captured_state={"targets": {"plc-a": {"active_snapshot_id": "snap-0"}}},
                captured_at=self.now,
            )
            db.add(checkpoint)
            db.flush()
            row = Rollback(
                deployment_id=deployment.id,
                checkpoint_id=checkpoint.id,
                initiated_by="system:monitor",
                reason="health threshold breached",
                status="in_progress",
                created_at=self.now,
            )
            db.add(row)
            db.commit()
            rollback_id = row.id

        self.assertEqual(self._sweeper(self.now + timedelta(minutes=1)).sweep_once().results["fail_stale_rollbacks"], [])
        report = self._sweeper(self.now + timedelta(hours=1)).sweep_once()

        self.assertEqual(report.results["fail_stale_rollbacks"], [rollback_id])
        with self.session_factory() as db:
            row = db.query(Rollback).filter(Rollback.id == rollback_id).one()
            self.assertEqual(row.status, "failed")
            self.assertTrue(row.detail["manual_intervention_required"])

    def test_failing_job_does_not_skip_the_others(self) -> None:
        release_id = self._release_with_pending_round()

        with patch.object(sweeper_module, "sweep_monitoring", side_effect=RuntimeError("monitor crashed")), patch.object(
            sweeper_module,
            "discard_expired_checkpoints",
            side_effect=ExternalServiceError("runtime registry down", service="target_runtime"),
        ):
            report = self._sweeper(self.now + timedelta(days=2)).sweep_once()

        self.assertEqual(report.results["expire_approvals"], [release_id])
        self.assertEqual(report.errors["monitor_health"], "monitor crashed")
        self.assertEqual(report.errors["discard_checkpoints"], "EXTERNAL_SERVICE_ERROR:runtime registry down")

    def test_enabled_jobs_come_from_environment(self) -> None:
        with patch.dict(os.environ, {"WORKER_SWEEP_JOBS": "expire_approvals, unknown ,monitor_health"}):
            sweeper = self._sweeper(self.now)

        self.assertEqual(sweeper.enabled_jobs, ["expire_approvals", "monitor_health"])


if __name__ == "__main__":
    unittest.main()
