from __future__ import annotations

from contextlib import redirect_stdout
import io
import json
import unittest
from unittest.mock import patch

from pipeline_fakes import make_session_factory

from logic_deploy.db.base import Base
from logic_deploy.services import maintenance_jobs_cli


class MaintenanceJobsCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()

    def tearDown(self) -> None:
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _run(self, *argv: str) -> tuple[int, dict]:
        out = io.StringIO()
        with patch.object(maintenance_jobs_cli, "SessionLocal", self.session_factory), patch(
            "sys.argv", ["maintenance_jobs_cli", *argv]
        ), redirect_stdout(out):
            code = maintenance_jobs_cli.main()
        return code, json.loads(out.getvalue())

    def test_idle_jobs_report_empty_results(self) -> None:
        code, payload = self._run("expire-approvals")
        self.assertEqual(code, 0)
        self.assertEqual(payload["job"], "expire_approvals")
        self.assertEqual(payload["expired_releases"], [])

        code, payload = self._run("discard-checkpoints")
        self.assertEqual(code, 0)
        self.assertEqual(payload["discarded"], [])

    def test_monitor_sweep_exits_non_zero_when_a_rollback_failed(self) -> None:
        with patch.object(maintenance_jobs_cli, "sweep_monitoring", return_value={"dep-1": "rollback_failed"}):
            code, payload = self._run("monitor-sweep")

        self.assertEqual(code, 2)
        self.assertEqual(payload["outcomes"], {"dep-1": "rollback_failed"})

    def test_monitor_sweep_exits_non_zero_when_monitoring_is_unverified(self) -> None:
        with patch.object(maintenance_jobs_cli, "sweep_monitoring", return_value={"dep-1": "unverified"}):
            code, _ = self._run("monitor-sweep")

        self.assertEqual(code, 2)

    def test_stale_rollback_job_exits_non_zero_when_it_fails_a_rollback(self) -> None:
        code, payload = self._run("fail-stale-rollbacks")
        self.assertEqual(code, 0)
        self.assertEqual(payload["failed"], [])

        with patch.object(maintenance_jobs_cli, "fail_stale_rollbacks", return_value=["rb-1"]):
            code, payload = self._run("fail-stale-rollbacks")

        self.assertEqual(code, 2)
        self.assertEqual(payload["failed"], ["rb-1"])

    def test_job_failure_is_reported_as_json(self) -> None:
        with patch.object(maintenance_jobs_cli, "start_due_maintenance_deployments", side_effect=RuntimeError("boom")):
            code, payload = self._run("start-due-maintenance")

        self.assertEqual(code, 1)
        self.assertEqual(payload["error"], "maintenance_job_failed")
        self.assertEqual(payload["detail"], "boom")


if __name__ == "__main__":
    unittest.main()
