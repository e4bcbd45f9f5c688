from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import tempfile
import threading
from typing import Any, Callable
import unittest

from pipeline_fakes import (
    MAIN_PROGRAM,
    FakeTagDatabase,
    FakeTargetRuntime,
    FakeVersioningCenter,
    add_release,
    add_users,
    make_snapshot,
    run_checks,
)
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from logic_deploy.core.errors import DeploymentConflict, InvalidTransition, QuorumNotMet
from logic_deploy.db.base import Base
from logic_deploy.models import DeployApproval, Deployment, DeploymentEvent
from logic_deploy.services.approval_workflow import current_round, submit_approval
from logic_deploy.services.deployment_orchestrator import create_deployment, start_deployment


class ReleaseConcurrencyTests(unittest.TestCase):
    """Parallel callers, one session and one connection per thread."""

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        path = Path(self.tmp.name) / "pipeline.db"
        self.engine = create_engine(
            f"sqlite+pysqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.db = self.session_factory()
        self.users = add_users(self.db)
        self.versioning = FakeVersioningCenter([make_snapshot("snap-1", {"main.st": MAIN_PROGRAM})])
        self.runtime = FakeTargetRuntime()
        self.release = add_release(self.db)
        run_checks(self.db, self.release.id, versioning=self.versioning, tags=FakeTagDatabase(), runtime=self.runtime)
        self.release_id = self.release.id
        self.user_ids = {key: user.id for key, user in self.users.items()}

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()
        self.tmp.cleanup()

    def _in_parallel(self, *calls: Callable[[Any], Any]) -> list[Any]:
        """Run each call on its own thread and session; exceptions are returned, not raised."""
        barrier = threading.Barrier(len(calls))

        def run(call: Callable[[Any], Any]) -> Any:
            db = self.session_factory()
            try:
                barrier.wait(timeout=10)
                return call(db)
            except Exception as exc:
                return exc
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=len(calls)) as executor:
            futures = [executor.submit(run, call) for call in calls]
            return [future.result(timeout=60) for future in futures]

    def _create(self) -> str:
        return create_deployment(self.db, self.release_id, strategy="atomic", actor_id=self.user_ids["engineer"]).id

    def _start(self, deployment_id: str) -> Callable[[Any], Any]:
        def call(db) -> str:
            return start_deployment(db, deployment_id, runtime=self.runtime, versioning=self.versioning).status

        return call

    def _transitions_to(self, deployment_id: str, status: str) -> int:
        self.db.expire_all()
        return (
            self.db.query(DeploymentEvent)
            .filter(
                DeploymentEvent.deployment_id == deployment_id,
                DeploymentEvent.event_type == "status_changed",
                DeploymentEvent.status_to == status,
            )
            .count()
        )

    def test_parallel_creates_leave_one_active_deployment(self) -> None:
        def create(db) -> str:
            return create_deployment(db, self.release_id, strategy="atomic", actor_id=self.user_ids["engineer"]).id

        results = self._in_parallel(create, create)

        created = [item for item in results if isinstance(item, str)]
        conflicts = [item for item in results if isinstance(item, DeploymentConflict)]
        self.assertEqual(len(created), 1, results)
        self.assertEqual(len(conflicts), 1, results)
        self.db.expire_all()
        rows = self.db.query(Deployment).filter(Deployment.release_id == self.release_id).all()
        self.assertEqual([row.id for row in rows], created)
        self.assertEqual(rows[0].active_release_id, self.release_id)

    def test_parallel_starts_request_a_single_approval_round(self) -> None:
        deployment_id = self._create()

        results = self._in_parallel(self._start(deployment_id), self._start(deployment_id))

        self.assertTrue(all(isinstance(item, QuorumNotMet) for item in results), results)
        self.assertEqual(self._transitions_to(deployment_id, "staging"), 1)
        rows = self.db.query(DeployApproval).filter(DeployApproval.release_id == self.release_id).all()
        self.assertEqual({row.round_number for row in rows}, {1})
        self.assertEqual(sorted(row.approver_role for row in rows), ["engineer", "safety_officer"])

    def test_parallel_final_approvals_reach_ready_once(self) -> None:
        deployment_id = self._create()
        with self.assertRaises(QuorumNotMet):
            start_deployment(self.db, deployment_id, runtime=self.runtime, versioning=self.versioning)
        slots = {row.approver_role: row.id for row in current_round(self.db, self.release_id)}

        def approve(role: str, user_key: str) -> Callable[[Any], Any]:
            def call(db) -> str:
                return submit_approval(db, slots[role], approver_id=self.user_ids[user_key], decision="approved").status

            return call

        results = self._in_parallel(approve("engineer", "engineer"), approve("safety_officer", "safety"))

        self.assertEqual(results, ["approved", "approved"])
        self.assertEqual(self._transitions_to(deployment_id, "ready"), 1)
        self.assertEqual(self.db.get(Deployment, deployment_id).status, "ready")

    def test_parallel_starts_of_a_ready_deployment_roll_out_once(self) -> None:
        deployment_id = self._create()
        with self.assertRaises(QuorumNotMet):
            start_deployment(self.db, deployment_id, runtime=self.runtime, versioning=self.versioning)
        for row in current_round(self.db, self.release_id):
            user_key = "engineer" if row.approver_role == "engineer" else "safety"
            submit_approval(self.db, row.id, approver_id=self.user_ids[user_key], decision="approved")

        results = self._in_parallel(self._start(deployment_id), self._start(deployment_id))

        for item in results:
            if isinstance(item, Exception):
                self.assertIsInstance(item, InvalidTransition)
            else:
                self.assertIn(item, {"deploying", "completed"})
        self.assertEqual(self._transitions_to(deployment_id, "deploying"), 1)
        self.assertEqual(self._transitions_to(deployment_id, "completed"), 1)
        self.assertEqual(len(self.runtime.called("activate")), 1)
        self.assertEqual(self.db.get(Deployment, deployment_id).status, "completed")


if __name__ == "__main__":
    unittest.main()
