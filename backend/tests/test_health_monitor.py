from __future__ import annotations

from datetime import timedelta
import unittest

from pipeline_fakes import (
    MAIN_PROGRAM,
    PREVIOUS_SNAPSHOT,
    FakeTagDatabase,
    FakeTargetRuntime,
    FakeVersioningCenter,
    add_users,
    deploy_release,
    make_session_factory,
    make_snapshot,
)

from logic_deploy.core.errors import RuntimeCommunicationError
from logic_deploy.domain.health_thresholds import HealthThresholds, evaluate_sample
from logic_deploy.models import DeploymentEvent
from logic_deploy.models.common import as_utc
from logic_deploy.services.checkpoint_manager import get_checkpoint, get_rollback
from logic_deploy.services.health_monitor import MONITOR_ACTOR, observe_deployment, sweep_monitoring
from logic_deploy.services.target_runtime import HealthSample


class HealthThresholdTests(unittest.TestCase):
    def test_cpu_breach_needs_sustained_samples(self) -> None:
        thresholds = HealthThresholds(sustained_samples=3)
        hot = HealthSample(target="plc-a", cpu_percent=95.0)

        counters, breaches = evaluate_sample(hot, None, thresholds)
        counters, breaches = evaluate_sample(hot, counters, thresholds)
        self.assertEqual(breaches, [])
        counters, breaches = evaluate_sample(hot, counters, thresholds)

        self.assertEqual(counters["cpu"], 3)
        self.assertEqual(len(breaches), 1)
        self.assertTrue(breaches[0].startswith("cpu 95.0%"))

    def test_healthy_sample_resets_the_run(self) -> None:
        thresholds = HealthThresholds(sustained_samples=2)
        counters, _ = evaluate_sample(HealthSample(target="plc-a", memory_percent=99.0), None, thresholds)

        counters, breaches = evaluate_sample(HealthSample(target="plc-a", memory_percent=10.0), counters, thresholds)

        self.assertEqual(counters["memory"], 0)
        self.assertEqual(breaches, [])

    def test_errors_and_excursions_breach_immediately(self) -> None:
        thresholds = HealthThresholds()

        _, breaches = evaluate_sample(
            HealthSample(target="plc-a", error_count=5, critical_failures=1, tag_excursions=("E_STOP",)),
            None,
            thresholds,
        )

        self.assertEqual(len(breaches), 3)
        self.assertIn("critical tag excursion: E_STOP", breaches)


class HealthMonitorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.users = add_users(self.db)
        self.runtime = FakeTargetRuntime()
        self.release, self.deployment = deploy_release(
            self.db,
            self.users,
            versioning=FakeVersioningCenter([make_snapshot("snap-1", {"main.st": MAIN_PROGRAM})]),
            tags=FakeTagDatabase(),
            runtime=self.runtime,
        )
        self.monitor_until = as_utc(self.deployment.monitor_until)
        self.inside_window = self.monitor_until - timedelta(seconds=60)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _observe(self, now=None) -> str:
        return observe_deployment(self.db, self.deployment.id, runtime=self.runtime, now=now or self.inside_window)

    def _event_types(self) -> list[str]:
        rows = (
            self.db.query(DeploymentEvent)
            .filter(DeploymentEvent.deployment_id == self.deployment.id)
            .order_by(DeploymentEvent.id.asc())
            .all()
        )
        return [row.event_type for row in rows]

    def test_healthy_samples_keep_watching(self) -> None:
        self.assertEqual(self._observe(), "watching")
        self.assertEqual(self._observe(), "watching")

        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.monitor_state["samples"], 2)
        self.assertEqual(self.deployment.monitor_state["counters"]["plc-a"], {"cpu": 0, "memory": 0})

    def test_sustained_cpu_breach_triggers_auto_rollback(self) -> None:
        self.runtime.health_samples["plc-a"] = [HealthSample(target="plc-a", cpu_percent=97.0) for _ in range(3)]

        outcomes = [self._observe() for _ in range(3)]

        self.assertEqual(outcomes, ["watching", "watching", "rolled_back"])
        rollback_row = get_rollback(self.db, self.deployment.id)
        self.assertEqual(rollback_row.initiated_by, MONITOR_ACTOR)
        self.assertEqual(rollback_row.status, "completed")
        self.assertEqual(rollback_row.checkpoint_id, get_checkpoint(self.db, self.deployment.id).id)
        self.assertEqual(self.runtime.states["plc-a"]["active_snapshot_id"], PREVIOUS_SNAPSHOT)
        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.status, "completed")
        self.assertEqual(self.deployment.monitor_state["status"], "rolled_back")
        self.assertIn("plc-a", self.deployment.monitor_state["breaches"])
        event_types = self._event_types()
        self.assertLess(event_types.index("health_threshold_breached"), event_types.index("rollback_started"))

        self.assertEqual(self._observe(), "rolled_back")
        self.assertEqual(len(self.runtime.called("restore")), 1)

    def test_window_close_marks_monitoring_passed(self) -> None:
        self.assertEqual(self._observe(), "watching")

        self.assertEqual(self._observe(now=self.monitor_until + timedelta(seconds=1)), "passed")

        self.assertIn("monitoring_passed", self._event_types())
        self.assertIsNone(get_rollback(self.db, self.deployment.id))
        self.assertEqual(sweep_monitoring(self.db, runtime=self.runtime, now=self.inside_window), {})

    def test_failed_auto_rollback_is_reported(self) -> None:
        self.runtime.health_samples["plc-a"] = [HealthSample(target="plc-a", error_count=12)]
        self.runtime.failures["restore"] = RuntimeCommunicationError("connection refused", target="plc-a")

        self.assertEqual(self._observe(), "rollback_failed")

        rollback_row = get_rollback(self.db, self.deployment.id)
        self.assertEqual(rollback_row.status, "failed")
        self.assertTrue(rollback_row.detail["manual_intervention_required"])
        self.assertIn("rollback_failed", self._event_types())

    def test_discarded_checkpoint_leaves_breach_without_rollback(self) -> None:
        checkpoint = get_checkpoint(self.db, self.deployment.id)
        checkpoint.discarded_at = self.inside_window
        self.db.commit()
        self.runtime.health_samples["plc-a"] = [HealthSample(target="plc-a", critical_failures=2)]

        self.assertEqual(self._observe(), "rollback_unavailable")
        self.assertIsNone(get_rollback(self.db, self.deployment.id))

    def test_unreachable_target_is_logged_and_watching_continues(self) -> None:
        self.runtime.failures["health"] = RuntimeCommunicationError("no route to host", target="plc-a")

        self.assertEqual(self._observe(), "watching")

        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.monitor_state["unreachable"], {"plc-a": "no route to host"})
        self.assertIn("monitoring_sample_missed", self._event_types())

    def test_window_without_health_readings_is_unverified(self) -> None:
        self.runtime.failures["health"] = RuntimeCommunicationError("no route to host", target="plc-a")
        for _ in range(3):
            self.assertEqual(self._observe(), "watching")

        with self.assertLogs("monitor", level="ERROR"):
            outcome = self._observe(now=self.monitor_until + timedelta(seconds=1))

        self.assertEqual(outcome, "unverified")
        self.db.refresh(self.deployment)
        state = self.deployment.monitor_state
        self.assertEqual(state["status"], "unverified")
        self.assertTrue(state["manual_intervention_required"])
        self.assertEqual(state["unverified"], {"plc-a": {"readings": 0, "missed": 3}})
        event_types = self._event_types()
        self.assertIn("monitoring_unverified", event_types)
        self.assertNotIn("monitoring_passed", event_types)
        self.assertEqual(sweep_monitoring(self.db, runtime=self.runtime, now=self.inside_window), {})

    def test_window_with_too_many_missed_rounds_is_unverified(self) -> None:
        self.assertEqual(self._observe(), "watching")
        self.runtime.failures["health"] = RuntimeCommunicationError("timeout", target="plc-a")
        self.assertEqual(self._observe(), "watching")
        self.assertEqual(self._observe(), "watching")

        self.assertEqual(self._observe(now=self.monitor_until + timedelta(seconds=1)), "unverified")
        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.monitor_state["unverified"], {"plc-a": {"readings": 1, "missed": 2}})

    def test_window_closed_without_any_sample_round_is_unverified(self) -> None:
        self.assertEqual(self._observe(now=self.monitor_until + timedelta(seconds=1)), "unverified")

    def test_sweep_observes_every_watched_deployment(self) -> None:
        outcomes = sweep_monitoring(self.db, runtime=self.runtime, now=self.inside_window)

        self.assertEqual(outcomes, {self.deployment.id: "watching"})

    def test_unknown_deployment_is_reported_missing(self) -> None:
        self.assertEqual(observe_deployment(self.db, "missing", runtime=self.runtime), "missing")


if __name__ == "__main__":
    unittest.main()
