from __future__ import annotations

from datetime import datetime, timedelta, timezone
import unittest
from unittest.mock import patch

from pipeline_fakes import (
    MAIN_PROGRAM,
    FakeTagDatabase,
    FakeTargetRuntime,
    FakeVersioningCenter,
    add_release,
    make_session_factory,
    make_snapshot,
    run_checks,
)

from logic_deploy.core.errors import NotFound
from logic_deploy.domain import safety_checks as safety_checks_module
from logic_deploy.domain.logic_facts import extract_facts
from logic_deploy.domain.safety_checks import (
    SAFETY_CHECKS,
    CheckContext,
    CheckStatus,
    MaintenanceWindow,
    SafetyCheckDefinition,
    Severity,
    estimate_type_size,
    iter_safety_checks,
    list_safety_checks,
    run_all_checks,
    summarize_outcomes,
)
from logic_deploy.models import AuditLog, SafetyCheckRun
from logic_deploy.services.safety_check_runner import latest_check_run, latest_check_summary, run_safety_checks

NOW = datetime(2026, 10, 12, 8, 0, tzinfo=timezone.utc)


def _context(files: dict[str, str], **overrides) -> CheckContext:
    facts = extract_facts(make_snapshot("snap-x", files))
    values = {
        "facts": facts,
        "now": NOW,
        "release_metadata": {"target_runtimes": ["plc-a"]},
        "critical_tags": {},
        "runtime_locks": {"plc-a": None},
        "lock_owner": "release-1",
    }
    values.update(overrides)
    return CheckContext(**values)


def _by_key(context: CheckContext):
    return {item.key: item for item in run_all_checks(context)}


class SafetyCheckRuleTests(unittest.TestCase):
    def test_clean_program_passes_every_check(self) -> None:
        outcomes = _by_key(_context({"main.st": MAIN_PROGRAM}))

        self.assertEqual(list(outcomes), [item.key for item in SAFETY_CHECKS])
        self.assertEqual({item.status for item in outcomes.values()}, {CheckStatus.PASSED})
        self.assertTrue(summarize_outcomes(list(outcomes.values())).passed)

    def test_checks_stream_in_order_with_running_updates(self) -> None:
        updates = list(iter_safety_checks(_context({"main.st": MAIN_PROGRAM})))

        self.assertEqual(len(updates), 2 * len(SAFETY_CHECKS))
        positions = [item.position for item in updates]
        self.assertEqual(positions, sorted(positions))
        self.assertEqual(updates[0].status, CheckStatus.RUNNING)
        self.assertEqual(updates[1].status, CheckStatus.PASSED)
        self.assertEqual(updates[0].key, "syntax")

    def test_shared_address_between_files_is_a_critical_io_conflict(self) -> None:
        files = {
            "a.st": "PROGRAM A\nVAR\n    Valve_Open AT %QX0.1 : BOOL;\nEND_VAR\nEND_PROGRAM\n",
            "b.st": "PROGRAM B\nVAR\n    Pump_Start AT %Q0.1 : BOOL;\nEND_VAR\nEND_PROGRAM\n",
        }

        outcome = _by_key(_context(files))["io_conflicts"]

        self.assertEqual(outcome.status, CheckStatus.FAILED)
        self.assertEqual(outcome.severity, Severity.CRITICAL)
        self.assertTrue(outcome.blocking)
        self.assertEqual(outcome.details[0]["address"], "%QX0.1")
        self.assertEqual(outcome.details[0]["identifiers"], ["PUMP_START", "VALVE_OPEN"])

    def test_write_to_critical_tag_blocks(self) -> None:
        outcome = _by_key(_context({"main.st": MAIN_PROGRAM}, critical_tags={"PUMP_RUN": None}))["critical_tags"]

        self.assertEqual(outcome.status, CheckStatus.FAILED)
        self.assertEqual(outcome.details[0]["problem"], "critical_tag_write")
        self.assertEqual(outcome.details[0]["tag"], "PUMP_RUN")
        self.assertEqual(outcome.details[0]["line"], 6)

    def test_remapping_a_protected_address_blocks(self) -> None:
        outcome = _by_key(_context({"main.st": MAIN_PROGRAM}, critical_tags={"E_STOP": "%Q0.0"}))["critical_tags"]

        self.assertEqual(outcome.status, CheckStatus.FAILED)
        self.assertEqual(outcome.details[0]["problem"], "critical_tag_remap")
        self.assertEqual(outcome.details[0]["tag"], "E_STOP")
        self.assertEqual(outcome.details[0]["identifier"], "PUMP_RUN")

    def test_unavailable_tag_registry_fails_closed(self) -> None:
        outcome = _by_key(_context({"main.st": MAIN_PROGRAM}, critical_tags=None))["critical_tags"]

        self.assertEqual(outcome.status, CheckStatus.FAILED)
        self.assertTrue(outcome.blocking)
        self.assertIn("unavailable", outcome.message)

    def test_output_written_from_two_blocks_is_a_race(self) -> None:
        files = {
            "a.st": "PROGRAM A\nVAR\n    Motor AT %QX2.0 : BOOL;\nEND_VAR\nMotor := TRUE;\nEND_PROGRAM\n",
            "b.st": "PROGRAM B\n%QX2.0 := FALSE;\nEND_PROGRAM\n",
        }

        race = _by_key(_context(files))["race_conditions"]
        self.assertEqual(race.status, CheckStatus.FAILED)
        self.assertEqual(race.details[0]["address"], "%QX2.0")
        self.assertEqual(len(race.details[0]["writers"]), 2)

        arbitrated = _by_key(
            _context(files, release_metadata={"target_runtimes": ["plc-a"], "arbitrated_identifiers": ["Motor"]})
        )["race_conditions"]
        self.assertEqual(arbitrated.status, CheckStatus.PASSED)

    def test_resource_usage_near_limit_is_a_non_blocking_warning(self) -> None:
        near = _by_key(_context({"main.st": MAIN_PROGRAM}, memory_limit_bytes=6))["resource_limits"]
        self.assertEqual(near.status, CheckStatus.WARNING)
        self.assertEqual(near.details[0]["memory_bytes"], 5)

        over = _by_key(_context({"main.st": MAIN_PROGRAM}, memory_limit_bytes=4))["resource_limits"]
        self.assertEqual(over.status, CheckStatus.FAILED)
        self.assertFalse(over.blocking)

        summary = summarize_outcomes(run_all_checks(_context({"main.st": MAIN_PROGRAM}, memory_limit_bytes=4)))
        self.assertTrue(summary.passed)
        self.assertEqual(summary.warnings, ("resource_limits",))

    def test_type_size_estimates(self) -> None:
        self.assertEqual(estimate_type_size("ARRAY[1..10] OF INT"), 20)
        self.assertEqual(estimate_type_size("ARRAY[0..1,0..2] OF REAL"), 24)
        self.assertEqual(estimate_type_size("STRING(20)"), 21)
        self.assertEqual(estimate_type_size("WSTRING"), 162)
        self.assertEqual(estimate_type_size("UDT_MOTOR"), 64)

    def test_structural_problem_fails_syntax(self) -> None:
        broken = "PROGRAM Broken\nVAR\n    Speed REAL;\nEND_VAR\nEND_PROGRAM\n"

        outcomes = _by_key(_context({"broken.st": broken}))

        self.assertEqual(outcomes["syntax"].status, CheckStatus.FAILED)
        self.assertEqual(outcomes["syntax"].details[0]["code"], "malformed_declaration")
        self.assertEqual(outcomes["declarations"].status, CheckStatus.WARNING)

    def test_conflicting_global_types_fail_declarations(self) -> None:
        files = {
            "a.st": "VAR_GLOBAL\n    Line_Speed : REAL;\nEND_VAR\n",
            "b.st": "VAR_GLOBAL\n    Line_Speed : INT;\nEND_VAR\n",
        }

        outcome = _by_key(_context(files))["declarations"]

        self.assertEqual(outcome.status, CheckStatus.FAILED)
        self.assertEqual(outcome.details[0]["problem"], "conflicting_global_type")

    def test_vendor_export_rejects_unaccepted_dialect(self) -> None:
        outcome = _by_key(_context({"main.st": MAIN_PROGRAM}, accepted_dialects=("codesys",)))["vendor_export"]
        self.assertEqual(outcome.status, CheckStatus.FAILED)
        self.assertEqual(outcome.details[0]["problem"], "dialect_not_accepted")

        mismatch = _by_key(_context({"main.txt": MAIN_PROGRAM}))["vendor_export"]
        self.assertEqual(mismatch.status, CheckStatus.WARNING)
        self.assertEqual(mismatch.details[0]["problem"], "extension_mismatch")

    def test_locked_or_missing_targets_block(self) -> None:
        locked = _by_key(_context({"main.st": MAIN_PROGRAM}, runtime_locks={"plc-a": "release-2"}))["runtime_lock"]
        self.assertEqual(locked.status, CheckStatus.FAILED)
        self.assertEqual(locked.details[0], {"problem": "runtime_locked", "target": "plc-a", "holder": "release-2"})

        own = _by_key(_context({"main.st": MAIN_PROGRAM}, runtime_locks={"plc-a": "release-1"}))["runtime_lock"]
        self.assertEqual(own.status, CheckStatus.PASSED)

        unreachable = _by_key(_context({"main.st": MAIN_PROGRAM}, unreachable_targets=("plc-a",)))["runtime_lock"]
        self.assertEqual(unreachable.details[0]["problem"], "runtime_unreachable")

        no_targets = _by_key(_context({"main.st": MAIN_PROGRAM}, release_metadata={}))["runtime_lock"]
        self.assertEqual(no_targets.status, CheckStatus.FAILED)

    def test_maintenance_strategy_needs_an_approved_open_window(self) -> None:
        missing = _by_key(_context({"main.st": MAIN_PROGRAM}, strategy="maintenance_window"))["runtime_lock"]
        self.assertEqual(missing.details[0]["problem"], "maintenance_window_missing")

        window = MaintenanceWindow(starts_at=NOW - timedelta(hours=3), ends_at=NOW - timedelta(hours=1), approved=True)
        ended = _by_key(
            _context({"main.st": MAIN_PROGRAM}, strategy="maintenance_window", maintenance_window=window)
        )["runtime_lock"]
        self.assertEqual(ended.details[0]["problem"], "maintenance_window_ended")

        upcoming = MaintenanceWindow(starts_at=NOW + timedelta(hours=1), ends_at=NOW + timedelta(hours=2), approved=True)
        ok = _by_key(_context({"main.st": MAIN_PROGRAM}, strategy="maintenance_window", maintenance_window=upcoming))
        self.assertEqual(ok["runtime_lock"].status, CheckStatus.PASSED)

    def test_window_from_metadata_assumes_utc(self) -> None:
        window = MaintenanceWindow.from_metadata(
            {"starts_at": "2026-10-12T22:00:00", "ends_at": "2026-10-13T02:00:00", "approved": True}
        )

        self.assertEqual(window.starts_at.tzinfo, timezone.utc)
        self.assertFalse(window.is_open(NOW))
        self.assertTrue(window.is_open(datetime(2026, 10, 12, 23, 0, tzinfo=timezone.utc)))
        self.assertIsNone(MaintenanceWindow.from_metadata({"starts_at": "soon"}))

    def test_rule_that_raises_fails_its_check_and_the_run_continues(self) -> None:
        def broken(context, prior):
            raise KeyError("scan_time_ms")

        definitions = (
            SafetyCheckDefinition("broken", "Broken rule", Severity.WARNING, broken),
            SAFETY_CHECKS[0],
        )
        with patch.object(safety_checks_module, "SAFETY_CHECKS", definitions):
            outcomes = run_all_checks(_context({"main.st": MAIN_PROGRAM}))

        self.assertEqual([item.key for item in outcomes], ["broken", "syntax"])
        self.assertEqual(outcomes[0].status, CheckStatus.FAILED)
        self.assertTrue(outcomes[0].message.startswith("Check raised KeyError"))
        self.assertEqual(outcomes[0].details[0]["problem"], "check_error")
        self.assertEqual(outcomes[1].status, CheckStatus.PASSED)

    def test_partial_outcomes_are_not_evaluated(self) -> None:
        outcomes = run_all_checks(_context({"main.st": MAIN_PROGRAM}))[:3]

        summary = summarize_outcomes(outcomes)

        self.assertFalse(summary.evaluated)
        self.assertFalse(summary.passed)

    def test_catalog_lists_checks_in_order(self) -> None:
        catalog = list_safety_checks()

        self.assertEqual([item["position"] for item in catalog], list(range(1, len(SAFETY_CHECKS) + 1)))
        self.assertEqual(catalog[0]["key"], "syntax")
        self.assertEqual(catalog[-1]["key"], "runtime_lock")


class SafetyCheckRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.versioning = FakeVersioningCenter([make_snapshot("snap-1", {"main.st": MAIN_PROGRAM})])
        self.tags = FakeTagDatabase()
        self.runtime = FakeTargetRuntime()
        self.release = add_release(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_run_persists_results_and_summary(self) -> None:
        updates = run_checks(self.db, self.release.id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)

        self.assertEqual([item["status"] for item in updates[: len(SAFETY_CHECKS)]], ["pending"] * len(SAFETY_CHECKS))
        final = [item for item in updates if item["status"] not in {"pending", "running"}]
        self.assertEqual([item["key"] for item in final], [item.key for item in SAFETY_CHECKS])

        run = latest_check_run(self.db, self.release.id)
        self.assertEqual(run.status, "completed")
        self.assertEqual(len(run.facts_fingerprint), 64)
        self.assertFalse(run.facts_summary["degraded"])
        summary = latest_check_summary(self.db, self.release.id)
        self.assertTrue(summary.passed)
        self.assertEqual(self.runtime.called("get_lock_holder")[0][1], "plc-a")

        actions = [row.action for row in self.db.query(AuditLog).all()]
        self.assertIn("safety_checks.completed", actions)

    def test_rerun_supersedes_previous_run(self) -> None:
        run_checks(self.db, self.release.id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)
        first = latest_check_run(self.db, self.release.id)

        self.tags.tags = {"PUMP_RUN": None}
        run_checks(self.db, self.release.id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)

        self.db.refresh(first)
        self.assertIsNotNone(first.superseded_at)
        self.assertEqual(self.db.query(SafetyCheckRun).count(), 2)
        summary = latest_check_summary(self.db, self.release.id)
        self.assertEqual(summary.blocking, ("critical_tags",))

    def test_unavailable_tag_database_fails_critical_tag_check(self) -> None:
        self.tags.unavailable = True

        run_checks(self.db, self.release.id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)

        summary = latest_check_summary(self.db, self.release.id)
        self.assertTrue(summary.evaluated)
        self.assertEqual(summary.blocking, ("critical_tags",))

    def test_unavailable_snapshot_fails_every_check(self) -> None:
        self.versioning.unavailable = True

        run_checks(self.db, self.release.id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)

        summary = latest_check_summary(self.db, self.release.id)
        self.assertTrue(summary.evaluated)
        self.assertEqual(
            set(summary.blocking),
            {item.key for item in SAFETY_CHECKS if item.severity == Severity.CRITICAL},
        )

    def test_unknown_release_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            list(run_safety_checks(self.db, "missing", versioning=self.versioning, tags=self.tags, runtime=self.runtime))


if __name__ == "__main__":
    unittest.main()
