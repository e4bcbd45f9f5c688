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
    add_users,
    approve_round,
    deploy_release,
    make_session_factory,
    make_snapshot,
    run_checks,
)

from logic_deploy.core.config import Settings
from logic_deploy.core.errors import (
    AlreadyDecided,
    ApprovalOutOfOrder,
    ApprovalRejected,
    ApprovalTimedOut,
    BypassNotPermitted,
    InvalidRequest,
    NotFound,
    QuorumNotMet,
    RoleNotEligible,
    TwoPersonRuleViolation,
)
from logic_deploy.domain.approval_policy import ApprovalMode, ApprovalPolicy, quorum_met, round_outcome
from logic_deploy.models import AuditLog
from logic_deploy.models.common import as_utc
from logic_deploy.services import approval_workflow
from logic_deploy.services.approval_workflow import (
    current_round,
    emergency_bypass,
    expire_timed_out_approvals,
    request_approvals,
    round_state,
    submit_approval,
)
from logic_deploy.services.deployment_orchestrator import create_deployment, start_deployment
from logic_deploy.services.health_monitor import observe_deployment
from logic_deploy.services.target_runtime import HealthSample


class ApprovalPolicyTests(unittest.TestCase):
    def test_slots_cover_roles_and_escalate_on_warnings(self) -> None:
        policy = ApprovalPolicy(required_roles=("engineer", "safety_officer"), min_count=3)

        self.assertEqual(policy.required_slots(), ["engineer", "safety_officer", "engineer"])
        self.assertEqual(policy.required_slots(warning_count=2), ["engineer", "safety_officer", "engineer", "safety_officer"])

    def test_majority_needs_strict_majority_and_no_rejection(self) -> None:
        self.assertTrue(quorum_met(ApprovalMode.MAJORITY, ["approved", "approved", "pending"]))
        self.assertFalse(quorum_met(ApprovalMode.MAJORITY, ["approved", "pending"]))
        self.assertFalse(quorum_met(ApprovalMode.MAJORITY, ["approved", "approved", "rejected"]))
        self.assertFalse(quorum_met(ApprovalMode.PARALLEL, ["approved", "pending"]))
        self.assertEqual(round_outcome(ApprovalMode.PARALLEL, ["approved", "expired"]), "expired")
        self.assertEqual(round_outcome(ApprovalMode.PARALLEL, []), "none")

    def test_release_overrides_tighten_policy(self) -> None:
        policy = ApprovalPolicy().with_overrides({"required_roles": ["safety_officer"], "min_count": 3, "mode": "sequential"})

        self.assertEqual(policy.required_slots(), ["safety_officer"] * 3)
        self.assertEqual(policy.mode, ApprovalMode.SEQUENTIAL)


class ApprovalWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.users = add_users(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _decide(self, row, user_key: str, decision: str = "approved", **kwargs):
        return submit_approval(self.db, row.id, approver_id=self.users[user_key].id, decision=decision, **kwargs)

    def test_default_round_requires_engineer_and_safety_officer(self) -> None:
        release = add_release(self.db)

        rows = request_approvals(self.db, release.id)

        self.assertEqual([row.approver_role for row in rows], ["engineer", "safety_officer"])
        self.assertEqual({row.status for row in rows}, {"pending"})
        self.assertEqual(round_state(self.db, release.id), "pending")

        self._decide(rows[0], "engineer")
        self.assertEqual(round_state(self.db, release.id), "pending")
        self._decide(rows[1], "safety", comment="reviewed interlocks")
        self.assertEqual(round_state(self.db, release.id), "approved")

        actions = [row.action for row in self.db.query(AuditLog).order_by(AuditLog.id.asc()).all()]
        self.assertEqual(actions.count("approval.approved"), 2)
        self.assertIn("approvals.requested", actions)

    def test_warnings_add_an_escalation_slot(self) -> None:
        release = add_release(self.db)

        rows = request_approvals(self.db, release.id, warning_count=1)

        self.assertEqual([row.approver_role for row in rows], ["engineer", "safety_officer", "safety_officer"])

    def test_unknown_approval_or_approver_is_not_found(self) -> None:
        release = add_release(self.db)
        rows = request_approvals(self.db, release.id)

        with self.assertRaises(NotFound):
            submit_approval(self.db, "missing", approver_id=self.users["engineer"].id, decision="approved")
        with self.assertRaises(NotFound):
            submit_approval(self.db, rows[0].id, approver_id="nobody", decision="approved")

    def test_invalid_decision_is_rejected(self) -> None:
        release = add_release(self.db)
        rows = request_approvals(self.db, release.id)

        with self.assertRaises(InvalidRequest):
            self._decide(rows[0], "engineer", decision="maybe")

    def test_decided_slot_cannot_be_decided_again(self) -> None:
        release = add_release(self.db)
        rows = request_approvals(self.db, release.id)
        self._decide(rows[0], "engineer")

        with self.assertRaises(AlreadyDecided):
            self._decide(rows[0], "reviewer")

    def test_role_must_match_slot(self) -> None:
        release = add_release(self.db)
        rows = request_approvals(self.db, release.id)

        with self.assertRaises(RoleNotEligible):
            self._decide(rows[1], "engineer")
        with self.assertRaises(RoleNotEligible):
            self._decide(rows[0], "manager")

    def test_two_person_rule_blocks_second_slot_for_same_approver(self) -> None:
        release = add_release(self.db, approval_policy={"required_roles": ["engineer"], "min_count": 2})
        rows = request_approvals(self.db, release.id)
        self._decide(rows[0], "engineer")

        with self.assertRaises(TwoPersonRuleViolation):
            self._decide(rows[1], "engineer")

        self._decide(rows[1], "reviewer")
        self.assertEqual(round_state(self.db, release.id), "approved")

    def test_sequential_mode_enforces_slot_order(self) -> None:
        release = add_release(self.db, approval_policy={"mode": "sequential"})
        rows = request_approvals(self.db, release.id)

        with self.assertRaises(ApprovalOutOfOrder):
            self._decide(rows[1], "safety")

        self._decide(rows[0], "engineer")
        self._decide(rows[1], "safety")
        self.assertEqual(round_state(self.db, release.id), "approved")

    def test_majority_mode_approves_with_strict_majority(self) -> None:
        release = add_release(self.db, approval_policy={"required_roles": ["any"], "min_count": 3, "mode": "majority"})
        rows = request_approvals(self.db, release.id)
        self.assertEqual(len(rows), 3)

        self._decide(rows[0], "engineer")
        self.assertEqual(round_state(self.db, release.id), "pending")
        self._decide(rows[2], "safety")
        self.assertEqual(round_state(self.db, release.id), "approved")

    def test_new_round_supersedes_previous_round(self) -> None:
        release = add_release(self.db)
        first = request_approvals(self.db, release.id)
        self._decide(first[0], "engineer", decision="rejected")
        self.assertEqual(round_state(self.db, release.id), "rejected")

        second = request_approvals(self.db, release.id)

        self.assertEqual({row.round_number for row in second}, {2})
        self.assertEqual([row.id for row in current_round(self.db, release.id)], [row.id for row in second])
        with self.assertRaises(AlreadyDecided):
            self._decide(first[1], "safety")

    def test_bypass_is_disabled_by_default(self) -> None:
        release = add_release(self.db)
        request_approvals(self.db, release.id)

        with self.assertRaises(BypassNotPermitted):
            emergency_bypass(self.db, release.id, actor_id=self.users["manager"].id, justification="line down")

    def test_bypass_requires_eligible_role_and_justification(self) -> None:
        release = add_release(self.db)
        request_approvals(self.db, release.id)
        settings = Settings(emergency_bypass_enabled=True)

        with patch.object(approval_workflow, "get_settings", return_value=settings):
            with self.assertRaises(BypassNotPermitted):
                emergency_bypass(self.db, release.id, actor_id=self.users["engineer"].id, justification="line down")
            with self.assertRaises(BypassNotPermitted):
                emergency_bypass(self.db, release.id, actor_id=self.users["manager"].id, justification="  ")

            rows = emergency_bypass(self.db, release.id, actor_id=self.users["manager"].id, justification="line down")

        self.assertTrue(all(row.bypassed and row.status == "approved" for row in rows))
        self.assertEqual(round_state(self.db, release.id), "approved")
        bypass_logs = self.db.query(AuditLog).filter(AuditLog.action == "approval.emergency_bypass").all()
        self.assertEqual(len(bypass_logs), 1)
        self.assertEqual(bypass_logs[0].payload_json["justification"], "line down")

    def test_expired_slot_cannot_be_decided(self) -> None:
        release = add_release(self.db)
        requested_at = datetime.now(timezone.utc)
        rows = request_approvals(self.db, release.id, now=requested_at)

        with self.assertRaises(ApprovalTimedOut):
            self._decide(rows[0], "engineer", now=requested_at + timedelta(days=2))


class ApprovalGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.users = add_users(self.db)
        self.versioning = FakeVersioningCenter([make_snapshot("snap-1", {"main.st": MAIN_PROGRAM})])
        self.tags = FakeTagDatabase()
        self.runtime = FakeTargetRuntime()
        self.release = add_release(self.db)
        run_checks(self.db, self.release.id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)
        self.deployment = create_deployment(self.db, self.release.id, strategy="atomic")

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _start(self):
        return start_deployment(self.db, self.deployment.id, runtime=self.runtime, versioning=self.versioning)

    def test_quorum_moves_staging_deployment_to_ready(self) -> None:
        with self.assertRaises(QuorumNotMet):
            self._start()
        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.status, "staging")

        rows = current_round(self.db, self.release.id)
        submit_approval(self.db, rows[0].id, approver_id=self.users["engineer"].id, decision="approved")
        submit_approval(self.db, rows[1].id, approver_id=self.users["safety"].id, decision="approved")

        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.status, "ready")

    def test_rejection_blocks_start(self) -> None:
        with self.assertRaises(QuorumNotMet):
            self._start()
        rows = current_round(self.db, self.release.id)
        submit_approval(self.db, rows[1].id, approver_id=self.users["safety"].id, decision="rejected", comment="unsafe")

        with self.assertRaises(ApprovalRejected):
            self._start()
        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.status, "staging")

    def test_timed_out_round_reverts_staging_to_queued(self) -> None:
        with self.assertRaises(QuorumNotMet):
            self._start()

        affected = expire_timed_out_approvals(self.db, now=datetime.now(timezone.utc) + timedelta(days=2))

        self.assertEqual(affected, [self.release.id])
        self.assertEqual(round_state(self.db, self.release.id), "expired")
        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.status, "queued")

        with self.assertRaises(QuorumNotMet):
            self._start()
        rows = current_round(self.db, self.release.id)
        self.assertEqual({row.round_number for row in rows}, {2})
        self.assertEqual({row.status for row in rows}, {"pending"})

    def test_expiry_sweep_ignores_rounds_within_deadline(self) -> None:
        with self.assertRaises(QuorumNotMet):
            self._start()

        self.assertEqual(expire_timed_out_approvals(self.db, now=datetime.now(timezone.utc)), [])
        self.db.refresh(self.deployment)
        self.assertEqual(self.deployment.status, "staging")


class ApprovalRoundBindingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.users = add_users(self.db)
        self.versioning = FakeVersioningCenter([make_snapshot("snap-1", {"main.st": MAIN_PROGRAM})])
        self.tags = FakeTagDatabase()
        self.runtime = FakeTargetRuntime()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _start(self, deployment_id: str):
        return start_deployment(self.db, deployment_id, runtime=self.runtime, versioning=self.versioning)

    def _run_checks(self, release_id: str) -> None:
        run_checks(self.db, release_id, versioning=self.versioning, tags=self.tags, runtime=self.runtime)

    def test_redeploy_after_auto_rollback_requests_a_new_round(self) -> None:
        release, first = deploy_release(
            self.db, self.users, versioning=self.versioning, tags=self.tags, runtime=self.runtime
        )
        self.assertEqual(first.status, "completed")
        self.runtime.health_samples["plc-a"] = [HealthSample(target="plc-a", error_count=50)]
        inside_window = as_utc(first.monitor_until) - timedelta(seconds=60)
        self.assertEqual(observe_deployment(self.db, first.id, runtime=self.runtime, now=inside_window), "rolled_back")

        self._run_checks(release.id)
        second = create_deployment(self.db, release.id, strategy="atomic")
        with self.assertRaises(QuorumNotMet):
            self._start(second.id)

        self.db.refresh(second)
        self.assertEqual(second.status, "staging")
        rows = current_round(self.db, release.id)
        self.assertEqual({row.round_number for row in rows}, {2})
        self.assertEqual({row.deployment_id for row in rows}, {second.id})
        self.assertEqual({row.status for row in rows}, {"pending"})
        self.assertEqual(len(self.runtime.called("activate")), 1)

        approve_round(self.db, release.id, self.users)
        self.assertEqual(self._start(second.id).status, "completed")

    def test_redeploy_without_new_checks_still_needs_its_own_round(self) -> None:
        release, first = deploy_release(
            self.db, self.users, versioning=self.versioning, tags=self.tags, runtime=self.runtime
        )
        second = create_deployment(self.db, release.id, strategy="atomic")

        with self.assertRaises(QuorumNotMet):
            self._start(second.id)

        rows = current_round(self.db, release.id)
        self.assertEqual({row.deployment_id for row in rows}, {second.id})
        self.assertNotIn(first.id, {row.deployment_id for row in rows})

    def test_rerun_with_new_warnings_adds_the_escalation_slot(self) -> None:
        release = add_release(self.db)
        self._run_checks(release.id)
        deployment = create_deployment(self.db, release.id, strategy="atomic")
        with self.assertRaises(QuorumNotMet):
            self._start(deployment.id)
        self.assertEqual(len(current_round(self.db, release.id)), 2)

        release.metadata_json = {**release.metadata_json, "memory_limit_bytes": 6}
        self.db.commit()
        self._run_checks(release.id)

        approve_round(self.db, release.id, self.users)
        self.db.refresh(deployment)
        self.assertEqual(deployment.status, "staging")

        with self.assertRaises(QuorumNotMet):
            self._start(deployment.id)

        rows = current_round(self.db, release.id)
        self.assertEqual([row.approver_role for row in rows], ["engineer", "safety_officer", "safety_officer"])
        self.assertEqual({row.status for row in rows}, {"pending"})
        self.assertEqual({row.round_number for row in rows}, {2})
        self.db.refresh(deployment)
        self.assertEqual(deployment.status, "staging")


if __name__ == "__main__":
    unittest.main()
