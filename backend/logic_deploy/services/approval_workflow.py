from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import (
    AlreadyDecided,
    ApprovalOutOfOrder,
    ApprovalTimedOut,
    BypassNotPermitted,
    InvalidRequest,
    NotFound,
    RoleNotEligible,
    TwoPersonRuleViolation,
)
from logic_deploy.domain.approval_policy import ApprovalMode, ApprovalPolicy, ApprovalStatus, quorum_met, round_outcome
from logic_deploy.domain.deployment_state_machine import DeploymentState
from logic_deploy.models import DeployApproval, Deployment, Release, User
from logic_deploy.models.common import as_utc
from logic_deploy.services.deployment_log import append_audit_log
from logic_deploy.services.deployment_transitions import transition_deployment
from logic_deploy.services.observability import emit_structured_log
from logic_deploy.services.release_locks import release_guard
from logic_deploy.services.safety_check_runner import latest_check_run


DECISIONS = {ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def policy_for_release(release: Release) -> ApprovalPolicy:
    return ApprovalPolicy.from_settings(get_settings(), release.metadata_dict.get("approval_policy"))


def serialize_approval(row: DeployApproval) -> dict[str, Any]:
    return {
        "id": row.id,
        "release_id": row.release_id,
        "deployment_id": row.deployment_id,
        "check_run_id": row.check_run_id,
        "round_number": row.round_number,
        "slot_index": row.slot_index,
        "approver_role": row.approver_role,
        "mode": row.mode,
        "status": row.status,
        "approver_id": row.approver_id,
        "decided_at": row.decided_at.isoformat() if row.decided_at else None,
        "comment": row.comment,
        "bypassed": row.bypassed,
        "requested_at": row.requested_at.isoformat() if row.requested_at else None,
        "expires_at": row.expires_at.isoformat() if row.expires_at else None,
    }


def current_round(db: Session, release_id: str) -> list[DeployApproval]:
    return (
        db.query(DeployApproval)
        .filter(DeployApproval.release_id == release_id, DeployApproval.superseded_at.is_(None))
        .order_by(DeployApproval.slot_index.asc())
        .all()
    )


def round_state(db: Session, release_id: str) -> str:
    rows = current_round(db, release_id)
    if not rows:
        return "none"
    return round_outcome(rows[0].mode, [row.status for row in rows])


def round_is_current(db: Session, deployment: Deployment, rows: list[DeployApproval] | None = None) -> bool:
    """True when the open round may gate this deployment.

    A round answers for one deployment and for the check run it was requested
    against; unbound rounds requested by hand are adopted by the next deployment.
    """
    rows = current_round(db, deployment.release_id) if rows is None else rows
    if not rows:
        return False
    head = rows[0]
    if head.deployment_id not in (None, deployment.id):
        return False
    latest_run = latest_check_run(db, deployment.release_id)
    return head.check_run_id == (latest_run.id if latest_run is not None else None)


def bind_round(db: Session, deployment: Deployment) -> None:
    for row in current_round(db, deployment.release_id):
        if row.deployment_id is None:
            row.deployment_id = deployment.id


def all_approved(db: Session, release_id: str) -> bool:
    rows = current_round(db, release_id)
    if not rows:
        return False
    return quorum_met(rows[0].mode, [row.status for row in rows])


def _staging_deployment(db: Session, release_id: str) -> Deployment | None:
    return (
        db.query(Deployment)
        .filter(Deployment.release_id == release_id, Deployment.status == DeploymentState.STAGING.value)
        .first()
    )


def advance_if_quorum(db: Session, release_id: str, *, actor_id: str | None = None, now: datetime | None = None) -> bool:
    """Move the release's staging deployment to ready once the quorum is met. Caller holds the release guard."""
    if not all_approved(db, release_id):
        return False
    deployment = _staging_deployment(db, release_id)
    if deployment is None:
        return False
    if not round_is_current(db, deployment):
        return False
    bind_round(db, deployment)
    transition_deployment(
        db,
        deployment,
        DeploymentState.READY,
        detail="approval quorum met",
        actor_id=actor_id,
        now=now,
    )
    return True


def request_approvals(
    db: Session,
    release_id: str,
    *,
    warning_count: int = 0,
    deployment_id: str | None = None,
    check_run_id: str | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> list[DeployApproval]:
    """Open a new round for the release, superseding the current one.

    The round is stamped with the latest check run unless one is given.
    """
    requested_at = now or _utcnow()
    with release_guard(db, release_id) as release:
        if release.archived_at is not None:
            raise InvalidRequest(f"release '{release_id}' is archived", release_id=release_id)

        policy = policy_for_release(release)
        previous_round = (
            db.query(func.max(DeployApproval.round_number)).filter(DeployApproval.release_id == release_id).scalar()
        ) or 0
        for row in current_round(db, release_id):
            row.superseded_at = requested_at
        if check_run_id is None:
            latest_run = latest_check_run(db, release_id)
            check_run_id = latest_run.id if latest_run is not None else None

        expires_at = requested_at + timedelta(seconds=policy.timeout_seconds)
        rows = [
            DeployApproval(
                release_id=release_id,
                deployment_id=deployment_id,
                check_run_id=check_run_id,
                round_number=previous_round + 1,
                slot_index=index,
                approver_role=role,
                mode=policy.mode.value,
                status=ApprovalStatus.PENDING.value,
                requested_at=requested_at,
                expires_at=expires_at,
            )
            for index, role in enumerate(policy.required_slots(warning_count))
        ]
        db.add_all(rows)
        append_audit_log(
            db,
            action="approvals.requested",
            actor_id=actor_id,
            release_id=release_id,
            payload={
                "round_number": previous_round + 1,
                "roles": [row.approver_role for row in rows],
                "mode": policy.mode.value,
                "warning_count": warning_count,
                "deployment_id": deployment_id,
                "check_run_id": check_run_id,
                "expires_at": expires_at.isoformat(),
            },
        )
        db.commit()

    emit_structured_log(
        component="approvals",
        event="round_requested",
        release_id=release_id,
        round_number=previous_round + 1,
        slots=len(rows),
    )
    return rows


def submit_approval(
    db: Session,
    approval_id: str,
    *,
    approver_id: str,
    decision: str,
    comment: str | None = None,
    now: datetime | None = None,
) -> DeployApproval:
    decided_at = now or _utcnow()
    decision = decision.strip().lower()
    if decision not in DECISIONS:
        raise InvalidRequest(f"decision must be one of {sorted(DECISIONS)}", decision=decision)

    row = db.query(DeployApproval).filter(DeployApproval.id == approval_id).first()
    if row is None:
        raise NotFound(f"approval '{approval_id}' does not exist", approval_id=approval_id)
    approver = db.query(User).filter(User.id == approver_id).first()
    if approver is None:
        raise NotFound(f"approver '{approver_id}' is not a registered user", approver_id=approver_id)

    with release_guard(db, row.release_id) as release:
        db.refresh(row)
        if row.superseded_at is not None or row.status != ApprovalStatus.PENDING.value:
            raise AlreadyDecided(
                f"approval slot {row.slot_index} is already {row.status if row.superseded_at is None else 'superseded'}",
                approval_id=row.id,
                status=row.status,
            )
        expires_at = as_utc(row.expires_at)
        if expires_at is not None and decided_at >= expires_at:
            raise ApprovalTimedOut(
                f"approval slot {row.slot_index} expired at {expires_at.isoformat()}",
                approval_id=row.id,
            )

        policy = policy_for_release(release)
        if not policy.role_allowed(row.approver_role, approver.role):
            raise RoleNotEligible(
                f"role '{approver.role}' cannot decide a '{row.approver_role}' slot",
                approval_id=row.id,
                required_role=row.approver_role,
            )

        siblings = current_round(db, row.release_id)
        if policy.two_person_rule and any(item.approver_id == approver.id for item in siblings if item.id != row.id):
            raise TwoPersonRuleViolation(
                f"approver '{approver.id}' already filled a slot of this release",
                approval_id=row.id,
                approver_id=approver.id,
            )
        if row.mode == ApprovalMode.SEQUENTIAL.value:
            earlier = [item.slot_index for item in siblings if item.slot_index < row.slot_index and item.status == ApprovalStatus.PENDING.value]
            if earlier:
                raise ApprovalOutOfOrder(
                    f"slot {row.slot_index} cannot be decided before slot {min(earlier)}",
                    approval_id=row.id,
                    pending_slot=min(earlier),
                )

        row.status = decision
        row.approver_id = approver.id
        row.decided_at = decided_at
        row.comment = comment
        append_audit_log(
            db,
            action=f"approval.{decision}",
            actor_id=approver.id,
            release_id=row.release_id,
            payload={
                "approval_id": row.id,
                "round_number": row.round_number,
                "slot_index": row.slot_index,
                "approver_role": row.approver_role,
                "comment": comment,
            },
        )
        db.flush()
        advanced = advance_if_quorum(db, row.release_id, actor_id=approver.id, now=decided_at)
        db.commit()

    emit_structured_log(
        component="approvals",
        event="decision_recorded",
        release_id=row.release_id,
        approval_id=row.id,
        decision=decision,
        quorum_advanced=advanced,
    )
    return row


def emergency_bypass(
    db: Session,
    release_id: str,
    *,
    actor_id: str,
    justification: str,
    now: datetime | None = None,
) -> list[DeployApproval]:
    decided_at = now or _utcnow()
    actor = db.query(User).filter(User.id == actor_id).first()
    if actor is None:
        raise NotFound(f"user '{actor_id}' is not a registered user", actor_id=actor_id)
    if not justification or not justification.strip():
        raise BypassNotPermitted("emergency bypass requires a justification", actor_id=actor_id)

    with release_guard(db, release_id) as release:
        policy = policy_for_release(release)
        if not policy.bypass_allowed(actor.role):
            raise BypassNotPermitted(
                f"role '{actor.role}' may not bypass approvals"
                if policy.bypass_enabled
                else "emergency bypass is disabled by policy",
                actor_id=actor_id,
            )
        rows = current_round(db, release_id)
        pending = [row for row in rows if row.status == ApprovalStatus.PENDING.value]
        if not pending:
            raise InvalidRequest("no pending approval slots to bypass", release_id=release_id)

        for row in pending:
            row.status = ApprovalStatus.APPROVED.value
            row.bypassed = True
            row.approver_id = actor.id
            row.decided_at = decided_at
            row.comment = justification.strip()
        append_audit_log(
            db,
            action="approval.emergency_bypass",
            actor_id=actor.id,
            release_id=release_id,
            payload={
                "justification": justification.strip(),
                "approval_ids": [row.id for row in pending],
                "role": actor.role,
            },
        )
        db.flush()
        advance_if_quorum(db, release_id, actor_id=actor.id, now=decided_at)
        db.commit()

    emit_structured_log(
        component="approvals",
        event="emergency_bypass",
        release_id=release_id,
        actor_id=actor.id,
        slots=len(pending),
    )
    return rows


def expire_timed_out_approvals(db: Session, *, now: datetime | None = None) -> list[str]:
    """Expire pending slots past their deadline; staging deployments of those releases revert to queued."""
    swept_at = now or _utcnow()
    candidates = (
        db.query(DeployApproval.release_id)
        .filter(
            DeployApproval.status == ApprovalStatus.PENDING.value,
            DeployApproval.superseded_at.is_(None),
            DeployApproval.expires_at.is_not(None),
        )
        .distinct()
        .all()
    )
    affected: list[str] = []
    for (release_id,) in candidates:
        with release_guard(db, release_id):
            expired = [
                row
                for row in current_round(db, release_id)
                if row.status == ApprovalStatus.PENDING.value
                and row.expires_at is not None
                and as_utc(row.expires_at) <= swept_at
            ]
            if not expired:
                db.rollback()
                continue
            for row in expired:
                row.status = ApprovalStatus.EXPIRED.value
            append_audit_log(
                db,
                action="approvals.expired",
                release_id=release_id,
                payload={"approval_ids": [row.id for row in expired]},
            )
            deployment = _staging_deployment(db, release_id)
            if deployment is not None:
                transition_deployment(
                    db,
                    deployment,
                    DeploymentState.QUEUED,
                    detail="approval round timed out",
                    now=swept_at,
                )
            db.commit()
        affected.append(release_id)
        emit_structured_log(component="approvals", event="round_expired", release_id=release_id, slots=len(expired))
    return affected
