from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.orm import Session

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import CheckpointFailed, NotFound, RollbackFailed, RollbackUnavailable, RuntimeCommunicationError
from logic_deploy.domain.deployment_state_machine import DeploymentState
from logic_deploy.models import Checkpoint, Deployment, Rollback
from logic_deploy.models.common import as_utc
from logic_deploy.services.deployment_log import append_audit_log, append_deployment_event
from logic_deploy.services.observability import emit_structured_log
from logic_deploy.services.release_locks import release_guard
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime


ROLLBACK_ELIGIBLE_STATES = {
    DeploymentState.COMPLETED.value,
    DeploymentState.FAILED.value,
    DeploymentState.CANCELLED.value,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_checkpoint(row: Checkpoint) -> dict[str, Any]:
    return {
        "id": row.id,
        "deployment_id": row.deployment_id,
        "captured_state": dict(row.captured_state or {}),
        "captured_at": row.captured_at.isoformat() if row.captured_at else None,
        "discarded_at": row.discarded_at.isoformat() if row.discarded_at else None,
    }


def serialize_rollback(row: Rollback) -> dict[str, Any]:
    return {
        "id": row.id,
        "deployment_id": row.deployment_id,
        "checkpoint_id": row.checkpoint_id,
        "initiated_by": row.initiated_by,
        "reason": row.reason,
        "status": row.status,
        "detail": dict(row.detail or {}),
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


def get_checkpoint(db: Session, deployment_id: str) -> Checkpoint | None:
    return db.query(Checkpoint).filter(Checkpoint.deployment_id == deployment_id).first()


def get_rollback(db: Session, deployment_id: str) -> Rollback | None:
    return db.query(Rollback).filter(Rollback.deployment_id == deployment_id).first()


def create_checkpoint(
    db: Session,
    deployment: Deployment,
    *,
    runtime: TargetRuntime,
    chunks: list[str] | None = None,
    now: datetime | None = None,
) -> Checkpoint:
    """Capture the pre-deployment state of every target. Caller holds the release guard.

    Raises ``CheckpointFailed`` before anything on the targets has been mutated.
    """
    existing = get_checkpoint(db, deployment.id)
    if existing is not None:
        return existing

    targets: dict[str, dict[str, Any]] = {}
    for target in deployment.target_list:
        try:
            state = runtime.capture_state(target)
        except RuntimeCommunicationError as exc:
            raise CheckpointFailed(
                f"could not capture state of '{target}': {exc.reason}",
                deployment_id=deployment.id,
                target=target,
                timed_out=exc.timed_out,
            ) from exc
        if chunks is not None:
            revisions = dict(state.get("chunks") or {})
            state = {**state, "chunks": {chunk: revisions.get(chunk) for chunk in chunks}}
        targets[target] = state

    row = Checkpoint(
        deployment_id=deployment.id,
        captured_state={"targets": targets, "strategy": deployment.strategy},
        captured_at=now or _utcnow(),
    )
    db.add(row)
    db.flush()
    deployment.checkpoint_id = row.id
    append_deployment_event(
        db,
        deployment_id=deployment.id,
        release_id=deployment.release_id,
        event_type="checkpoint_created",
        message=f"checkpoint captured for {len(targets)} target(s)",
        payload={"checkpoint_id": row.id, "targets": sorted(targets)},
    )
    return row


def can_rollback(db: Session, deployment: Deployment, *, now: datetime | None = None) -> bool:
    if deployment.status not in ROLLBACK_ELIGIBLE_STATES:
        return False
    checkpoint = get_checkpoint(db, deployment.id)
    if checkpoint is None or checkpoint.discarded_at is not None:
        return False
    if deployment.status != DeploymentState.COMPLETED.value:
        return True
    retention = timedelta(hours=get_settings().checkpoint_retention_hours)
    return (now or _utcnow()) < as_utc(checkpoint.captured_at) + retention


def _restore_target(runtime: TargetRuntime, target: str, state: dict[str, Any]) -> str | None:
    """Restore one target; returns an error description, or None on success."""
    try:
        runtime.restore(target, state)
        return None
    except RuntimeCommunicationError as exc:
        if not exc.timed_out:
            return exc.reason
        try:
            remote = runtime.query_state(target)
        except RuntimeCommunicationError as query_exc:
            return f"restore timed out and state could not be re-queried: {query_exc.reason}"
        if remote.get("active_snapshot_id") == state.get("active_snapshot_id"):
            return None
        return "restore timed out and the target is not on the checkpoint snapshot"


def rollback(
    db: Session,
    deployment_id: str,
    *,
    initiated_by: str,
    reason: str,
    runtime: TargetRuntime | None = None,
    now: datetime | None = None,
) -> Rollback:
    """Restore every target of a deployment to its checkpoint.

    Idempotent: when a rollback already exists for the deployment it is returned
    unchanged. A failed restore raises ``RollbackFailed`` after recording it.
    """
    deployment = db.query(Deployment).filter(Deployment.id == deployment_id).first()
    if deployment is None:
        raise NotFound(f"deployment '{deployment_id}' does not exist", deployment_id=deployment_id)
    runtime = runtime or get_target_runtime()

    with release_guard(db, deployment.release_id):
        db.refresh(deployment)
        existing = get_rollback(db, deployment.id)
        if existing is not None:
            return existing
        if not can_rollback(db, deployment, now=now):
            raise RollbackUnavailable(
                f"deployment in status '{deployment.status}' has no retained checkpoint to roll back to",
                deployment_id=deployment.id,
                status=deployment.status,
            )
        checkpoint = get_checkpoint(db, deployment.id)
        row = Rollback(
            deployment_id=deployment.id,
            checkpoint_id=checkpoint.id,
            initiated_by=initiated_by,
            reason=reason,
            status="in_progress",
            created_at=now or _utcnow(),
        )
        db.add(row)
        append_deployment_event(
            db,
            deployment_id=deployment.id,
            release_id=deployment.release_id,
            event_type="rollback_started",
            level="warning",
            message=reason,
            payload={"checkpoint_id": checkpoint.id, "initiated_by": initiated_by},
            actor_id=initiated_by,
            audit_action="deployment.rollback_started",
        )
        db.commit()
        captured = dict((checkpoint.captured_state or {}).get("targets") or {})

    errors: dict[str, str] = {}
    for target, state in captured.items():
        error = _restore_target(runtime, target, dict(state or {}))
        if error is not None:
            errors[target] = error

    with release_guard(db, deployment.release_id):
        db.refresh(row)
        row.completed_at = _utcnow()
        if errors:
            row.status = "failed"
            row.detail = {"errors": errors, "manual_intervention_required": True}
            append_deployment_event(
                db,
                deployment_id=deployment.id,
                release_id=deployment.release_id,
                event_type="rollback_failed",
                level="error",
                message="rollback failed; manual intervention required",
                payload={"errors": errors, "checkpoint_id": row.checkpoint_id},
            )
            append_audit_log(
                db,
                action="deployment.rollback_failed",
                actor_id=initiated_by,
                release_id=deployment.release_id,
                payload={"deployment_id": deployment.id, "errors": errors},
            )
            db.commit()
            emit_structured_log(
                component="rollback",
                event="rollback_failed",
                level=logging.ERROR,
                deployment_id=deployment.id,
                release_id=deployment.release_id,
                errors=errors,
                manual_intervention_required=True,
            )
            raise RollbackFailed(
                f"restore failed on {len(errors)} target(s)",
                deployment_id=deployment.id,
                rollback_id=row.id,
                errors=errors,
            )

        row.status = "completed"
        row.detail = {"restored_targets": sorted(captured)}
        append_deployment_event(
            db,
            deployment_id=deployment.id,
            release_id=deployment.release_id,
            event_type="rollback_completed",
            level="warning",
            message=f"restored {len(captured)} target(s) to checkpoint",
            payload={"checkpoint_id": row.checkpoint_id},
            actor_id=initiated_by,
            audit_action="deployment.rollback_completed",
        )
        db.commit()
    return row


def discard_expired_checkpoints(db: Session, *, now: datetime | None = None) -> list[str]:
    swept_at = now or _utcnow()
    cutoff = swept_at - timedelta(hours=get_settings().checkpoint_retention_hours)
    rows = (
        db.query(Checkpoint)
        .join(Deployment, Deployment.id == Checkpoint.deployment_id)
        .filter(
            Checkpoint.discarded_at.is_(None),
            Checkpoint.captured_at < cutoff,
            Deployment.status.in_(sorted(ROLLBACK_ELIGIBLE_STATES)),
        )
        .all()
    )
    for row in rows:
        row.discarded_at = swept_at
        append_deployment_event(
            db,
            deployment_id=row.deployment_id,
            event_type="checkpoint_discarded",
            message="checkpoint retention elapsed",
            payload={"checkpoint_id": row.id},
        )
    db.commit()
    return [row.id for row in rows]


def fail_stale_rollbacks(db: Session, *, now: datetime | None = None) -> list[str]:
    """Mark rollbacks stuck ``in_progress`` past every restore timeout as failed.

    A rollback whose worker died between the start and finish records never
    completes on its own; operators must check the targets by hand.
    """
    swept_at = now or _utcnow()
    settings = get_settings()
    rows = db.query(Rollback).filter(Rollback.status == "in_progress").all()
    failed: list[str] = []
    for row in rows:
        checkpoint = db.query(Checkpoint).filter(Checkpoint.id == row.checkpoint_id).first()
        targets = sorted(((checkpoint.captured_state if checkpoint else None) or {}).get("targets") or {})
        # Restores run one target at a time, each bounded by the runtime timeout.
        budget = max(
            float(settings.rollback_stale_after_seconds),
            settings.runtime_request_timeout_seconds * max(len(targets), 1),
        )
        started_at = as_utc(row.created_at)
        if started_at is None or swept_at - started_at <= timedelta(seconds=budget):
            continue

        deployment = db.query(Deployment).filter(Deployment.id == row.deployment_id).first()
        release_id = deployment.release_id if deployment else None
        row.status = "failed"
        row.completed_at = swept_at
        row.detail = {
            "errors": {target: "restore outcome unknown; rollback never finished" for target in targets},
            "manual_intervention_required": True,
            "stale_since": started_at.isoformat(),
        }
        append_deployment_event(
            db,
            deployment_id=row.deployment_id,
            release_id=release_id,
            event_type="rollback_failed",
            level="error",
            message="rollback never finished; manual intervention required",
            payload={"checkpoint_id": row.checkpoint_id, "stale_since": started_at.isoformat()},
        )
        append_audit_log(
            db,
            action="deployment.rollback_failed",
            actor_id="system:sweeper",
            release_id=release_id,
            payload={"deployment_id": row.deployment_id, "rollback_id": row.id, "reason": "stale"},
        )
        emit_structured_log(
            component="rollback",
            event="rollback_stale",
            level=logging.ERROR,
            deployment_id=row.deployment_id,
            release_id=release_id,
            rollback_id=row.id,
            manual_intervention_required=True,
        )
        failed.append(row.id)
    db.commit()
    return failed
