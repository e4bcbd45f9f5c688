from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import (
    ApprovalRejected,
    ApprovalTimedOut,
    CheckFailed,
    CheckpointFailed,
    ChecksNotEvaluated,
    DeploymentConflict,
    InvalidRequest,
    InvalidTransition,
    MaintenanceWindowUnavailable,
    NotFound,
    PipelineError,
    QuorumNotMet,
    RollbackFailed,
)
from logic_deploy.domain.approval_policy import ApprovalStatus
from logic_deploy.domain.deployment_state_machine import (
    TERMINAL_STATES,
    DeploymentState,
    DeploymentStrategy,
    FailureReasonCode,
)
from logic_deploy.domain.health_thresholds import HealthThresholds
from logic_deploy.domain.logic_facts import Snapshot, extract_facts
from logic_deploy.domain.safety_checks import MaintenanceWindow
from logic_deploy.models import Deployment, DeploymentEvent, Release, Rollback
from logic_deploy.models.common import as_utc
from logic_deploy.services.approval_workflow import (
    advance_if_quorum,
    bind_round,
    current_round,
    request_approvals,
    round_is_current,
    round_state,
)
from logic_deploy.services.checkpoint_manager import (
    create_checkpoint,
    get_checkpoint,
    get_rollback,
    rollback,
    serialize_checkpoint,
    serialize_rollback,
)
from logic_deploy.services.deployment_log import append_deployment_event
from logic_deploy.services.deployment_transitions import active_deployment_for_release, transition_deployment
from logic_deploy.services.external_sources import VersioningCenter, get_versioning_center
from logic_deploy.services.observability import emit_structured_log
from logic_deploy.services.release_locks import release_guard
from logic_deploy.services.rollout_strategies import StepContext, StepResult, build_plan, execute_step
from logic_deploy.services.safety_check_runner import latest_check_run, latest_check_summary
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime


SYSTEM_ACTOR = "system"

_EXECUTOR_LOCK = threading.Lock()
_ACTIVE_EXECUTORS: set[str] = set()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _claim_executor(deployment_id: str) -> bool:
    with _EXECUTOR_LOCK:
        if deployment_id in _ACTIVE_EXECUTORS:
            return False
        _ACTIVE_EXECUTORS.add(deployment_id)
        return True


def _release_executor(deployment_id: str) -> None:
    with _EXECUTOR_LOCK:
        _ACTIVE_EXECUTORS.discard(deployment_id)


def executor_active(deployment_id: str) -> bool:
    with _EXECUTOR_LOCK:
        return deployment_id in _ACTIVE_EXECUTORS


def serialize_event(row: DeploymentEvent) -> dict[str, Any]:
    return {
        "id": row.id,
        "deployment_id": row.deployment_id,
        "event_type": row.event_type,
        "level": row.level,
        "step": row.step,
        "message": row.message,
        "status_from": row.status_from,
        "status_to": row.status_to,
        "payload": row.payload,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def serialize_deployment(row: Deployment) -> dict[str, Any]:
    return {
        "id": row.id,
        "release_id": row.release_id,
        "strategy": row.strategy,
        "status": row.status,
        "failure_reason_code": row.failure_reason_code,
        "failure_detail": row.failure_detail,
        "targets": row.target_list,
        "plan": row.plan_steps,
        "current_step": row.current_step,
        "progress_percent": row.progress_percent,
        "strategy_state": dict(row.strategy_state or {}),
        "checkpoint_id": row.checkpoint_id,
        "cancel_requested_at": row.cancel_requested_at.isoformat() if row.cancel_requested_at else None,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
        "monitor_until": row.monitor_until.isoformat() if row.monitor_until else None,
        "monitor_state": dict(row.monitor_state or {}),
        "created_by": row.created_by,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def get_deployment_row(db: Session, deployment_id: str) -> Deployment:
    row = db.query(Deployment).filter(Deployment.id == deployment_id).first()
    if row is None:
        raise NotFound(f"deployment '{deployment_id}' does not exist", deployment_id=deployment_id)
    return row


def list_deployment_events(
    db: Session,
    deployment_id: str,
    *,
    after_id: int | None = None,
    limit: int = 500,
) -> list[DeploymentEvent]:
    query = db.query(DeploymentEvent).filter(DeploymentEvent.deployment_id == deployment_id)
    if after_id is not None:
        query = query.filter(DeploymentEvent.id > after_id)
    return query.order_by(DeploymentEvent.id.asc()).limit(limit).all()


def get_deployment(db: Session, deployment_id: str) -> dict[str, Any]:
    """State, percent complete and the append-only progress log. Never mutates."""
    row = get_deployment_row(db, deployment_id)
    checkpoint = get_checkpoint(db, row.id)
    rollback_row = get_rollback(db, row.id)
    payload = serialize_deployment(row)
    payload["checkpoint"] = serialize_checkpoint(checkpoint) if checkpoint else None
    payload["rollback"] = serialize_rollback(rollback_row) if rollback_row else None
    payload["progress_log"] = [serialize_event(item) for item in list_deployment_events(db, row.id)]
    return payload


def create_deployment(
    db: Session,
    release_id: str,
    *,
    strategy: str,
    targets: list[str] | None = None,
    actor_id: str | None = None,
) -> Deployment:
    try:
        strategy_value = DeploymentStrategy(strategy)
    except ValueError as exc:
        raise InvalidRequest(f"unknown deployment strategy '{strategy}'", strategy=strategy) from exc

    with release_guard(db, release_id) as release:
        if release.archived_at is not None:
            raise InvalidRequest(f"release '{release_id}' is archived and cannot be deployed", release_id=release_id)
        existing = active_deployment_for_release(db, release_id)
        if existing is not None:
            raise DeploymentConflict(
                f"release already has active deployment '{existing.id}' in status '{existing.status}'",
                release_id=release_id,
                deployment_id=existing.id,
            )
        resolved_targets = [item.strip() for item in (targets or release.target_runtimes) if item and item.strip()]
        if not resolved_targets:
            raise InvalidRequest("deployment needs at least one target runtime", release_id=release_id)

        row = Deployment(
            release_id=release_id,
            active_release_id=release_id,
            strategy=strategy_value.value,
            status=DeploymentState.QUEUED.value,
            targets=resolved_targets,
            plan=[],
            current_step=0,
            progress_percent=0,
            strategy_state={},
            created_by=actor_id,
        )
        db.add(row)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise DeploymentConflict("release already has an active deployment", release_id=release_id) from exc
        append_deployment_event(
            db,
            deployment_id=row.id,
            release_id=release_id,
            event_type="deployment_created",
            status_to=DeploymentState.QUEUED.value,
            message=f"{strategy_value.value} deployment to {', '.join(resolved_targets)}",
            payload={"strategy": strategy_value.value, "targets": resolved_targets},
            actor_id=actor_id,
            audit_action="deployment.created",
        )
        db.commit()
    return row


def _require_checks_passed(db: Session, release_id: str) -> tuple[str, ...]:
    summary = latest_check_summary(db, release_id)
    if not summary.evaluated:
        raise ChecksNotEvaluated("safety checks have not been evaluated for this release", release_id=release_id)
    if summary.blocking:
        raise CheckFailed(
            f"critical safety checks failed: {', '.join(summary.blocking)}",
            severity="critical",
            release_id=release_id,
            blocking=list(summary.blocking),
        )
    return summary.warnings


def _enter_staging(db: Session, deployment: Deployment, *, actor_id: str | None, now: datetime) -> None:
    warnings = _require_checks_passed(db, deployment.release_id)
    transition_deployment(db, deployment, DeploymentState.STAGING, detail="safety checks passed", actor_id=actor_id, now=now)
    if round_state(db, deployment.release_id) == ApprovalStatus.EXPIRED.value or not round_is_current(db, deployment):
        _request_round(db, deployment, warning_count=len(warnings), actor_id=actor_id, now=now)
    else:
        bind_round(db, deployment)
        db.commit()


def _request_round(
    db: Session,
    deployment: Deployment,
    *,
    warning_count: int,
    actor_id: str | None,
    now: datetime,
) -> None:
    latest_run = latest_check_run(db, deployment.release_id)
    request_approvals(
        db,
        deployment.release_id,
        warning_count=warning_count,
        deployment_id=deployment.id,
        check_run_id=latest_run.id if latest_run is not None else None,
        actor_id=actor_id,
        now=now,
    )


def _enter_ready(db: Session, deployment: Deployment, *, actor_id: str | None, now: datetime) -> None:
    warnings = _require_checks_passed(db, deployment.release_id)
    if not round_is_current(db, deployment):
        _request_round(db, deployment, warning_count=len(warnings), actor_id=actor_id, now=now)
        rows = current_round(db, deployment.release_id)
        raise QuorumNotMet(
            f"safety checks changed since approval was requested; 0 of {len(rows)} required approvals granted",
            release_id=deployment.release_id,
            deployment_id=deployment.id,
            approved=0,
            required=len(rows),
        )
    state = round_state(db, deployment.release_id)
    if state == ApprovalStatus.REJECTED.value:
        db.commit()
        raise ApprovalRejected(
            "an approver rejected this release",
            release_id=deployment.release_id,
            deployment_id=deployment.id,
        )
    if state == ApprovalStatus.EXPIRED.value:
        db.commit()
        raise ApprovalTimedOut("the approval round expired", release_id=deployment.release_id, deployment_id=deployment.id)
    if not advance_if_quorum(db, deployment.release_id, actor_id=actor_id, now=now):
        rows = current_round(db, deployment.release_id)
        approved = sum(1 for row in rows if row.status == ApprovalStatus.APPROVED.value)
        db.commit()
        raise QuorumNotMet(
            f"{approved} of {len(rows)} required approvals granted",
            release_id=deployment.release_id,
            deployment_id=deployment.id,
            approved=approved,
            required=len(rows),
        )
    db.commit()


def _cohorts_for(release: Release) -> list[int]:
    configured = release.metadata_dict.get("canary_cohorts")
    if configured:
        cohorts = [int(item) for item in configured if 0 < int(item) <= 100]
        if cohorts:
            return cohorts
    return get_settings().canary_cohorts


def _check_maintenance_window(db: Session, deployment: Deployment, release: Release, *, now: datetime) -> None:
    window = MaintenanceWindow.from_metadata(release.metadata_dict.get("maintenance_window"))
    if window is None or not window.approved:
        raise MaintenanceWindowUnavailable(
            "no approved maintenance window for this release",
            deployment_id=deployment.id,
        )
    if window.has_ended(now):
        transition_deployment(
            db,
            deployment,
            DeploymentState.FAILED,
            failure_reason=FailureReasonCode.MAINTENANCE_WINDOW_MISSED,
            detail=f"maintenance window ended at {window.ends_at.isoformat()}",
            now=now,
        )
        db.commit()
        raise MaintenanceWindowUnavailable(
            "the maintenance window was missed",
            remediation="Schedule a new maintenance window and create a new deployment.",
            deployment_id=deployment.id,
        )
    if not window.is_open(now):
        raise MaintenanceWindowUnavailable(
            f"maintenance window opens at {window.starts_at.isoformat()}",
            remediation="The deployment waits in 'ready' and starts when the window opens.",
            deployment_id=deployment.id,
            opens_at=window.starts_at.isoformat(),
        )


def _enter_deploying(
    db: Session,
    deployment: Deployment,
    release: Release,
    *,
    runtime: TargetRuntime,
    versioning: VersioningCenter,
    actor_id: str | None,
    now: datetime,
) -> Snapshot:
    _require_checks_passed(db, release.id)
    if round_state(db, release.id) != ApprovalStatus.APPROVED.value:
        raise QuorumNotMet("approvals changed since the deployment became ready", deployment_id=deployment.id)
    if deployment.strategy == DeploymentStrategy.MAINTENANCE_WINDOW.value:
        _check_maintenance_window(db, deployment, release, now=now)

    snapshot = versioning.get_snapshot(release.snapshot_id)
    facts = extract_facts(snapshot) if deployment.strategy == DeploymentStrategy.CHUNKED.value else None
    plan = build_plan(deployment.strategy, facts=facts, cohorts=_cohorts_for(release))
    deployment.plan = plan
    deployment.current_step = 0
    deployment.progress_percent = 0
    chunks = None
    if facts is not None:
        chunks = [chunk for step in plan for chunk in step.get("chunks", [])]

    try:
        create_checkpoint(db, deployment, runtime=runtime, chunks=chunks, now=now)
    except CheckpointFailed as exc:
        transition_deployment(
            db,
            deployment,
            DeploymentState.FAILED,
            failure_reason=FailureReasonCode.CHECKPOINT_FAILED,
            detail=exc.reason,
            actor_id=actor_id,
            now=now,
        )
        db.commit()
        raise
    transition_deployment(db, deployment, DeploymentState.DEPLOYING, detail="checkpoint captured", actor_id=actor_id, now=now)
    db.commit()
    return snapshot


def _step_context(deployment: Deployment, snapshot: Snapshot, runtime: TargetRuntime) -> StepContext:
    settings = get_settings()
    return StepContext(
        snapshot_id=snapshot.snapshot_id,
        targets=deployment.target_list,
        files=[{"path": item.path, "dialect": item.dialect, "content": item.content} for item in snapshot.files],
        runtime=runtime,
        thresholds=HealthThresholds.from_settings(settings),
        max_parallel_chunks=max(1, settings.max_parallel_chunks),
    )


def _merge_strategy_state(current: dict[str, Any] | None, updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(current or {})
    for key, value in updates.items():
        if isinstance(value, list):
            merged[key] = list(merged.get(key) or []) + value
        else:
            merged[key] = value
    return merged


def _record_step(db: Session, deployment: Deployment, index: int, result: StepResult) -> None:
    plan = deployment.plan_steps
    plan[index]["status"] = "done" if result.ok else "failed"
    deployment.plan = plan
    if result.ok:
        deployment.current_step = index + 1
        deployment.progress_percent = int(100 * (index + 1) / len(plan)) if plan else 100
        deployment.strategy_state = _merge_strategy_state(deployment.strategy_state, result.state_updates)
    append_deployment_event(
        db,
        deployment_id=deployment.id,
        release_id=deployment.release_id,
        event_type="step_completed" if result.ok else "step_failed",
        level="info" if result.ok else "error",
        step=index,
        message=f"{plan[index]['label']}: {result.message}",
        payload={"action": plan[index]["action"], "detail": result.detail},
    )


def _complete(db: Session, deployment: Deployment, *, now: datetime) -> None:
    settings = get_settings()
    deployment.progress_percent = 100
    deployment.monitor_until = now + timedelta(seconds=settings.monitor_window_seconds)
    deployment.monitor_state = {"status": "watching", "samples": 0, "counters": {}}
    transition_deployment(db, deployment, DeploymentState.COMPLETED, detail="all steps applied", now=now)


def _execute(
    db: Session,
    deployment: Deployment,
    *,
    runtime: TargetRuntime,
    snapshot: Snapshot,
) -> Deployment:
    if not _claim_executor(deployment.id):
        return deployment

    context = _step_context(deployment, snapshot, runtime)
    rollback_reason: str | None = None
    try:
        while True:
            with release_guard(db, deployment.release_id):
                db.refresh(deployment)
                status = DeploymentState(deployment.status)
                if deployment.cancel_requested_at is not None and status in {DeploymentState.DEPLOYING, DeploymentState.PAUSED}:
                    transition_deployment(db, deployment, DeploymentState.CANCELLED, detail="cancelled at step boundary")
                    db.commit()
                    rollback_reason = "deployment cancelled during rollout"
                    break
                if status != DeploymentState.DEPLOYING:
                    db.commit()
                    return deployment
                index = deployment.current_step
                plan = deployment.plan_steps
                if index >= len(plan):
                    _complete(db, deployment, now=_utcnow())
                    db.commit()
                    emit_structured_log(
                        component="orchestrator",
                        event="deployment_completed",
                        deployment_id=deployment.id,
                        release_id=deployment.release_id,
                    )
                    return deployment
                step = plan[index]
                append_deployment_event(
                    db,
                    deployment_id=deployment.id,
                    release_id=deployment.release_id,
                    event_type="step_started",
                    step=index,
                    message=step["label"],
                    payload={"action": step["action"]},
                )
                db.commit()

            # Runtime calls happen outside the release guard.
            try:
                result = execute_step(step, context)
            except Exception as exc:
                emit_structured_log(
                    component="orchestrator",
                    event="step_crashed",
                    level=logging.ERROR,
                    deployment_id=deployment.id,
                    step=index,
                    error=str(exc),
                )
                result = StepResult(
                    ok=False,
                    message=f"unexpected error: {type(exc).__name__}: {exc}",
                    failure_reason=FailureReasonCode.UNKNOWN_ERROR,
                )

            with release_guard(db, deployment.release_id):
                db.refresh(deployment)
                _record_step(db, deployment, index, result)
                if result.ok:
                    db.commit()
                    continue
                transition_deployment(
                    db,
                    deployment,
                    DeploymentState.FAILED,
                    failure_reason=result.failure_reason or FailureReasonCode.RUNTIME_ERROR,
                    detail=result.message,
                )
                db.commit()
                rollback_reason = result.message
                break
    finally:
        _release_executor(deployment.id)

    if get_checkpoint(db, deployment.id) is not None:
        rollback(db, deployment.id, initiated_by=SYSTEM_ACTOR, reason=rollback_reason, runtime=runtime)
    db.refresh(deployment)
    return deployment


def start_deployment(
    db: Session,
    deployment_id: str,
    *,
    runtime: TargetRuntime | None = None,
    versioning: VersioningCenter | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Deployment:
    """Advance a deployment as far as its guards allow and run its rollout.

    Progress made before a guard stops it is committed; the guard then raises
    its typed error (``ChecksNotEvaluated``, ``CheckFailed``, ``QuorumNotMet``,
    ``MaintenanceWindowUnavailable`` ...).
    """
    runtime = runtime or get_target_runtime()
    versioning = versioning or get_versioning_center()
    started_at = now or _utcnow()
    deployment = get_deployment_row(db, deployment_id)

    with release_guard(db, deployment.release_id) as release:
        db.refresh(deployment)
        if deployment.status == DeploymentState.QUEUED.value:
            _enter_staging(db, deployment, actor_id=actor_id, now=started_at)
        if deployment.status == DeploymentState.STAGING.value:
            _enter_ready(db, deployment, actor_id=actor_id, now=started_at)

        if deployment.status == DeploymentState.READY.value:
            snapshot = _enter_deploying(
                db,
                deployment,
                release,
                runtime=runtime,
                versioning=versioning,
                actor_id=actor_id,
                now=started_at,
            )
        elif deployment.status == DeploymentState.DEPLOYING.value:
            if executor_active(deployment.id):
                return deployment
            snapshot = versioning.get_snapshot(release.snapshot_id)
        else:
            raise InvalidTransition(
                f"cannot start a deployment in status '{deployment.status}'",
                deployment_id=deployment.id,
                status=deployment.status,
            )

    return _execute(db, deployment, runtime=runtime, snapshot=snapshot)


def pause_deployment(db: Session, deployment_id: str, *, actor_id: str | None = None) -> Deployment:
    deployment = get_deployment_row(db, deployment_id)
    with release_guard(db, deployment.release_id):
        db.refresh(deployment)
        transition_deployment(
            db,
            deployment,
            DeploymentState.PAUSED,
            detail="pause requested; takes effect at the next step boundary",
            actor_id=actor_id,
        )
        db.commit()
    return deployment


def resume_deployment(
    db: Session,
    deployment_id: str,
    *,
    runtime: TargetRuntime | None = None,
    versioning: VersioningCenter | None = None,
    actor_id: str | None = None,
) -> Deployment:
    runtime = runtime or get_target_runtime()
    versioning = versioning or get_versioning_center()
    deployment = get_deployment_row(db, deployment_id)
    with release_guard(db, deployment.release_id) as release:
        db.refresh(deployment)
        if deployment.status != DeploymentState.PAUSED.value or deployment.cancel_requested_at is not None:
            raise InvalidTransition(
                f"only paused deployments can resume (status '{deployment.status}')",
                deployment_id=deployment.id,
                status=deployment.status,
            )
        snapshot = versioning.get_snapshot(release.snapshot_id)
        transition_deployment(db, deployment, DeploymentState.DEPLOYING, detail="resumed", actor_id=actor_id)
        db.commit()

    if executor_active(deployment.id):
        return deployment
    return _execute(db, deployment, runtime=runtime, snapshot=snapshot)


def cancel_deployment(
    db: Session,
    deployment_id: str,
    *,
    runtime: TargetRuntime | None = None,
    actor_id: str | None = None,
) -> Deployment:
    deployment = get_deployment_row(db, deployment_id)
    needs_rollback = False
    with release_guard(db, deployment.release_id):
        db.refresh(deployment)
        if DeploymentState(deployment.status) in TERMINAL_STATES:
            raise InvalidTransition(
                f"deployment is already {deployment.status}",
                deployment_id=deployment.id,
                status=deployment.status,
            )
        if executor_active(deployment.id):
            if deployment.cancel_requested_at is None:
                deployment.cancel_requested_at = _utcnow()
                append_deployment_event(
                    db,
                    deployment_id=deployment.id,
                    release_id=deployment.release_id,
                    event_type="cancel_requested",
                    level="warning",
                    step=deployment.current_step,
                    message="cancellation requested; the rollout stops at the next step boundary",
                    actor_id=actor_id,
                    audit_action="deployment.cancel_requested",
                )
            db.commit()
            return deployment

        was_mutating = deployment.status in {DeploymentState.DEPLOYING.value, DeploymentState.PAUSED.value}
        transition_deployment(db, deployment, DeploymentState.CANCELLED, detail="cancelled", actor_id=actor_id)
        db.commit()
        needs_rollback = was_mutating and get_checkpoint(db, deployment.id) is not None

    if needs_rollback:
        rollback(
            db,
            deployment.id,
            initiated_by=actor_id or SYSTEM_ACTOR,
            reason="deployment cancelled during rollout",
            runtime=runtime or get_target_runtime(),
        )
        db.refresh(deployment)
    return deployment


def rollback_deployment(
    db: Session,
    deployment_id: str,
    *,
    initiated_by: str,
    reason: str,
    runtime: TargetRuntime | None = None,
) -> Rollback:
    get_deployment_row(db, deployment_id)
    return rollback(db, deployment_id, initiated_by=initiated_by, reason=reason, runtime=runtime)


def start_due_maintenance_deployments(
    db: Session,
    *,
    runtime: TargetRuntime | None = None,
    versioning: VersioningCenter | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    """Start ready maintenance-window deployments whose window is open; fail those that waited too long."""
    settings = get_settings()
    swept_at = now or _utcnow()
    rows = (
        db.query(Deployment)
        .filter(
            Deployment.status == DeploymentState.READY.value,
            Deployment.strategy == DeploymentStrategy.MAINTENANCE_WINDOW.value,
        )
        .order_by(Deployment.created_at.asc())
        .all()
    )
    outcomes: dict[str, str] = {}
    for row in rows:
        try:
            result = start_deployment(db, row.id, runtime=runtime, versioning=versioning, actor_id=SYSTEM_ACTOR, now=swept_at)
            outcomes[row.id] = result.status
        except MaintenanceWindowUnavailable as exc:
            db.rollback()
            waited = swept_at - (as_utc(row.updated_at) or swept_at)
            if row.status == DeploymentState.READY.value and waited.total_seconds() > settings.maintenance_wait_timeout_seconds:
                with release_guard(db, row.release_id):
                    db.refresh(row)
                    transition_deployment(
                        db,
                        row,
                        DeploymentState.FAILED,
                        failure_reason=FailureReasonCode.MAINTENANCE_WINDOW_MISSED,
                        detail=f"no maintenance window opened within {settings.maintenance_wait_timeout_seconds}s",
                        now=swept_at,
                    )
                    db.commit()
            db.refresh(row)
            outcomes[row.id] = row.status if row.status != DeploymentState.READY.value else f"waiting:{exc.code}"
        except RollbackFailed:
            db.rollback()
            outcomes[row.id] = "rollback_failed"
        except PipelineError as exc:
            db.rollback()
            emit_structured_log(
                component="orchestrator",
                event="maintenance_start_failed",
                level=logging.WARNING,
                deployment_id=row.id,
                code=exc.code,
                detail=exc.reason,
            )
            outcomes[row.id] = f"error:{exc.code}"
    return outcomes
