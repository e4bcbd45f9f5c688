from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from logic_deploy.core.errors import InvalidTransition
from logic_deploy.domain.deployment_state_machine import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    DeploymentState,
    FailureReasonCode,
    TransitionRuleError,
    ensure_transition_allowed,
)
from logic_deploy.models import Deployment
from logic_deploy.services.deployment_log import append_deployment_event


def active_deployment_for_release(db: Session, release_id: str) -> Deployment | None:
    return (
        db.query(Deployment)
        .filter(Deployment.release_id == release_id, Deployment.status.in_([item.value for item in ACTIVE_STATES]))
        .order_by(Deployment.created_at.desc())
        .first()
    )


def transition_deployment(
    db: Session,
    deployment: Deployment,
    target: DeploymentState,
    *,
    failure_reason: FailureReasonCode | None = None,
    detail: str | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> None:
    current = DeploymentState(deployment.status)
    try:
        ensure_transition_allowed(current, target, failure_reason)
    except TransitionRuleError as exc:
        raise InvalidTransition(str(exc), deployment_id=deployment.id, status=current.value) from exc

    stamp = now or datetime.now(timezone.utc)
    deployment.status = target.value
    if failure_reason is not None:
        deployment.failure_reason_code = failure_reason.value
        deployment.failure_detail = detail
    if target == DeploymentState.DEPLOYING and deployment.started_at is None:
        deployment.started_at = stamp
    if target in TERMINAL_STATES:
        deployment.active_release_id = None
        deployment.completed_at = stamp

    append_deployment_event(
        db,
        deployment_id=deployment.id,
        release_id=deployment.release_id,
        event_type="status_changed",
        level="error" if target == DeploymentState.FAILED else "info",
        step=deployment.current_step,
        message=detail,
        status_from=current.value,
        status_to=target.value,
        payload={"failure_reason_code": failure_reason.value if failure_reason else None},
        actor_id=actor_id,
        audit_action="deployment.transition",
    )
