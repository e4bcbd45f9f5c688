"""Post-deployment observation window and auto-rollback trigger."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.orm import Session

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import RollbackFailed, RollbackUnavailable, RuntimeCommunicationError
from logic_deploy.domain.deployment_state_machine import DeploymentState
from logic_deploy.domain.health_thresholds import HealthThresholds, evaluate_sample
from logic_deploy.models import Deployment
from logic_deploy.models.common import as_utc
from logic_deploy.services.checkpoint_manager import rollback
from logic_deploy.services.deployment_log import append_deployment_event
from logic_deploy.services.observability import emit_structured_log
from logic_deploy.services.release_locks import release_guard
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime


MONITOR_ACTOR = "system:monitor"
WATCHING = "watching"
UNVERIFIED = "unverified"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def watched_deployments(db: Session) -> list[Deployment]:
    rows = (
        db.query(Deployment)
        .filter(Deployment.status == DeploymentState.COMPLETED.value, Deployment.monitor_until.is_not(None))
        .order_by(Deployment.completed_at.asc())
        .all()
    )
    return [row for row in rows if (row.monitor_state or {}).get("status") == WATCHING]


def _unverified_targets(deployment: Deployment, state: dict[str, Any], max_missed_ratio: float) -> dict[str, dict[str, int]]:
    readings = state.get("readings") or {}
    missed = state.get("missed") or {}
    unverified: dict[str, dict[str, int]] = {}
    for target in deployment.target_list:
        read = int(readings.get(target) or 0)
        lost = int(missed.get(target) or 0)
        if read == 0 or lost / (read + lost) > max_missed_ratio:
            unverified[target] = {"readings": read, "missed": lost}
    return unverified


def _finish_window(db: Session, deployment: Deployment, *, now: datetime) -> str:
    state = dict(deployment.monitor_state or {})
    state["finished_at"] = now.isoformat()
    unverified = _unverified_targets(deployment, state, get_settings().monitor_max_missed_ratio)
    if unverified:
        state["status"] = UNVERIFIED
        state["unverified"] = unverified
        state["manual_intervention_required"] = True
        deployment.monitor_state = state
        append_deployment_event(
            db,
            deployment_id=deployment.id,
            release_id=deployment.release_id,
            event_type="monitoring_unverified",
            level="error",
            message=f"observation window closed without enough health readings for {', '.join(sorted(unverified))}",
            payload={"unverified": unverified, "manual_intervention_required": True},
            actor_id=MONITOR_ACTOR,
            audit_action="deployment.monitoring_unverified",
        )
        emit_structured_log(
            component="monitor",
            event="monitoring_unverified",
            level=logging.ERROR,
            deployment_id=deployment.id,
            release_id=deployment.release_id,
            unverified=unverified,
        )
        return UNVERIFIED

    state["status"] = "passed"
    deployment.monitor_state = state
    append_deployment_event(
        db,
        deployment_id=deployment.id,
        release_id=deployment.release_id,
        event_type="monitoring_passed",
        message=f"observation window closed after {state.get('samples', 0)} sample round(s)",
        payload={"samples": state.get("samples", 0)},
    )
    return "passed"


def _sample_targets(
    deployment: Deployment,
    runtime: TargetRuntime,
    thresholds: HealthThresholds,
) -> tuple[dict[str, Any], dict[str, list[str]], dict[str, str]]:
    counters = dict((deployment.monitor_state or {}).get("counters") or {})
    breaches: dict[str, list[str]] = {}
    unreachable: dict[str, str] = {}
    for target in deployment.target_list:
        try:
            sample = runtime.health(target)
        except RuntimeCommunicationError as exc:
            unreachable[target] = exc.reason
            continue
        counters[target], reasons = evaluate_sample(sample, counters.get(target), thresholds)
        if reasons:
            breaches[target] = reasons
    return counters, breaches, unreachable


def observe_deployment(
    db: Session,
    deployment_id: str,
    *,
    runtime: TargetRuntime | None = None,
    now: datetime | None = None,
) -> str:
    """Take one health sample round for a completed deployment.

    Returns the monitor status afterwards: ``watching``, ``passed``,
    ``unverified`` (window closed without enough health readings),
    ``rolled_back`` or ``rollback_failed``.
    """
    runtime = runtime or get_target_runtime()
    observed_at = now or _utcnow()
    thresholds = HealthThresholds.from_settings(get_settings())
    deployment = db.query(Deployment).filter(Deployment.id == deployment_id).first()
    if deployment is None:
        return "missing"

    with release_guard(db, deployment.release_id):
        db.refresh(deployment)
        state = dict(deployment.monitor_state or {})
        if deployment.status != DeploymentState.COMPLETED.value or state.get("status") != WATCHING:
            db.commit()
            return str(state.get("status") or deployment.status)
        if observed_at >= as_utc(deployment.monitor_until):
            outcome = _finish_window(db, deployment, now=observed_at)
            db.commit()
            return outcome

    counters, breaches, unreachable = _sample_targets(deployment, runtime, thresholds)

    with release_guard(db, deployment.release_id):
        db.refresh(deployment)
        state = dict(deployment.monitor_state or {})
        state["counters"] = counters
        state["samples"] = int(state.get("samples") or 0) + 1
        state["last_sampled_at"] = observed_at.isoformat()
        readings = dict(state.get("readings") or {})
        missed = dict(state.get("missed") or {})
        for target in deployment.target_list:
            if target in unreachable:
                missed[target] = int(missed.get(target) or 0) + 1
            else:
                readings[target] = int(readings.get(target) or 0) + 1
        state["readings"] = readings
        state["missed"] = missed
        if unreachable:
            state["unreachable"] = unreachable
            append_deployment_event(
                db,
                deployment_id=deployment.id,
                release_id=deployment.release_id,
                event_type="monitoring_sample_missed",
                level="warning",
                message=f"health unavailable for {', '.join(sorted(unreachable))}",
                payload={"unreachable": unreachable},
            )
        if not breaches:
            deployment.monitor_state = state
            db.commit()
            return WATCHING

        state["status"] = "breached"
        state["breaches"] = breaches
        deployment.monitor_state = state
        append_deployment_event(
            db,
            deployment_id=deployment.id,
            release_id=deployment.release_id,
            event_type="health_threshold_breached",
            level="error",
            message="; ".join(f"{target}: {', '.join(reasons)}" for target, reasons in sorted(breaches.items())),
            payload={"breaches": breaches},
            actor_id=MONITOR_ACTOR,
            audit_action="deployment.health_breached",
        )
        db.commit()

    reason = "health threshold breached after deployment"
    outcome = "rolled_back"
    try:
        rollback(db, deployment.id, initiated_by=MONITOR_ACTOR, reason=reason, runtime=runtime)
    except RollbackFailed:
        outcome = "rollback_failed"
    except RollbackUnavailable as exc:
        outcome = "rollback_unavailable"
        emit_structured_log(
            component="monitor",
            event="rollback_unavailable",
            level=logging.ERROR,
            deployment_id=deployment.id,
            release_id=deployment.release_id,
            detail=exc.reason,
        )

    with release_guard(db, deployment.release_id):
        db.refresh(deployment)
        state = dict(deployment.monitor_state or {})
        state["status"] = outcome
        deployment.monitor_state = state
        db.commit()
    emit_structured_log(
        component="monitor",
        event="auto_rollback",
        level=logging.WARNING if outcome == "rolled_back" else logging.ERROR,
        deployment_id=deployment.id,
        release_id=deployment.release_id,
        outcome=outcome,
        breaches=breaches,
    )
    return outcome


def sweep_monitoring(
    db: Session,
    *,
    runtime: TargetRuntime | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    runtime = runtime or get_target_runtime()
    outcomes: dict[str, str] = {}
    for deployment in watched_deployments(db):
        outcomes[deployment.id] = observe_deployment(db, deployment.id, runtime=runtime, now=now)
    return outcomes
