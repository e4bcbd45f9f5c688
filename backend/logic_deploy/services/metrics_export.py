from __future__ import annotations

from datetime import datetime, timezone
from statistics import mean

from sqlalchemy.orm import Session

from logic_deploy.domain.deployment_state_machine import ACTIVE_STATES, TERMINAL_STATES, DeploymentState
from logic_deploy.models import DeployApproval, Deployment, Rollback
from logic_deploy.models.common import as_utc


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _duration_seconds(started_at: datetime, ended_at: datetime) -> float:
    return max(0.0, (as_utc(ended_at) - as_utc(started_at)).total_seconds())


def collect_core_metrics(db: Session) -> dict[str, object]:
    queue_depth = (
        db.query(Deployment)
        .filter(Deployment.status.in_([state.value for state in ACTIVE_STATES]))
        .count()
    )
    pending_approvals = (
        db.query(DeployApproval)
        .filter(DeployApproval.status == "pending", DeployApproval.superseded_at.is_(None))
        .count()
    )

    terminal_deployments = (
        db.query(Deployment)
        .filter(Deployment.status.in_(sorted(state.value for state in TERMINAL_STATES)))
        .all()
    )
    terminal_count = len(terminal_deployments)
    failed_count = sum(1 for item in terminal_deployments if item.status == DeploymentState.FAILED.value)
    durations = [
        _duration_seconds(item.started_at, item.completed_at)
        for item in terminal_deployments
        if item.started_at is not None and item.completed_at is not None
    ]

    rollbacks = db.query(Rollback).all()
    failed_rollbacks = sum(1 for item in rollbacks if item.status == "failed")

    avg_duration_seconds = float(mean(durations)) if durations else 0.0
    max_duration_seconds = max(durations) if durations else 0.0
    failure_rate = (failed_count / terminal_count) if terminal_count else 0.0
    rollback_rate = (len(rollbacks) / terminal_count) if terminal_count else 0.0

    return {
        "observed_at": _utcnow_iso(),
        "queue_depth": queue_depth,
        "pending_approvals": pending_approvals,
        "duration_seconds": {
            "avg": round(avg_duration_seconds, 3),
            "max": round(max_duration_seconds, 3),
            "sample_size": len(durations),
        },
        "failure_rate": round(failure_rate, 6),
        "rollback_rate": round(rollback_rate, 6),
        "failed_deployments": failed_count,
        "terminal_deployments": terminal_count,
        "rollbacks": len(rollbacks),
        "failed_rollbacks": failed_rollbacks,
    }
