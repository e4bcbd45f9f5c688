from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Iterator

from sqlalchemy.orm import Session

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import ExternalServiceError, NotFound, RuntimeCommunicationError
from logic_deploy.domain.deployment_state_machine import ACTIVE_STATES
from logic_deploy.domain.logic_facts import extract_facts
from logic_deploy.domain.safety_checks import (
    SAFETY_CHECKS,
    CheckContext,
    CheckOutcome,
    CheckStatus,
    CheckSummary,
    MaintenanceWindow,
    Severity,
    iter_safety_checks,
    summarize_outcomes,
)
from logic_deploy.models import Deployment, Release, SafetyCheck, SafetyCheckRun
from logic_deploy.services.deployment_log import append_audit_log
from logic_deploy.services.external_sources import TagDatabase, VersioningCenter, get_tag_database, get_versioning_center
from logic_deploy.services.observability import emit_structured_log
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_check(row: SafetyCheck) -> dict[str, Any]:
    return {
        "id": row.id,
        "run_id": row.run_id,
        "release_id": row.release_id,
        "position": row.position,
        "key": row.key,
        "name": row.name,
        "severity": row.severity,
        "status": row.status,
        "message": row.message,
        "details": list(row.details or []),
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "ended_at": row.ended_at.isoformat() if row.ended_at else None,
    }


def latest_check_run(db: Session, release_id: str) -> SafetyCheckRun | None:
    return (
        db.query(SafetyCheckRun)
        .filter(SafetyCheckRun.release_id == release_id, SafetyCheckRun.superseded_at.is_(None))
        .order_by(SafetyCheckRun.started_at.desc())
        .first()
    )


def list_checks_for_run(db: Session, run_id: str) -> list[SafetyCheck]:
    return (
        db.query(SafetyCheck)
        .filter(SafetyCheck.run_id == run_id)
        .order_by(SafetyCheck.position.asc())
        .all()
    )


def latest_check_summary(db: Session, release_id: str) -> CheckSummary:
    run = latest_check_run(db, release_id)
    if run is None or run.status != "completed":
        return CheckSummary(evaluated=False, blocking=(), warnings=())
    outcomes = [
        CheckOutcome(
            position=row.position,
            key=row.key,
            name=row.name,
            severity=Severity(row.severity),
            status=CheckStatus(row.status),
            message=row.message,
        )
        for row in list_checks_for_run(db, run.id)
    ]
    return summarize_outcomes(outcomes)


def _strategy_for(db: Session, release: Release, strategy: str | None) -> str | None:
    if strategy:
        return strategy
    active = (
        db.query(Deployment)
        .filter(Deployment.release_id == release.id, Deployment.status.in_([item.value for item in ACTIVE_STATES]))
        .order_by(Deployment.created_at.desc())
        .first()
    )
    if active is not None:
        return active.strategy
    value = release.metadata_dict.get("strategy")
    return str(value) if value else None


def _probe_runtime_locks(runtime: TargetRuntime, targets: list[str]) -> tuple[dict[str, str | None], tuple[str, ...]]:
    locks: dict[str, str | None] = {}
    unreachable: list[str] = []
    for target in targets:
        try:
            locks[target] = runtime.get_lock_holder(target)
        except RuntimeCommunicationError as exc:
            unreachable.append(target)
            emit_structured_log(
                component="safety_checks",
                event="runtime_lock_probe_failed",
                level=logging.WARNING,
                target=target,
                detail=exc.reason,
            )
    return locks, tuple(unreachable)


def _input_failure_outcomes(message: str) -> Iterator[CheckOutcome]:
    for position, definition in enumerate(SAFETY_CHECKS, start=1):
        yield CheckOutcome(
            position=position,
            key=definition.key,
            name=definition.name,
            severity=definition.severity,
            status=CheckStatus.RUNNING,
        )
        yield CheckOutcome(
            position=position,
            key=definition.key,
            name=definition.name,
            severity=definition.severity,
            status=CheckStatus.FAILED,
            message=message,
            details=({"problem": "inputs_unavailable"},),
        )


def run_safety_checks(
    db: Session,
    release_id: str,
    *,
    versioning: VersioningCenter | None = None,
    tags: TagDatabase | None = None,
    runtime: TargetRuntime | None = None,
    strategy: str | None = None,
    now: datetime | None = None,
) -> Iterator[dict[str, Any]]:
    """Evaluate every safety check for a release, persisting and yielding each update.

    The previous run of the release is superseded as soon as the new one starts.
    Unavailable inputs become failed checks, never an exception.
    """
    settings = get_settings()
    evaluated_at = now or _utcnow()
    release = db.query(Release).filter(Release.id == release_id).first()
    if release is None:
        raise NotFound(f"release '{release_id}' does not exist", release_id=release_id)

    versioning = versioning or get_versioning_center()
    tags = tags or get_tag_database()
    runtime = runtime or get_target_runtime()
    metadata = release.metadata_dict

    run = SafetyCheckRun(release_id=release.id, status="running", started_at=evaluated_at)
    previous = latest_check_run(db, release.id)
    if previous is not None:
        previous.superseded_at = evaluated_at
    db.add(run)
    db.flush()

    rows: dict[int, SafetyCheck] = {}
    for position, definition in enumerate(SAFETY_CHECKS, start=1):
        row = SafetyCheck(
            run_id=run.id,
            release_id=release.id,
            position=position,
            key=definition.key,
            name=definition.name,
            severity=definition.severity.value,
            status=CheckStatus.PENDING.value,
        )
        db.add(row)
        rows[position] = row
    db.commit()

    for position in sorted(rows):
        yield serialize_check(rows[position])

    outcomes: Iterator[CheckOutcome]
    try:
        snapshot = versioning.get_snapshot(release.snapshot_id)
    except ExternalServiceError as exc:
        emit_structured_log(
            component="safety_checks",
            event="snapshot_unavailable",
            level=logging.WARNING,
            release_id=release.id,
            detail=exc.reason,
        )
        outcomes = _input_failure_outcomes(f"Snapshot '{release.snapshot_id}' is unavailable: {exc.reason}")
    else:
        facts = extract_facts(snapshot)
        run.facts_fingerprint = facts.fingerprint()
        run.facts_summary = facts.summary()

        try:
            critical_tags: dict[str, str | None] | None = tags.get_critical_tags(release.project_id)
        except ExternalServiceError as exc:
            emit_structured_log(
                component="safety_checks",
                event="critical_tags_unavailable",
                level=logging.WARNING,
                release_id=release.id,
                detail=exc.reason,
            )
            critical_tags = None

        locks, unreachable = _probe_runtime_locks(runtime, release.target_runtimes)
        context = CheckContext(
            facts=facts,
            now=evaluated_at,
            release_metadata=metadata,
            critical_tags=critical_tags,
            runtime_locks=locks,
            unreachable_targets=unreachable,
            lock_owner=release.id,
            strategy=_strategy_for(db, release, strategy),
            maintenance_window=MaintenanceWindow.from_metadata(metadata.get("maintenance_window")),
            accepted_dialects=tuple(settings.accepted_dialects),
            memory_limit_bytes=int(metadata.get("memory_limit_bytes") or settings.resource_memory_limit_bytes),
            scan_time_limit_ms=float(metadata.get("scan_time_limit_ms") or settings.resource_scan_time_limit_ms),
        )
        outcomes = iter_safety_checks(context)

    final: list[CheckOutcome] = []
    for outcome in outcomes:
        row = rows[outcome.position]
        stamp = _utcnow()
        row.status = outcome.status.value
        if outcome.status == CheckStatus.RUNNING:
            row.started_at = stamp
        else:
            row.message = outcome.message
            row.details = [dict(item) for item in outcome.details]
            row.ended_at = stamp
            final.append(outcome)
        db.commit()
        yield serialize_check(row)

    run.status = "completed"
    run.completed_at = _utcnow()
    blocking = [item.key for item in final if item.blocking]
    append_audit_log(
        db,
        action="safety_checks.completed",
        release_id=release.id,
        payload={
            "run_id": run.id,
            "facts_fingerprint": run.facts_fingerprint,
            "results": {item.key: item.status.value for item in final},
            "blocking": blocking,
        },
    )
    db.commit()
    emit_structured_log(
        component="safety_checks",
        event="run_completed",
        release_id=release.id,
        run_id=run.id,
        blocking=blocking,
    )
