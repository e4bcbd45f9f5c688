from __future__ import annotations

import argparse
from datetime import datetime, timezone
import json
from typing import Any

from sqlalchemy.orm import Session

from logic_deploy.db.session import SessionLocal
from logic_deploy.services.approval_workflow import expire_timed_out_approvals
from logic_deploy.services.checkpoint_manager import discard_expired_checkpoints, fail_stale_rollbacks
from logic_deploy.services.deployment_orchestrator import start_due_maintenance_deployments
from logic_deploy.services.health_monitor import sweep_monitoring


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _print_payload(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True))


def _run_expire_approvals(db: Session) -> dict[str, Any]:
    releases = expire_timed_out_approvals(db, now=_utcnow())
    return {"job": "expire_approvals", "generated_at": _utcnow().isoformat(), "expired_releases": releases}


def _run_discard_checkpoints(db: Session) -> dict[str, Any]:
    checkpoints = discard_expired_checkpoints(db, now=_utcnow())
    return {"job": "discard_checkpoints", "generated_at": _utcnow().isoformat(), "discarded": checkpoints}


def _run_fail_stale_rollbacks(db: Session) -> tuple[dict[str, Any], int]:
    rollbacks = fail_stale_rollbacks(db, now=_utcnow())
    payload = {"job": "fail_stale_rollbacks", "generated_at": _utcnow().isoformat(), "failed": rollbacks}
    return payload, 2 if rollbacks else 0


def _run_monitor_sweep(db: Session) -> tuple[dict[str, Any], int]:
    outcomes = sweep_monitoring(db, now=_utcnow())
    payload = {"job": "monitor_sweep", "generated_at": _utcnow().isoformat(), "outcomes": outcomes}
    exit_code = 2 if any(value in {"rollback_failed", "unverified"} for value in outcomes.values()) else 0
    return payload, exit_code


def _run_start_due_maintenance(db: Session) -> dict[str, Any]:
    outcomes = start_due_maintenance_deployments(db, now=_utcnow())
    return {"job": "start_due_maintenance", "generated_at": _utcnow().isoformat(), "outcomes": outcomes}


def main() -> int:
    parser = argparse.ArgumentParser(description="Run host-native maintenance jobs for the logic deployment pipeline")
    subparsers = parser.add_subparsers(dest="job", required=True)
    subparsers.add_parser("expire-approvals")
    subparsers.add_parser("discard-checkpoints")
    subparsers.add_parser("fail-stale-rollbacks")
    subparsers.add_parser("monitor-sweep")
    subparsers.add_parser("start-due-maintenance")

    args = parser.parse_args()

    db = SessionLocal()
    try:
        if args.job == "expire-approvals":
            _print_payload(_run_expire_approvals(db))
            return 0

        if args.job == "discard-checkpoints":
            _print_payload(_run_discard_checkpoints(db))
            return 0

        if args.job == "fail-stale-rollbacks":
            payload, exit_code = _run_fail_stale_rollbacks(db)
            _print_payload(payload)
            return exit_code

        if args.job == "monitor-sweep":
            payload, exit_code = _run_monitor_sweep(db)
            _print_payload(payload)
            return exit_code

        if args.job == "start-due-maintenance":
            _print_payload(_run_start_due_maintenance(db))
            return 0

        _print_payload({"error": "unsupported_job", "job": args.job})
        return 1
    except Exception as exc:
        db.rollback()
        _print_payload(
            {
                "error": "maintenance_job_failed",
                "job": getattr(args, "job", "unknown"),
                "detail": str(exc),
                "generated_at": _utcnow().isoformat(),
            }
        )
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
