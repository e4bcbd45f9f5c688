from __future__ import annotations

from datetime import datetime
import json
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from logic_deploy.core.errors import PipelineError
from logic_deploy.db.session import SessionLocal, get_db_session
from logic_deploy.domain.safety_checks import list_safety_checks
from logic_deploy.services.external_sources import TagDatabase, VersioningCenter, get_tag_database, get_versioning_center
from logic_deploy.services.release_registry import require_release
from logic_deploy.services.safety_check_runner import (
    latest_check_run,
    latest_check_summary,
    list_checks_for_run,
    run_safety_checks,
)
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime

router = APIRouter(prefix="/api", tags=["checks"])


class SafetyCheckResponse(BaseModel):
    id: int
    run_id: str
    position: int
    key: str
    name: str
    severity: str
    status: str
    message: str | None
    details: list[dict[str, Any]] | None
    started_at: datetime | None
    ended_at: datetime | None


class SafetyCheckRunResponse(BaseModel):
    release_id: str
    run_id: str | None
    status: str | None
    facts_fingerprint: str | None
    facts_summary: dict[str, Any] | None
    evaluated: bool
    blocking: list[str]
    warnings: list[str]
    checks: list[SafetyCheckResponse]


@router.get("/checks/catalog")
def get_check_catalog() -> list[dict[str, Any]]:
    return list_safety_checks()


@router.get("/releases/{release_id}/checks", response_model=SafetyCheckRunResponse)
def list_release_checks(release_id: str, db: Session = Depends(get_db_session)) -> SafetyCheckRunResponse:
    require_release(db, release_id)
    run = latest_check_run(db, release_id)
    summary = latest_check_summary(db, release_id)
    checks = list_checks_for_run(db, run.id) if run is not None else []
    return SafetyCheckRunResponse(
        release_id=release_id,
        run_id=run.id if run else None,
        status=run.status if run else None,
        facts_fingerprint=run.facts_fingerprint if run else None,
        facts_summary=run.facts_summary if run else None,
        evaluated=summary.evaluated,
        blocking=list(summary.blocking),
        warnings=list(summary.warnings),
        checks=[
            SafetyCheckResponse(
                id=check.id,
                run_id=check.run_id,
                position=check.position,
                key=check.key,
                name=check.name,
                severity=check.severity,
                status=check.status,
                message=check.message,
                details=check.details,
                started_at=check.started_at,
                ended_at=check.ended_at,
            )
            for check in checks
        ],
    )


@router.post("/releases/{release_id}/checks/run")
def run_release_checks(
    release_id: str,
    strategy: str | None = Query(default=None),
    db: Session = Depends(get_db_session),
    versioning: VersioningCenter = Depends(get_versioning_center),
    tags: TagDatabase = Depends(get_tag_database),
    runtime: TargetRuntime = Depends(get_target_runtime),
) -> StreamingResponse:
    require_release(db, release_id)

    def check_stream():
        with SessionLocal() as stream_db:
            try:
                for update in run_safety_checks(
                    stream_db,
                    release_id,
                    versioning=versioning,
                    tags=tags,
                    runtime=runtime,
                    strategy=strategy,
                ):
                    yield f"event: safety_check\ndata: {json.dumps(update)}\n\n"
            except PipelineError as exc:
                stream_db.rollback()
                yield f"event: error\ndata: {json.dumps(exc.to_payload())}\n\n"
                return
            summary = latest_check_summary(stream_db, release_id)
        body = {
            "evaluated": summary.evaluated,
            "passed": summary.passed,
            "blocking": list(summary.blocking),
            "warnings": list(summary.warnings),
        }
        yield f"event: summary\ndata: {json.dumps(body)}\n\n"

    return StreamingResponse(
        check_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
