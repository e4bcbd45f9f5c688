from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from logic_deploy.core.errors import RollbackFailed
from logic_deploy.db.session import get_db_session
from logic_deploy.domain.deployment_state_machine import list_deployment_states, list_failure_reason_codes, list_strategies
from logic_deploy.services.checkpoint_manager import serialize_rollback
from logic_deploy.services.deployment_orchestrator import (
    cancel_deployment,
    create_deployment,
    get_deployment,
    pause_deployment,
    resume_deployment,
    rollback_deployment,
    start_deployment,
)
from logic_deploy.services.external_sources import VersioningCenter, get_versioning_center
from logic_deploy.services.observability import current_trace_id, emit_structured_log
from logic_deploy.services.target_runtime import TargetRuntime, get_target_runtime

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


class CreateDeploymentRequest(BaseModel):
    release_id: str
    strategy: str
    targets: list[str] | None = None
    actor_id: str | None = None


class ActorRequest(BaseModel):
    actor_id: str | None = None


class RollbackRequest(BaseModel):
    initiated_by: str
    reason: str


@router.get("/meta")
def get_deployment_meta() -> dict[str, list[str]]:
    return {
        "states": list_deployment_states(),
        "strategies": list_strategies(),
        "failure_reason_codes": list_failure_reason_codes(),
    }


@router.post("")
def create(payload: CreateDeploymentRequest, db: Session = Depends(get_db_session)) -> dict[str, Any]:
    row = create_deployment(
        db,
        payload.release_id,
        strategy=payload.strategy,
        targets=payload.targets,
        actor_id=payload.actor_id,
    )
    emit_structured_log(
        component="api.deployments",
        event="deployment_created",
        trace_id=current_trace_id(),
        release_id=row.release_id,
        deployment_id=row.id,
        strategy=row.strategy,
    )
    return get_deployment(db, row.id)


@router.get("/{deployment_id}")
def read(deployment_id: str, db: Session = Depends(get_db_session)) -> dict[str, Any]:
    return get_deployment(db, deployment_id)


@router.post("/{deployment_id}/start")
def start(
    deployment_id: str,
    payload: ActorRequest | None = None,
    db: Session = Depends(get_db_session),
    runtime: TargetRuntime = Depends(get_target_runtime),
    versioning: VersioningCenter = Depends(get_versioning_center),
) -> dict[str, Any]:
    start_deployment(
        db,
        deployment_id,
        runtime=runtime,
        versioning=versioning,
        actor_id=payload.actor_id if payload else None,
    )
    return get_deployment(db, deployment_id)


@router.post("/{deployment_id}/pause")
def pause(deployment_id: str, payload: ActorRequest | None = None, db: Session = Depends(get_db_session)) -> dict[str, Any]:
    pause_deployment(db, deployment_id, actor_id=payload.actor_id if payload else None)
    return get_deployment(db, deployment_id)


@router.post("/{deployment_id}/resume")
def resume(
    deployment_id: str,
    payload: ActorRequest | None = None,
    db: Session = Depends(get_db_session),
    runtime: TargetRuntime = Depends(get_target_runtime),
    versioning: VersioningCenter = Depends(get_versioning_center),
) -> dict[str, Any]:
    resume_deployment(
        db,
        deployment_id,
        runtime=runtime,
        versioning=versioning,
        actor_id=payload.actor_id if payload else None,
    )
    return get_deployment(db, deployment_id)


@router.post("/{deployment_id}/cancel")
def cancel(
    deployment_id: str,
    payload: ActorRequest | None = None,
    db: Session = Depends(get_db_session),
    runtime: TargetRuntime = Depends(get_target_runtime),
) -> dict[str, Any]:
    cancel_deployment(db, deployment_id, runtime=runtime, actor_id=payload.actor_id if payload else None)
    return get_deployment(db, deployment_id)


@router.post("/{deployment_id}/rollback")
def execute_rollback(
    deployment_id: str,
    payload: RollbackRequest,
    db: Session = Depends(get_db_session),
    runtime: TargetRuntime = Depends(get_target_runtime),
) -> dict[str, Any]:
    try:
        row = rollback_deployment(
            db,
            deployment_id,
            initiated_by=payload.initiated_by,
            reason=payload.reason,
            runtime=runtime,
        )
    except RollbackFailed:
        emit_structured_log(
            component="api.deployments",
            event="rollback_failed",
            trace_id=current_trace_id(),
            deployment_id=deployment_id,
            initiated_by=payload.initiated_by,
        )
        raise
    return serialize_rollback(row)
