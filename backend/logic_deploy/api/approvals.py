from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from logic_deploy.db.session import get_db_session
from logic_deploy.services.approval_workflow import (
    current_round,
    emergency_bypass,
    request_approvals,
    round_state,
    submit_approval,
)
from logic_deploy.services.observability import current_trace_id, emit_structured_log
from logic_deploy.services.release_registry import require_release
from logic_deploy.services.safety_check_runner import latest_check_summary

router = APIRouter(prefix="/api", tags=["approvals"])


class RequestApprovalsRequest(BaseModel):
    actor_id: str | None = None


class DecisionRequest(BaseModel):
    approver_id: str
    decision: str
    comment: str | None = None


class BypassRequest(BaseModel):
    actor_id: str
    justification: str


class ApprovalResponse(BaseModel):
    id: str
    release_id: str
    deployment_id: str | None = None
    check_run_id: str | None = None
    round_number: int
    slot_index: int
    approver_role: str
    mode: str
    status: str
    approver_id: str | None
    decided_at: datetime | None
    comment: str | None
    bypassed: bool
    requested_at: datetime
    expires_at: datetime | None


class ApprovalRoundResponse(BaseModel):
    release_id: str
    state: str
    approvals: list[ApprovalResponse]


def _to_response(item) -> ApprovalResponse:
    return ApprovalResponse(
        id=item.id,
        release_id=item.release_id,
        round_number=item.round_number,
        slot_index=item.slot_index,
        approver_role=item.approver_role,
        mode=item.mode,
        status=item.status,
        approver_id=item.approver_id,
        decided_at=item.decided_at,
        comment=item.comment,
        bypassed=item.bypassed,
        requested_at=item.requested_at,
        expires_at=item.expires_at,
    )


def _round_response(db: Session, release_id: str) -> ApprovalRoundResponse:
    return ApprovalRoundResponse(
        release_id=release_id,
        state=round_state(db, release_id),
        approvals=[_to_response(item) for item in current_round(db, release_id)],
    )


@router.get("/releases/{release_id}/approvals", response_model=ApprovalRoundResponse)
def list_release_approvals(release_id: str, db: Session = Depends(get_db_session)) -> ApprovalRoundResponse:
    require_release(db, release_id)
    return _round_response(db, release_id)


@router.post("/releases/{release_id}/approvals/request", response_model=ApprovalRoundResponse)
def request_release_approvals(
    release_id: str,
    payload: RequestApprovalsRequest | None = None,
    db: Session = Depends(get_db_session),
) -> ApprovalRoundResponse:
    summary = latest_check_summary(db, release_id)
    request_approvals(
        db,
        release_id,
        warning_count=len(summary.warnings),
        actor_id=payload.actor_id if payload else None,
    )
    return _round_response(db, release_id)


@router.post("/approvals/{approval_id}/decision", response_model=ApprovalResponse)
def decide_approval(approval_id: str, payload: DecisionRequest, db: Session = Depends(get_db_session)) -> ApprovalResponse:
    row = submit_approval(
        db,
        approval_id,
        approver_id=payload.approver_id,
        decision=payload.decision,
        comment=payload.comment,
    )
    emit_structured_log(
        component="api.approvals",
        event="approval_decided",
        trace_id=current_trace_id(),
        release_id=row.release_id,
        approval_id=row.id,
        decision=row.status,
    )
    return _to_response(row)


@router.post("/releases/{release_id}/approvals/bypass", response_model=ApprovalRoundResponse)
def bypass_release_approvals(
    release_id: str,
    payload: BypassRequest,
    db: Session = Depends(get_db_session),
) -> ApprovalRoundResponse:
    emergency_bypass(db, release_id, actor_id=payload.actor_id, justification=payload.justification)
    return _round_response(db, release_id)
