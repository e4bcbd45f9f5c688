from __future__ import annotations

from datetime import datetime
import json
import time
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from logic_deploy.db.session import SessionLocal, get_db_session
from logic_deploy.domain.deployment_state_machine import TERMINAL_STATES, DeploymentState
from logic_deploy.models import Deployment, DeploymentEvent
from logic_deploy.services.deployment_log import EVENT_SCHEMA_VERSION, event_schema_version
from logic_deploy.services.deployment_orchestrator import get_deployment_row

router = APIRouter(prefix="/api", tags=["events"])


class DeploymentEventResponse(BaseModel):
    schema_version: int
    id: int
    deployment_id: str
    event_type: str
    level: str
    step: int | None
    message: str | None
    status_from: str | None
    status_to: str | None
    payload: dict[str, Any] | None
    created_at: datetime


def _to_response(event: DeploymentEvent) -> DeploymentEventResponse:
    payload = dict(event.payload) if isinstance(event.payload, dict) else event.payload
    if isinstance(payload, dict):
        payload.setdefault("schema_version", event_schema_version(payload))
    return DeploymentEventResponse(
        schema_version=event_schema_version(event.payload),
        id=event.id,
        deployment_id=event.deployment_id,
        event_type=event.event_type,
        level=event.level,
        step=event.step,
        message=event.message,
        status_from=event.status_from,
        status_to=event.status_to,
        payload=payload,
        created_at=event.created_at,
    )


def _fetch_events(
    db: Session,
    *,
    deployment_id: str,
    limit: int,
    since_id: int | None = None,
    order: Literal["asc", "desc"] = "asc",
) -> list[DeploymentEvent]:
    query = db.query(DeploymentEvent).filter(DeploymentEvent.deployment_id == deployment_id)
    if since_id is not None:
        query = query.filter(DeploymentEvent.id > since_id)
    if order == "desc":
        return query.order_by(DeploymentEvent.id.desc()).limit(limit).all()
    return query.order_by(DeploymentEvent.id.asc()).limit(limit).all()


def _is_finished(db: Session, deployment_id: str) -> bool:
    row = db.query(Deployment.status, Deployment.monitor_state).filter(Deployment.id == deployment_id).first()
    if row is None:
        return True
    status, monitor_state = row
    if (monitor_state or {}).get("status") == "watching":
        return False
    return DeploymentState(status) in TERMINAL_STATES


@router.get("/events/schema")
def get_events_schema() -> dict[str, Any]:
    return {
        "version": EVENT_SCHEMA_VERSION,
        "event_fields": [
            "schema_version",
            "id",
            "deployment_id",
            "event_type",
            "level",
            "step",
            "message",
            "status_from",
            "status_to",
            "payload",
            "created_at",
        ],
        "stream": {
            "path": "/api/deployments/{deployment_id}/events/stream",
            "protocol": "sse",
            "event_name": "deployment_event",
            "cursor_param": "since_id",
        },
    }


@router.get("/deployments/{deployment_id}/events", response_model=list[DeploymentEventResponse])
def list_deployment_events(
    deployment_id: str,
    limit: int = Query(default=200, ge=1, le=500),
    order: Literal["asc", "desc"] = Query(default="asc"),
    since_id: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db_session),
) -> list[DeploymentEventResponse]:
    get_deployment_row(db, deployment_id)
    events = _fetch_events(db, deployment_id=deployment_id, limit=limit, since_id=since_id, order=order)
    return [_to_response(event) for event in events]


@router.get("/deployments/{deployment_id}/events/stream")
def stream_deployment_events(
    deployment_id: str,
    since_id: int | None = Query(default=None, ge=0),
    follow: bool = Query(default=True),
    poll_interval_seconds: float = Query(default=0.75, ge=0.1, le=10.0),
    heartbeat_seconds: int = Query(default=15, ge=5, le=120),
    batch_limit: int = Query(default=200, ge=1, le=500),
    db: Session = Depends(get_db_session),
) -> StreamingResponse:
    get_deployment_row(db, deployment_id)

    def event_stream():
        cursor = since_id
        heartbeat_deadline = time.monotonic() + heartbeat_seconds
        while True:
            with SessionLocal() as stream_db:
                events = _fetch_events(stream_db, deployment_id=deployment_id, since_id=cursor, limit=batch_limit)
                finished = _is_finished(stream_db, deployment_id)

            if events:
                for row in events:
                    response = _to_response(row)
                    body = json.dumps(response.model_dump(mode="json"))
                    yield f"id: {row.id}\nevent: deployment_event\ndata: {body}\n\n"
                    cursor = row.id
                heartbeat_deadline = time.monotonic() + heartbeat_seconds
                if not follow:
                    return
                continue

            # Followers stay attached through the monitoring window of a completed deployment.
            if not follow or finished:
                return

            if time.monotonic() >= heartbeat_deadline:
                yield ": heartbeat\n\n"
                heartbeat_deadline = time.monotonic() + heartbeat_seconds

            time.sleep(poll_interval_seconds)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
