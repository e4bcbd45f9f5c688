from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from logic_deploy.db.session import get_db_session
from logic_deploy.services.external_sources import VersioningCenter, get_versioning_center
from logic_deploy.services.release_registry import (
    archive_release,
    list_releases,
    require_release,
    sync_releases,
    upsert_release,
)

router = APIRouter(prefix="/api/releases", tags=["releases"])


class CreateReleaseRequest(BaseModel):
    project_id: str
    version_id: str
    snapshot_id: str
    stage: str = "candidate"
    target_runtimes: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    created_by: str | None = None


class SyncReleasesRequest(BaseModel):
    project_id: str


class ArchiveReleaseRequest(BaseModel):
    actor_id: str | None = None


class ReleaseResponse(BaseModel):
    id: str
    project_id: str
    version_id: str
    snapshot_id: str
    stage: str
    created_by: str | None
    metadata: dict[str, Any]
    target_runtimes: list[str]
    created_at: datetime
    archived_at: datetime | None


def _to_release_response(item) -> ReleaseResponse:
    return ReleaseResponse(
        id=item.id,
        project_id=item.project_id,
        version_id=item.version_id,
        snapshot_id=item.snapshot_id,
        stage=item.stage,
        created_by=item.created_by,
        metadata=item.metadata_dict,
        target_runtimes=item.target_runtimes,
        created_at=item.created_at,
        archived_at=item.archived_at,
    )


@router.get("", response_model=list[ReleaseResponse])
def get_releases(
    limit: int = Query(default=100, ge=1, le=500),
    project_id: str | None = Query(default=None),
    stage: str | None = Query(default=None),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db_session),
) -> list[ReleaseResponse]:
    records = list_releases(
        db=db,
        limit=limit,
        project_id=project_id,
        stage=stage,
        include_archived=include_archived,
    )
    return [_to_release_response(item) for item in records]


@router.post("", response_model=ReleaseResponse)
def create_release(payload: CreateReleaseRequest, db: Session = Depends(get_db_session)) -> ReleaseResponse:
    metadata = dict(payload.metadata or {})
    if payload.target_runtimes:
        metadata["target_runtimes"] = payload.target_runtimes
    record = upsert_release(
        db=db,
        project_id=payload.project_id,
        version_id=payload.version_id,
        snapshot_id=payload.snapshot_id,
        stage=payload.stage,
        metadata=metadata,
        created_by=payload.created_by,
    )
    return _to_release_response(record)


@router.post("/sync", response_model=list[ReleaseResponse])
def sync_project_releases(
    payload: SyncReleasesRequest,
    db: Session = Depends(get_db_session),
    versioning: VersioningCenter = Depends(get_versioning_center),
) -> list[ReleaseResponse]:
    records = sync_releases(db=db, project_id=payload.project_id, versioning=versioning)
    return [_to_release_response(item) for item in records]


@router.get("/{release_id}", response_model=ReleaseResponse)
def get_release(release_id: str, db: Session = Depends(get_db_session)) -> ReleaseResponse:
    return _to_release_response(require_release(db, release_id))


@router.post("/{release_id}/archive", response_model=ReleaseResponse)
def archive(
    release_id: str,
    payload: ArchiveReleaseRequest | None = None,
    db: Session = Depends(get_db_session),
) -> ReleaseResponse:
    record = archive_release(db=db, release_id=release_id, actor_id=payload.actor_id if payload else None)
    return _to_release_response(record)
