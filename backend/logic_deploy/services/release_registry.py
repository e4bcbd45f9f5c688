from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from logic_deploy.core.errors import InvalidRequest, NotFound
from logic_deploy.domain.deployment_state_machine import ACTIVE_STATES
from logic_deploy.models import Deployment, Release
from logic_deploy.models.common import utcnow
from logic_deploy.services.deployment_log import append_audit_log
from logic_deploy.services.external_sources import VersioningCenter, get_versioning_center
from logic_deploy.services.release_locks import release_guard


ARCHIVED_STAGE = "archived"


def serialize_release(release: Release) -> dict[str, Any]:
    return {
        "id": release.id,
        "project_id": release.project_id,
        "version_id": release.version_id,
        "snapshot_id": release.snapshot_id,
        "stage": release.stage,
        "created_by": release.created_by,
        "metadata": release.metadata_dict,
        "target_runtimes": release.target_runtimes,
        "created_at": release.created_at.isoformat() if release.created_at else None,
        "archived_at": release.archived_at.isoformat() if release.archived_at else None,
    }


def list_releases(
    *,
    db: Session,
    limit: int = 100,
    project_id: str | None = None,
    stage: str | None = None,
    include_archived: bool = False,
) -> list[Release]:
    query = db.query(Release)
    if project_id:
        query = query.filter(Release.project_id == project_id)
    if stage:
        query = query.filter(Release.stage == stage)
    if not include_archived:
        query = query.filter(Release.archived_at.is_(None))
    return query.order_by(Release.created_at.desc()).limit(limit).all()


def get_release_by_id(*, db: Session, release_id: str) -> Release | None:
    return db.query(Release).filter(Release.id == release_id).first()


def require_release(db: Session, release_id: str) -> Release:
    release = get_release_by_id(db=db, release_id=release_id)
    if release is None:
        raise NotFound(f"release '{release_id}' does not exist", release_id=release_id)
    return release


def upsert_release(
    *,
    db: Session,
    project_id: str,
    version_id: str,
    snapshot_id: str,
    stage: str = "candidate",
    metadata: dict[str, Any] | None = None,
    created_by: str | None = None,
) -> Release:
    if not project_id or not version_id or not snapshot_id:
        raise InvalidRequest("project_id, version_id and snapshot_id are required")

    release = (
        db.query(Release)
        .filter(Release.project_id == project_id, Release.version_id == version_id)
        .first()
    )
    if release is None:
        release = Release(
            project_id=project_id,
            version_id=version_id,
            snapshot_id=snapshot_id,
            stage=stage,
            metadata_json=dict(metadata or {}),
            created_by=created_by,
        )
        db.add(release)
        db.flush()
        append_audit_log(
            db,
            action="release.created",
            actor_id=created_by,
            release_id=release.id,
            payload={"project_id": project_id, "version_id": version_id, "snapshot_id": snapshot_id},
        )
    elif release.archived_at is None:
        release.snapshot_id = snapshot_id
        release.stage = stage
        if metadata is not None:
            release.metadata_json = {**release.metadata_dict, **metadata}

    db.commit()
    db.refresh(release)
    return release


def _release_fields(payload: dict[str, Any]) -> dict[str, Any]:
    metadata = dict(payload.get("metadata") or {})
    for key in ("target_runtimes", "priority", "strategy", "maintenance_window", "canary_cohorts"):
        if key in payload and key not in metadata:
            metadata[key] = payload[key]
    return {
        "version_id": str(payload.get("version_id") or payload.get("versionId") or ""),
        "snapshot_id": str(payload.get("snapshot_id") or payload.get("snapshotId") or ""),
        "stage": str(payload.get("stage") or "candidate"),
        "metadata": metadata,
        "created_by": payload.get("created_by") or payload.get("createdBy"),
    }


def sync_releases(
    *,
    db: Session,
    project_id: str,
    versioning: VersioningCenter | None = None,
) -> list[Release]:
    """Mirror the Versioning Center's releases for a project, keyed by version id."""
    versioning = versioning or get_versioning_center()
    synced: list[Release] = []
    for payload in versioning.get_releases(project_id):
        fields = _release_fields(payload)
        if not fields["version_id"] or not fields["snapshot_id"]:
            continue
        synced.append(upsert_release(db=db, project_id=project_id, **fields))
    return synced


def archive_release(*, db: Session, release_id: str, actor_id: str | None = None) -> Release:
    with release_guard(db, release_id) as release:
        if release.archived_at is not None:
            return release
        active = (
            db.query(Deployment)
            .filter(
                Deployment.release_id == release_id,
                Deployment.status.in_([state.value for state in ACTIVE_STATES]),
            )
            .first()
        )
        if active is not None:
            raise InvalidRequest(
                f"release has active deployment '{active.id}'; cancel it before archiving",
                release_id=release_id,
                deployment_id=active.id,
            )
        release.archived_at = utcnow()
        release.stage = ARCHIVED_STAGE
        append_audit_log(db, action="release.archived", actor_id=actor_id, release_id=release_id, payload={})
        db.commit()
    db.refresh(release)
    return release
