from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import ExternalServiceError
from logic_deploy.domain.logic_facts import LogicFile, Snapshot
from logic_deploy.services.http_json import HttpJsonError, api_url, http_json


class VersioningCenter(Protocol):
    def get_releases(self, project_id: str) -> list[dict[str, Any]]: ...

    def get_snapshot(self, snapshot_id: str) -> Snapshot: ...

    def get_version_files(self, version_id: str) -> list[LogicFile]: ...


class TagDatabase(Protocol):
    def get_critical_tags(self, project_id: str) -> dict[str, str | None]:
        """Critical tag name (upper case) -> registered address, if any."""
        ...


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def logic_file_from_payload(payload: dict[str, Any]) -> LogicFile:
    content = str(payload.get("content") or "")
    size = payload.get("size_bytes", payload.get("size"))
    return LogicFile(
        path=str(payload["path"]),
        dialect=str(payload.get("dialect") or payload.get("vendor_dialect") or ""),
        content=content,
        size_bytes=int(size) if size is not None else None,
        last_modified=_parse_datetime(payload.get("last_modified")),
    )


def snapshot_from_payload(payload: dict[str, Any]) -> Snapshot:
    files = payload.get("files") or []
    return Snapshot(
        snapshot_id=str(payload["snapshot_id"]),
        version_id=str(payload["version_id"]),
        files=tuple(logic_file_from_payload(item) for item in files),
    )


def critical_tags_from_payload(payload: Any) -> dict[str, str | None]:
    items = payload.get("tags", []) if isinstance(payload, dict) else payload
    tags: dict[str, str | None] = {}
    for item in items or []:
        if isinstance(item, str):
            tags[item.strip().upper()] = None
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        address = item.get("address")
        tags[name.upper()] = str(address) if address else None
    return tags


class HttpVersioningCenter:
    service = "versioning_center"

    def __init__(self, base_url: str, *, timeout_seconds: float = 15.0) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds

    def _get(self, path: str) -> Any:
        try:
            return http_json(method="GET", url=api_url(self.base_url, path), timeout_seconds=self.timeout_seconds)
        except HttpJsonError as exc:
            raise ExternalServiceError(str(exc), service=self.service, status_code=exc.status_code) from exc

    def get_releases(self, project_id: str) -> list[dict[str, Any]]:
        payload = self._get(f"/projects/{project_id}/releases")
        items = payload.get("items", []) if isinstance(payload, dict) else payload
        return [dict(item) for item in items or []]

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        return snapshot_from_payload(self._get(f"/snapshots/{snapshot_id}"))

    def get_version_files(self, version_id: str) -> list[LogicFile]:
        payload = self._get(f"/versions/{version_id}/files")
        items = payload.get("files", []) if isinstance(payload, dict) else payload
        return [logic_file_from_payload(item) for item in items or []]


class HttpTagDatabase:
    service = "tag_database"

    def __init__(self, base_url: str, *, timeout_seconds: float = 15.0) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds

    def get_critical_tags(self, project_id: str) -> dict[str, str | None]:
        try:
            payload = http_json(
                method="GET",
                url=api_url(self.base_url, f"/projects/{project_id}/critical-tags"),
                timeout_seconds=self.timeout_seconds,
            )
        except HttpJsonError as exc:
            raise ExternalServiceError(str(exc), service=self.service, status_code=exc.status_code) from exc
        return critical_tags_from_payload(payload)


def get_versioning_center() -> VersioningCenter:
    settings = get_settings()
    return HttpVersioningCenter(
        settings.versioning_center_url,
        timeout_seconds=settings.external_request_timeout_seconds,
    )


def get_tag_database() -> TagDatabase:
    settings = get_settings()
    return HttpTagDatabase(
        settings.tag_database_url,
        timeout_seconds=settings.external_request_timeout_seconds,
    )
