"""Narrow interface to the live target runtimes (PLC runtime agents).

Every call may raise :class:`RuntimeCommunicationError`. A timed-out call leaves
the remote state unknown; callers re-query it with ``query_state`` before
deciding the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import RuntimeCommunicationError
from logic_deploy.services.http_json import HttpJsonError, api_url, http_json


@dataclass(frozen=True)
class HealthSample:
    target: str
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    error_count: int = 0
    critical_failures: int = 0
    tag_excursions: tuple[str, ...] = ()
    sampled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "error_count": self.error_count,
            "critical_failures": self.critical_failures,
            "tag_excursions": list(self.tag_excursions),
            "sampled_at": self.sampled_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, target: str, payload: dict[str, Any]) -> "HealthSample":
        return cls(
            target=target,
            cpu_percent=float(payload.get("cpu_percent") or 0.0),
            memory_percent=float(payload.get("memory_percent") or 0.0),
            error_count=int(payload.get("error_count") or 0),
            critical_failures=int(payload.get("critical_failures") or 0),
            tag_excursions=tuple(str(item) for item in payload.get("tag_excursions") or []),
        )


class TargetRuntime(Protocol):
    def capture_state(self, target: str) -> dict[str, Any]: ...

    def query_state(self, target: str) -> dict[str, Any]: ...

    def get_lock_holder(self, target: str) -> str | None: ...

    def upload(self, target: str, snapshot_id: str, files: list[dict[str, Any]]) -> dict[str, Any]: ...

    def validate(self, target: str, snapshot_id: str) -> dict[str, Any]: ...

    def activate(self, target: str, snapshot_id: str, *, percent: int = 100) -> dict[str, Any]: ...

    def cleanup(self, target: str, snapshot_id: str) -> dict[str, Any]: ...

    def deploy_chunk(self, target: str, snapshot_id: str, chunk: str) -> dict[str, Any]: ...

    def quiesce(self, target: str) -> dict[str, Any]: ...

    def restart(self, target: str) -> dict[str, Any]: ...

    def restore(self, target: str, state: dict[str, Any]) -> dict[str, Any]: ...

    def health(self, target: str) -> HealthSample: ...


class HttpTargetRuntime:
    def __init__(self, base_url: str, *, timeout_seconds: float = 30.0) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds

    def _call(self, method: str, target: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = api_url(self.base_url, f"/targets/{target}{path}")
        try:
            return http_json(method=method, url=url, payload=payload, timeout_seconds=self.timeout_seconds)
        except HttpJsonError as exc:
            raise RuntimeCommunicationError(
                f"{method} {path} on '{target}' failed: {exc}",
                target=target,
                timed_out=exc.timed_out,
            ) from exc

    def capture_state(self, target: str) -> dict[str, Any]:
        return dict(self._call("POST", target, "/checkpoint"))

    def query_state(self, target: str) -> dict[str, Any]:
        return dict(self._call("GET", target, "/state"))

    def get_lock_holder(self, target: str) -> str | None:
        payload = self._call("GET", target, "/lock")
        holder = payload.get("holder") if isinstance(payload, dict) else None
        return str(holder) if holder else None

    def upload(self, target: str, snapshot_id: str, files: list[dict[str, Any]]) -> dict[str, Any]:
        return dict(self._call("POST", target, "/uploads", {"snapshot_id": snapshot_id, "files": files}))

    def validate(self, target: str, snapshot_id: str) -> dict[str, Any]:
        return dict(self._call("POST", target, f"/uploads/{snapshot_id}/validate"))

    def activate(self, target: str, snapshot_id: str, *, percent: int = 100) -> dict[str, Any]:
        return dict(self._call("POST", target, "/activate", {"snapshot_id": snapshot_id, "percent": percent}))

    def cleanup(self, target: str, snapshot_id: str) -> dict[str, Any]:
        return dict(self._call("DELETE", target, f"/uploads/{snapshot_id}"))

    def deploy_chunk(self, target: str, snapshot_id: str, chunk: str) -> dict[str, Any]:
        return dict(self._call("POST", target, "/chunks", {"snapshot_id": snapshot_id, "chunk": chunk}))

    def quiesce(self, target: str) -> dict[str, Any]:
        return dict(self._call("POST", target, "/quiesce"))

    def restart(self, target: str) -> dict[str, Any]:
        return dict(self._call("POST", target, "/restart"))

    def restore(self, target: str, state: dict[str, Any]) -> dict[str, Any]:
        return dict(self._call("POST", target, "/restore", {"state": state}))

    def health(self, target: str) -> HealthSample:
        return HealthSample.from_payload(target, dict(self._call("GET", target, "/health")))


def get_target_runtime() -> TargetRuntime:
    settings = get_settings()
    return HttpTargetRuntime(
        settings.target_runtime_url,
        timeout_seconds=settings.runtime_request_timeout_seconds,
    )
