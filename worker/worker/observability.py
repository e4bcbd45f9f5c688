from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import uuid

WORKER_COMPONENT = "worker"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_cycle_trace_id() -> str:
    return f"sweep-{uuid.uuid4().hex[:16]}"


def emit_worker_log(
    *,
    event: str,
    level: int = logging.INFO,
    trace_id: str | None = None,
    job: str | None = None,
    deployment_id: str | None = None,
    **fields,
) -> None:
    """Write one JSON line on the ``worker`` logger; extra fields are merged in as-is."""
    payload: dict[str, object | None] = {
        "timestamp_utc": _utcnow_iso(),
        "component": WORKER_COMPONENT,
        "event": event,
        "trace_id": (trace_id or "").strip()[:128] or None,
        "job": job,
        "deployment_id": deployment_id,
        **fields,
    }
    logging.getLogger(WORKER_COMPONENT).log(level, json.dumps(payload, sort_keys=True, default=str))
