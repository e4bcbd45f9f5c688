"""Per-release mutual exclusion.

Every mutating entry point runs inside ``release_guard``: a process-local
re-entrant lock keyed by release id, plus a ``SELECT ... FOR UPDATE`` on the
release row so that separate API/worker processes serialise on the database.
"""

from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Iterator

from sqlalchemy.orm import Session

from logic_deploy.core.errors import NotFound
from logic_deploy.models import Release


_REGISTRY_LOCK = threading.Lock()
_RELEASE_LOCKS: dict[str, threading.RLock] = {}


def _lock_for(release_id: str) -> threading.RLock:
    with _REGISTRY_LOCK:
        lock = _RELEASE_LOCKS.get(release_id)
        if lock is None:
            lock = threading.RLock()
            _RELEASE_LOCKS[release_id] = lock
        return lock


@contextmanager
def release_guard(db: Session, release_id: str) -> Iterator[Release]:
    lock = _lock_for(release_id)
    with lock:
        release = (
            db.query(Release)
            .filter(Release.id == release_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if release is None:
            raise NotFound(f"release '{release_id}' does not exist", release_id=release_id)
        yield release
