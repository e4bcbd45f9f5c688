from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from logic_deploy.db.base import Base
from logic_deploy.models.common import utcnow, uuid_str


class Checkpoint(Base):
    __tablename__ = "checkpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    deployment_id: Mapped[str] = mapped_column(String(36), ForeignKey("deployments.id"), unique=True)
    # {target: runtime state}; chunked deployments include per-chunk revisions.
    captured_state: Mapped[dict] = mapped_column(JSON)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    discarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Rollback(Base):
    __tablename__ = "rollbacks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    deployment_id: Mapped[str] = mapped_column(String(36), ForeignKey("deployments.id"), unique=True)
    checkpoint_id: Mapped[str] = mapped_column(String(36), ForeignKey("checkpoints.id"), index=True)
    initiated_by: Mapped[str] = mapped_column(String(128))
    reason: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32), default="in_progress", index=True)
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
