from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from logic_deploy.db.base import Base
from logic_deploy.models.common import utcnow, uuid_str


class Deployment(Base):
    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    release_id: Mapped[str] = mapped_column(String(36), ForeignKey("releases.id"), index=True)
    # Set while non-terminal, cleared on completion/failure/cancel.
    active_release_id: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    strategy: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), default="queued", index=True)
    failure_reason_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    targets: Mapped[list | None] = mapped_column(JSON, nullable=True)
    plan: Mapped[list | None] = mapped_column(JSON, nullable=True)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    strategy_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    checkpoint_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    monitor_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    monitor_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_deployments_created_at", "created_at"),
    )

    @property
    def target_list(self) -> list[str]:
        return [str(item) for item in (self.targets or [])]

    @property
    def plan_steps(self) -> list[dict]:
        return [dict(step) for step in (self.plan or [])]
