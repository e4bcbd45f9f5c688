from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from logic_deploy.db.base import Base
from logic_deploy.models.common import utcnow, uuid_str


class DeployApproval(Base):
    __tablename__ = "deploy_approvals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    release_id: Mapped[str] = mapped_column(String(36), ForeignKey("releases.id"), index=True)
    deployment_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("deployments.id"), nullable=True, index=True)
    check_run_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("safety_check_runs.id"), nullable=True, index=True)
    round_number: Mapped[int] = mapped_column(Integer, default=1)
    slot_index: Mapped[int] = mapped_column(Integer)
    approver_role: Mapped[str] = mapped_column(String(64))
    mode: Mapped[str] = mapped_column(String(16), default="parallel")
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    approver_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    bypassed: Mapped[bool] = mapped_column(Boolean, default=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_deploy_approvals_release_round", "release_id", "round_number"),
    )
