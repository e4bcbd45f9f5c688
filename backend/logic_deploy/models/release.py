from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from logic_deploy.db.base import Base
from logic_deploy.models.common import utcnow, uuid_str


class Release(Base):
    __tablename__ = "releases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    project_id: Mapped[str] = mapped_column(String(128), index=True)
    version_id: Mapped[str] = mapped_column(String(128), index=True)
    snapshot_id: Mapped[str] = mapped_column(String(128), index=True)
    stage: Mapped[str] = mapped_column(String(32), default="candidate", index=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # target_runtimes, priority, arbitrated_identifiers, maintenance_window, strategy options
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_releases_project_version", "project_id", "version_id", unique=True),
    )

    @property
    def metadata_dict(self) -> dict:
        return dict(self.metadata_json or {})

    @property
    def target_runtimes(self) -> list[str]:
        targets = self.metadata_dict.get("target_runtimes") or []
        return [str(item) for item in targets if str(item).strip()]
