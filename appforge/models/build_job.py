"""Build job model: one build attempt for one app/platform pair."""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from appforge.models.base import Base, TimestampMixin


class BuildPlatform(str, enum.Enum):
    """Target platform of a build."""

    ANDROID = "android"  # compiled locally
    IOS = "ios"  # compiled by the remote build runner


class BuildJobStatus(str, enum.Enum):
    """Build job lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildJobStatus.SUCCEEDED, BuildJobStatus.FAILED)


class BuildJob(Base, TimestampMixin):
    """Tracks one build of an app for a platform, including retries."""

    __tablename__ = "build_jobs"
    __table_args__ = (Index("ix_build_jobs_app_platform", "app_id", "platform"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    app_id: Mapped[str] = mapped_column(String(36), index=True)
    platform: Mapped[BuildPlatform] = mapped_column(
        Enum(
            BuildPlatform,
            values_callable=lambda e: [x.value for x in e],
            name="buildplatform",
        ),
    )
    status: Mapped[BuildJobStatus] = mapped_column(
        Enum(
            BuildJobStatus,
            values_callable=lambda e: [x.value for x in e],
            name="buildjobstatus",
        ),
        default=BuildJobStatus.QUEUED,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=1)

    # Set only while running
    lock_token: Mapped[str | None] = mapped_column(String(128))
    locked_at: Mapped[datetime | None] = mapped_column()

    error: Mapped[str | None] = mapped_column(Text)
    validation_json: Mapped[dict | None] = mapped_column(JSON)
    remote_run_id: Mapped[str | None] = mapped_column(String(64))
    finished_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return (
            f"<BuildJob {self.id} app={self.app_id} {self.platform.value} "
            f"status={self.status.value} attempts={self.attempts}>"
        )
