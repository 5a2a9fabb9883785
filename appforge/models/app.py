"""App record: the subset of an app's configuration the build core reads."""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from appforge.models.base import Base, TimestampMixin


class PublishingMode(str, enum.Enum):
    """Which identity publishes the app to the storefront."""

    CENTRAL = "central"
    USER = "user"


class App(Base, TimestampMixin):
    """A user's app configuration and its latest build outputs."""

    __tablename__ = "apps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(120))
    website_url: Mapped[str] = mapped_column(String(512))
    theme_color: Mapped[str] = mapped_column(String(16), default="#2563EB")
    icon_glyph: Mapped[str | None] = mapped_column(String(16))
    features: Mapped[dict | None] = mapped_column(JSON)

    # Store identity
    package_name: Mapped[str | None] = mapped_column(String(255))
    bundle_id: Mapped[str | None] = mapped_column(String(255))
    version_code: Mapped[int] = mapped_column(Integer, default=0)
    published_version_code: Mapped[int | None] = mapped_column(Integer)
    publishing_mode: Mapped[PublishingMode] = mapped_column(
        Enum(
            PublishingMode,
            values_callable=lambda e: [x.value for x in e],
            name="publishingmode",
        ),
        default=PublishingMode.CENTRAL,
    )

    # Latest artifact (path relative to the artifacts root)
    artifact_path: Mapped[str | None] = mapped_column(String(512))
    artifact_mime: Mapped[str | None] = mapped_column(String(128))
    artifact_size: Mapped[int | None] = mapped_column(Integer)

    # Build tracking
    build_logs: Mapped[str | None] = mapped_column(Text)
    build_error: Mapped[str | None] = mapped_column(Text)
    last_build_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<App {self.name} package={self.package_name}>"
