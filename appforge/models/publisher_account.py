"""User-owned storefront publishing accounts."""

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from appforge.models.base import Base, TimestampMixin


class PublisherAccount(Base, TimestampMixin):
    """An owner's connected Play account; the refresh token is encrypted at rest."""

    __tablename__ = "publisher_accounts"

    owner_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    refresh_token_enc: Mapped[str | None] = mapped_column(Text)
    connected_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<PublisherAccount owner={self.owner_id}>"
