"""Named, TTL-bounded lock leases held in the shared database."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from appforge.models.base import Base


class LockLease(Base):
    """One row per currently (or formerly) held lock name."""

    __tablename__ = "lock_leases"

    name: Mapped[str] = mapped_column(String(200), primary_key=True)
    token: Mapped[str] = mapped_column(String(128))
    acquired_at: Mapped[datetime]
    expires_at: Mapped[datetime]

    def __repr__(self) -> str:
        return f"<LockLease {self.name} expires_at={self.expires_at}>"
