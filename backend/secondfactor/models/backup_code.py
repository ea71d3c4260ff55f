"""Backup code model."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from secondfactor.database import Base, utc_now


class BackupCode(Base):
    """One slot of a user's backup code batch.

    Only the bcrypt hash is stored. ``used_at`` moves from NULL to a timestamp
    exactly once, through a conditional UPDATE on this row.
    """

    __tablename__ = "backup_codes"
    __table_args__ = (
        UniqueConstraint("user_id", "slot", name="uq_backup_codes_user_slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("security_profiles.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot: Mapped[int] = mapped_column(Integer, nullable=False)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
    )

    @property
    def is_used(self) -> bool:
        return self.used_at is not None
