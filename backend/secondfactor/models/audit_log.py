"""Two-factor audit log model."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from secondfactor.database import Base, utc_now

AUDIT_ACTIONS = (
    "setup",
    "enabled",
    "disabled",
    "backup_codes_regenerated",
    "verified",
    "backup_code_used",
    "failed_attempt",
    "reset",
)


class TwoFactorAuditLog(Base):
    """Append-only record of a two-factor event."""

    __tablename__ = "two_factor_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)

    # Error kind for failures (e.g. "invalid_code", "setup_expired")
    detail: Mapped[str | None] = mapped_column(String(50))

    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        index=True,
    )
