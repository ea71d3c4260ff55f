"""Per-user two-factor security profile."""

import enum
from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from secondfactor.database import Base, utc_now


class TwoFactorState(enum.StrEnum):
    """Lifecycle state of a user's second factor."""

    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"


class SecurityProfile(Base):
    """Two-factor state for one user.

    A single state column drives everything. The live secret is only set while
    ENABLED. A setup writes the ``pending_*`` columns instead, so starting a new
    setup on an ENABLED profile leaves the live secret and backup codes in
    force until ``enable`` promotes the pending ones.
    """

    __tablename__ = "security_profiles"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    state: Mapped[TwoFactorState] = mapped_column(
        Enum(TwoFactorState),
        nullable=False,
        default=TwoFactorState.DISABLED,
        index=True,
    )

    # Sealed secrets, base64(nonce + ciphertext)
    secret_ciphertext: Mapped[str | None] = mapped_column(Text)
    secret_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    pending_secret_ciphertext: Mapped[str | None] = mapped_column(Text)
    pending_secret_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )
    # bcrypt hashes of the batch issued with the pending secret, in slot order
    pending_backup_code_hashes: Mapped[list[str] | None] = mapped_column(JSON)

    # Highest TOTP time step accepted so far; a code is only good once
    last_totp_step: Mapped[int | None] = mapped_column(BigInteger)

    # Optimistic concurrency counter, checked on every ORM UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_enabled(self) -> bool:
        """Check if the second factor is live."""
        return self.state == TwoFactorState.ENABLED

    @property
    def has_pending_setup(self) -> bool:
        """Check if any setup, first or repeated, is waiting for confirmation."""
        return self.pending_secret_ciphertext is not None

    def promote_pending(self, now: datetime) -> list[str]:
        """Make the pending secret live. Returns the pending backup code hashes."""
        code_hashes = list(self.pending_backup_code_hashes or [])
        self.state = TwoFactorState.ENABLED
        self.secret_ciphertext = self.pending_secret_ciphertext
        self.secret_created_at = self.pending_secret_created_at
        self.enabled_at = now
        self.clear_pending()
        return code_hashes

    def clear_pending(self) -> None:
        """Drop a setup that was never confirmed; the live secret is untouched."""
        self.pending_secret_ciphertext = None
        self.pending_secret_created_at = None
        self.pending_backup_code_hashes = None
        if self.state == TwoFactorState.PENDING_SETUP:
            self.state = TwoFactorState.DISABLED

    def purge(self) -> None:
        """Drop every secret and return to DISABLED."""
        self.clear_pending()
        self.state = TwoFactorState.DISABLED
        self.secret_ciphertext = None
        self.secret_created_at = None
        self.enabled_at = None
        self.last_totp_step = None
