"""Second-factor check used by the login flow."""

import enum
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor.auth.backup_codes import looks_like_backup_code
from secondfactor.auth.crypto import AesGcmSecretCipher, SecretCipher
from secondfactor.auth.errors import InvalidFormat
from secondfactor.auth.totp import find_code_step
from secondfactor.config import Settings, get_settings
from secondfactor.database import utc_now
from secondfactor.services.enrollment import (
    Clock,
    backup_code_vault,
    claim_totp_step,
    load_profile,
    open_secret,
)

logger = logging.getLogger(__name__)

# Throwaway inputs so that every path does the same amount of hashing
_DECOY_SECRET = bytes(20)
_DECOY_TOTP = "000000"


class VerificationMethod(enum.StrEnum):
    """How a second factor was satisfied."""

    NONE = "none"
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


@dataclass(frozen=True)
class VerificationResult:
    satisfied: bool
    method: VerificationMethod | None = None
    backup_codes_remaining: int | None = None


class VerificationGateway:
    """Answers whether a code satisfies a user's second factor.

    Never writes lifecycle state. An accepted TOTP records its time step so the
    same code cannot be used twice, and an accepted backup code marks its own
    slot used. Both are single conditional UPDATEs.
    """

    def __init__(
        self,
        db: AsyncSession,
        cipher: SecretCipher | None = None,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.cipher = cipher or AesGcmSecretCipher.from_settings(self.settings)
        self.clock = clock
        self.vault = backup_code_vault(db, self.settings)

    async def second_factor_satisfied(self, user_id: str, code: str) -> bool:
        """Return True if 2FA is off for the user or the code verifies."""
        result = await self.verify(user_id, code)
        return result.satisfied

    async def verify(self, user_id: str, code: str) -> VerificationResult:
        """Check ``code`` as a TOTP first, then as a backup code."""
        profile = await load_profile(self.db, user_id)
        now = self.clock()

        if profile is None or not profile.is_enabled:
            self._totp_step(_DECOY_SECRET, code, now)
            self.vault.decoy_check()
            return VerificationResult(satisfied=True, method=VerificationMethod.NONE)

        step = self._totp_step(open_secret(self.cipher, profile), code, now)
        if step is not None:
            if await claim_totp_step(self.db, user_id, step):
                return VerificationResult(satisfied=True, method=VerificationMethod.TOTP)
            logger.warning(f"TOTP code replayed for user {user_id}")
            return VerificationResult(satisfied=False)

        if looks_like_backup_code(code):
            if await self.vault.consume(user_id, code, now):
                return VerificationResult(
                    satisfied=True,
                    method=VerificationMethod.BACKUP_CODE,
                    backup_codes_remaining=await self.vault.remaining(user_id),
                )
        else:
            self.vault.decoy_check()

        logger.warning(f"Second factor rejected for user {user_id}")
        return VerificationResult(satisfied=False)

    def _totp_step(self, secret: bytes, code: str, now) -> int | None:
        try:
            return find_code_step(secret, code, now, self.settings.totp_valid_window)
        except InvalidFormat:
            find_code_step(secret, _DECOY_TOTP, now, self.settings.totp_valid_window)
            return None
