"""Two-factor enrollment lifecycle.

States move DISABLED -> PENDING_SETUP -> ENABLED -> DISABLED. ``setup`` may
be called from any state and always wins, but it only ever writes the pending
secret and batch: on an ENABLED profile the live secret and backup codes stay
in force until ``enable`` confirms the new secret. ``enable``, ``disable`` and
``regenerate_backup_codes`` go through the ORM's version check, so a
concurrent write makes them fail with StorageConflict instead of silently
overwriting.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from secondfactor.auth.backup_codes import BackupCodeVault, looks_like_backup_code
from secondfactor.auth.crypto import AesGcmSecretCipher, SecretCipher
from secondfactor.auth.errors import (
    InvalidCode,
    NoPendingSetup,
    NotEnabled,
    SetupExpired,
    StorageConflict,
)
from secondfactor.auth.totp import (
    encode_provisioning_uri,
    encode_secret,
    find_code_step,
    generate_secret,
)
from secondfactor.config import Settings, get_settings
from secondfactor.database import as_utc, utc_now
from secondfactor.models import SecurityProfile, TwoFactorState

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class SetupResult:
    """What a client needs to finish enrollment. Returned once, never stored."""

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    backup_codes_remaining: int
    pending_setup: bool = False
    enabled_at: datetime | None = None


def seal_secret(cipher: SecretCipher, user_id: str, secret: bytes) -> str:
    """Seal a secret bound to its owner."""
    return cipher.seal(secret, user_id.encode())


def open_secret(cipher: SecretCipher, profile: SecurityProfile, pending: bool = False) -> bytes:
    """Open the profile's live (or pending) sealed secret."""
    token = profile.pending_secret_ciphertext if pending else profile.secret_ciphertext
    if token is None:
        raise ValueError(f"Profile for user {profile.user_id} has no secret")
    return cipher.open(token, profile.user_id.encode())


async def load_profile(db: AsyncSession, user_id: str) -> SecurityProfile | None:
    """Load a profile, refreshing any copy already in the session."""
    result = await db.execute(
        select(SecurityProfile)
        .where(SecurityProfile.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar()


async def claim_totp_step(db: AsyncSession, user_id: str, step: int) -> bool:
    """Record ``step`` as used. False if it, or a later step, was used already.

    The comparison and the write are one statement, so two requests presenting
    the same code see exactly one success.
    """
    result = await db.execute(
        update(SecurityProfile)
        .where(
            SecurityProfile.user_id == user_id,
            or_(
                SecurityProfile.last_totp_step.is_(None),
                SecurityProfile.last_totp_step < step,
            ),
        )
        .values(last_totp_step=step)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def backup_code_vault(db: AsyncSession, settings: Settings) -> BackupCodeVault:
    return BackupCodeVault(
        db,
        count=settings.backup_code_count,
        rounds=settings.backup_code_bcrypt_rounds,
    )


class EnrollmentService:
    """Owns every lifecycle write to a user's SecurityProfile."""

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

    @property
    def setup_expiry(self) -> timedelta:
        return timedelta(seconds=self.settings.setup_expiry_seconds)

    async def setup(self, user_id: str, account_label: str | None = None) -> SetupResult:
        """Start (or restart) enrollment with a fresh secret and backup batch."""
        now = self.clock()
        secret = generate_secret()
        codes = self.vault.generate()

        await self._upsert_pending(
            user_id,
            {
                "pending_secret_ciphertext": seal_secret(self.cipher, user_id, secret),
                "pending_secret_created_at": now,
                "pending_backup_code_hashes": self.vault.hash_batch(codes),
                "updated_at": now,
            },
        )

        logger.info(f"2FA setup initiated for user {user_id}")
        return SetupResult(
            secret=encode_secret(secret),
            provisioning_uri=encode_provisioning_uri(
                secret, account_label or user_id, self.settings.totp_issuer
            ),
            backup_codes=codes,
        )

    async def enable(self, user_id: str, code: str) -> None:
        """Confirm a pending setup with a TOTP code from the new secret."""
        profile = await load_profile(self.db, user_id)
        if profile is None or not profile.has_pending_setup:
            raise NoPendingSetup(f"No pending 2FA setup for user {user_id}")

        now = self.clock()
        if now - as_utc(profile.pending_secret_created_at) > self.setup_expiry:
            raise SetupExpired(f"Pending 2FA setup for user {user_id} has expired")

        secret = open_secret(self.cipher, profile, pending=True)
        step = find_code_step(secret, code, now, self.settings.totp_valid_window)
        if step is None:
            raise InvalidCode("TOTP code did not verify")

        code_hashes = profile.promote_pending(now)
        # Steps seen with an earlier secret say nothing about this one
        profile.last_totp_step = step
        await self._flush()
        await self.vault.store_hashes(user_id, code_hashes, now)
        logger.info(f"2FA enabled for user {user_id}")

    async def disable(self, user_id: str, code: str) -> None:
        """Turn 2FA off, proven by a TOTP code or an unused backup code."""
        profile = await self._load_enabled(user_id)
        now = self.clock()

        if looks_like_backup_code(code):
            verified = await self.vault.consume(user_id, code, now)
        else:
            # Raises InvalidFormat for anything that is neither shape
            verified = await self._claim_totp(profile, code, now)
        if not verified:
            raise InvalidCode("Code did not verify")

        await self.vault.purge(user_id)
        profile.purge()
        await self._flush()
        logger.info(f"2FA disabled for user {user_id}")

    async def regenerate_backup_codes(self, user_id: str, code: str) -> list[str]:
        """Replace the backup batch. Only a TOTP code is accepted as proof."""
        profile = await self._load_enabled(user_id)
        now = self.clock()

        if looks_like_backup_code(code):
            raise InvalidCode("Backup codes cannot be used to regenerate backup codes")
        if not await self._claim_totp(profile, code, now):
            raise InvalidCode("TOTP code did not verify")

        # Touch the profile first so concurrent lifecycle writes conflict
        profile.updated_at = now
        await self._flush()
        return await self.vault.regenerate(user_id, now)

    async def get_status(self, user_id: str) -> TwoFactorStatus:
        """Report whether 2FA is on and how many backup codes are left."""
        profile = await load_profile(self.db, user_id)
        if profile is None:
            return TwoFactorStatus(enabled=False, backup_codes_remaining=0)
        if not profile.is_enabled:
            return TwoFactorStatus(
                enabled=False,
                backup_codes_remaining=0,
                pending_setup=profile.has_pending_setup,
            )
        return TwoFactorStatus(
            enabled=True,
            backup_codes_remaining=await self.vault.remaining(user_id),
            pending_setup=profile.has_pending_setup,
            enabled_at=profile.enabled_at,
        )

    async def reset(self, user_id: str) -> bool:
        """Administrative purge back to DISABLED. Returns False if no profile exists."""
        profile = await load_profile(self.db, user_id)
        if profile is None:
            return False
        await self.vault.purge(user_id)
        profile.purge()
        await self._flush()
        logger.info(f"2FA reset for user {user_id}")
        return True

    async def purge_expired_setups(self) -> int:
        """Drop pending setups whose secret is past the expiry window.

        First-time setups go back to DISABLED; an ENABLED profile keeps its
        live secret and only loses the unconfirmed one.
        """
        cutoff = self.clock() - self.setup_expiry
        result = await self.db.execute(
            select(SecurityProfile).where(
                SecurityProfile.pending_secret_created_at.is_not(None),
                SecurityProfile.pending_secret_created_at < cutoff,
            )
        )
        profiles = result.scalars().all()
        for profile in profiles:
            profile.clear_pending()
        await self._flush()

        if profiles:
            logger.info(f"Purged {len(profiles)} expired 2FA setups")
        return len(profiles)

    async def _load_enabled(self, user_id: str) -> SecurityProfile:
        profile = await load_profile(self.db, user_id)
        if profile is None or not profile.is_enabled:
            raise NotEnabled(f"2FA is not enabled for user {user_id}")
        return profile

    async def _claim_totp(self, profile: SecurityProfile, code: str, now: datetime) -> bool:
        """Verify a code against the live secret and mark its step used."""
        step = find_code_step(
            open_secret(self.cipher, profile), code, now, self.settings.totp_valid_window
        )
        if step is None:
            return False
        return await claim_totp_step(self.db, profile.user_id, step)

    async def _upsert_pending(self, user_id: str, values: dict) -> None:
        """Write the pending secret and batch in one statement; the last writer wins.

        A new row starts in PENDING_SETUP. An existing row only changes state
        when it is DISABLED, so an ENABLED profile stays ENABLED.
        """
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = pg_insert
        elif dialect == "sqlite":
            insert = sqlite_insert
        else:
            raise NotImplementedError(f"Unsupported database dialect: {dialect}")

        stmt = insert(SecurityProfile).values(
            user_id=user_id, state=TwoFactorState.PENDING_SETUP, version=1, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SecurityProfile.user_id],
            set_={**values, "version": SecurityProfile.version + 1},
        )
        await self.db.execute(stmt)
        await self.db.execute(
            update(SecurityProfile)
            .where(
                SecurityProfile.user_id == user_id,
                SecurityProfile.state == TwoFactorState.DISABLED,
            )
            .values(state=TwoFactorState.PENDING_SETUP)
            .execution_options(synchronize_session=False)
        )

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except StaleDataError as e:
            raise StorageConflict("Security profile changed concurrently") from e
