"""Backup code generation, hashing and single-use consumption.

Each code is stored as its own bcrypt hash in a numbered slot. Spending a code
finds the matching slot with ``bcrypt.checkpw`` and then claims it with a
conditional UPDATE, so a slot can be spent at most once.
"""

import logging
import secrets
from datetime import datetime
from functools import lru_cache

import bcrypt
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor.auth.errors import InvalidFormat
from secondfactor.models import BackupCode

logger = logging.getLogger(__name__)

BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 10
DEFAULT_BACKUP_CODE_COUNT = 10
DEFAULT_BCRYPT_ROUNDS = 10


def generate_backup_codes(count: int = DEFAULT_BACKUP_CODE_COUNT) -> list[str]:
    """Generate pairwise-distinct codes formatted as XXXXX-XXXXX."""
    codes: list[str] = []
    seen: set[str] = set()
    while len(codes) < count:
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        if raw in seen:
            continue
        seen.add(raw)
        half = BACKUP_CODE_LENGTH // 2
        codes.append(f"{raw[:half]}-{raw[half:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    """Strip separators and uppercase; raise InvalidFormat for any other shape."""
    if not isinstance(code, str):
        raise InvalidFormat("Backup code must be a string")
    normalized = code.replace("-", "").replace(" ", "").upper()
    if len(normalized) != BACKUP_CODE_LENGTH or any(
        c not in BACKUP_CODE_ALPHABET for c in normalized
    ):
        raise InvalidFormat("Not a backup code")
    return normalized


def looks_like_backup_code(code: str) -> bool:
    """Check the shape of a code without raising."""
    try:
        normalize_backup_code(code)
    except InvalidFormat:
        return False
    return True


def hash_backup_code(code: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Hash a backup code for storage. The code is normalized first."""
    normalized = normalize_backup_code(code)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(normalized.encode("utf-8"), salt).decode("utf-8")


def check_backup_code(code: str, code_hash: str) -> bool:
    """Check a backup code against one stored hash."""
    normalized = normalize_backup_code(code)
    return bcrypt.checkpw(normalized.encode("utf-8"), code_hash.encode("utf-8"))


@lru_cache
def _decoy_hash(rounds: int) -> str:
    return hash_backup_code("A" * BACKUP_CODE_LENGTH, rounds)


class BackupCodeVault:
    """Backup code storage for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        count: int = DEFAULT_BACKUP_CODE_COUNT,
        rounds: int = DEFAULT_BCRYPT_ROUNDS,
    ) -> None:
        self.db = db
        self.count = count
        self.rounds = rounds

    def generate(self, count: int | None = None) -> list[str]:
        return generate_backup_codes(count or self.count)

    def hash_batch(self, codes: list[str]) -> list[str]:
        return [hash_backup_code(code, self.rounds) for code in codes]

    def decoy_check(self) -> None:
        """Spend the time of one hash comparison without touching storage."""
        bcrypt.checkpw(b"decoy", _decoy_hash(self.rounds).encode("utf-8"))

    async def store(self, user_id: str, codes: list[str], now: datetime) -> None:
        """Replace every existing entry for the user with ``codes``."""
        await self.store_hashes(user_id, self.hash_batch(codes), now)

    async def store_hashes(self, user_id: str, code_hashes: list[str], now: datetime) -> None:
        """Replace every existing entry for the user with already hashed codes."""
        await self.purge(user_id)
        if not code_hashes:
            return
        await self.db.execute(
            insert(BackupCode),
            [
                {
                    "user_id": user_id,
                    "slot": slot,
                    "code_hash": code_hash,
                    "created_at": now,
                }
                for slot, code_hash in enumerate(code_hashes)
            ],
        )

    async def regenerate(self, user_id: str, now: datetime, count: int | None = None) -> list[str]:
        """Issue a fresh batch; every earlier code, used or not, stops working."""
        codes = self.generate(count)
        await self.store(user_id, codes, now)
        logger.info(f"Regenerated {len(codes)} backup codes for user {user_id}")
        return codes

    async def consume(self, user_id: str, code: str, now: datetime) -> bool:
        """Spend a backup code. Returns False if no unused entry matches.

        The matching slot is claimed with ``used_at IS NULL`` in the WHERE
        clause, so two concurrent requests presenting the same code see
        exactly one success.
        """
        normalize_backup_code(code)
        result = await self.db.execute(
            select(BackupCode.id, BackupCode.code_hash)
            .where(BackupCode.user_id == user_id, BackupCode.used_at.is_(None))
            .order_by(BackupCode.slot)
        )
        matched_id = None
        for row_id, code_hash in result.all():
            if check_backup_code(code, code_hash):
                matched_id = row_id
                break
        if matched_id is None:
            return False

        result = await self.db.execute(
            update(BackupCode)
            .where(BackupCode.id == matched_id, BackupCode.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        consumed = result.rowcount == 1
        if consumed:
            logger.info(f"Backup code used for user {user_id}")
        return consumed

    async def remaining(self, user_id: str) -> int:
        """Count unused entries."""
        result = await self.db.execute(
            select(func.count())
            .select_from(BackupCode)
            .where(BackupCode.user_id == user_id, BackupCode.used_at.is_(None))
        )
        return result.scalar() or 0

    async def purge(self, user_id: str) -> None:
        """Delete every entry for the user."""
        await self.db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
