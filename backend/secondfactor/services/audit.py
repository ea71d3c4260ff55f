"""Two-factor audit log service."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor.database import utc_now
from secondfactor.models import TwoFactorAuditLog
from secondfactor.models.audit_log import AUDIT_ACTIONS

logger = logging.getLogger(__name__)

MAX_AUDIT_LIMIT = 200


async def record_event(
    db: AsyncSession,
    user_id: str,
    action: str,
    success: bool,
    detail: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TwoFactorAuditLog:
    """Append an audit entry. The caller owns the commit."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    entry = TwoFactorAuditLog(
        user_id=user_id,
        action=action,
        success=success,
        detail=detail,
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
        created_at=utc_now(),
    )
    db.add(entry)
    await db.flush()

    if not success:
        logger.warning(f"2FA {action} failed for user {user_id}: {detail}")
    return entry


async def list_events(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
) -> list[TwoFactorAuditLog]:
    """Return the most recent audit entries for a user, newest first."""
    limit = max(1, min(limit, MAX_AUDIT_LIMIT))
    result = await db.execute(
        select(TwoFactorAuditLog)
        .where(TwoFactorAuditLog.user_id == user_id)
        .order_by(TwoFactorAuditLog.created_at.desc(), TwoFactorAuditLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
