"""Prometheus metrics endpoint."""

from datetime import timedelta

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor.database import get_db, utc_now
from secondfactor.models import BackupCode, SecurityProfile, TwoFactorAuditLog, TwoFactorState

router = APIRouter(tags=["metrics"])


async def collect_metrics(db: AsyncSession) -> bytes:
    """Collect all metrics and return Prometheus format."""
    registry = CollectorRegistry()

    profiles = Gauge(
        "secondfactor_profiles",
        "Security profiles by 2FA state",
        ["state"],
        registry=registry,
    )
    unused_backup_codes = Gauge(
        "secondfactor_backup_codes_unused",
        "Unused backup codes across all users",
        registry=registry,
    )
    audit_events_last_hour = Gauge(
        "secondfactor_audit_events_last_hour",
        "2FA audit events in the last hour",
        ["action", "success"],
        registry=registry,
    )

    # Every state gets a sample, even when no profile is in it
    counts = {state: 0 for state in TwoFactorState}
    result = await db.execute(
        select(SecurityProfile.state, func.count()).group_by(SecurityProfile.state)
    )
    for state, count in result.all():
        counts[state] = count
    for state, count in counts.items():
        profiles.labels(state=state.value).set(count)

    count_result = await db.execute(
        select(func.count()).select_from(BackupCode).where(BackupCode.used_at.is_(None))
    )
    unused_backup_codes.set(count_result.scalar() or 0)

    one_hour_ago = utc_now() - timedelta(hours=1)
    result = await db.execute(
        select(TwoFactorAuditLog.action, TwoFactorAuditLog.success, func.count())
        .where(TwoFactorAuditLog.created_at >= one_hour_ago)
        .group_by(TwoFactorAuditLog.action, TwoFactorAuditLog.success)
    )
    for action, success, count in result.all():
        audit_events_last_hour.labels(action=action, success=str(success).lower()).set(count)

    return generate_latest(registry)


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(db: AsyncSession = Depends(get_db)) -> PlainTextResponse:
    """Prometheus metrics endpoint."""
    metrics_data = await collect_metrics(db)
    return PlainTextResponse(content=metrics_data, media_type=CONTENT_TYPE_LATEST)
