"""Two-factor administration endpoints (admin only)."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor.auth.middleware import require_admin
from secondfactor.database import get_db
from secondfactor.routers.two_factor import get_enrollment_service
from secondfactor.schemas.two_factor import ResetResponse, TwoFactorStatusResponse
from secondfactor.services.audit import record_event
from secondfactor.services.enrollment import EnrollmentService

router = APIRouter(prefix="/api/admin/2fa", tags=["admin"])


@router.get("/{user_id}", response_model=TwoFactorStatusResponse)
async def get_user_two_factor(
    user_id: str,
    service: EnrollmentService = Depends(get_enrollment_service),
    _admin: None = Depends(require_admin),
) -> TwoFactorStatusResponse:
    """Get another user's 2FA status."""
    current = await service.get_status(user_id)
    return TwoFactorStatusResponse.model_validate(current)


@router.post("/{user_id}/reset", response_model=ResetResponse)
async def reset_user_two_factor(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: EnrollmentService = Depends(get_enrollment_service),
    _admin: None = Depends(require_admin),
) -> ResetResponse:
    """Purge a user's secret and backup codes, e.g. after a lost device."""
    purged = await service.reset(user_id)
    if purged:
        await record_event(
            db,
            user_id,
            "reset",
            True,
            detail=f"by:{request.session.get('user_id')}",
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    return ResetResponse(purged=purged)
