"""Two-factor authentication endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from secondfactor.auth.crypto import SecretCipher
from secondfactor.auth.errors import (
    NoPendingSetup,
    NotEnabled,
    StorageConflict,
    TwoFactorError,
)
from secondfactor.auth.middleware import (
    get_clock,
    get_current_user_id,
    get_pending_user_id,
    get_secret_cipher,
)
from secondfactor.auth.totp import generate_qr_code_svg
from secondfactor.config import Settings, get_settings
from secondfactor.database import get_db
from secondfactor.schemas.two_factor import (
    AuditLogEntry,
    AuditLogResponse,
    BackupCodesResponse,
    SuccessResponse,
    TotpCodeRequest,
    TotpSetupRequest,
    TotpSetupResponse,
    TwoFactorStatusResponse,
    VerifyLoginResponse,
)
from secondfactor.services.audit import list_events, record_event
from secondfactor.services.enrollment import Clock, EnrollmentService
from secondfactor.services.verification import VerificationGateway, VerificationMethod

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/2fa", tags=["2fa"])

INVALID_CODE_DETAIL = "Invalid code"


def get_enrollment_service(
    db: AsyncSession = Depends(get_db),
    cipher: SecretCipher = Depends(get_secret_cipher),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
) -> EnrollmentService:
    """Enrollment service bound to the request's session."""
    return EnrollmentService(db, cipher=cipher, clock=clock, settings=settings)


def get_verification_gateway(
    db: AsyncSession = Depends(get_db),
    cipher: SecretCipher = Depends(get_secret_cipher),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
) -> VerificationGateway:
    """Verification gateway bound to the request's session."""
    return VerificationGateway(db, cipher=cipher, clock=clock, settings=settings)


def _client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _http_error(exc: TwoFactorError) -> HTTPException:
    """Map a service error to a response without revealing why a code failed."""
    if isinstance(exc, StorageConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent update, please retry",
        )
    if isinstance(exc, NoPendingSetup):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No pending 2FA setup",
        )
    if isinstance(exc, NotEnabled):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="2FA is not enabled",
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=INVALID_CODE_DETAIL,
    )


async def _reject(
    db: AsyncSession,
    request: Request,
    user_id: str,
    action: str,
    exc: TwoFactorError,
) -> HTTPException:
    """Discard the failed operation, keep an audit record, build the response."""
    await db.rollback()
    logger.warning(f"2FA {action} rejected for user {user_id}: {exc.kind}")
    await record_event(
        db, user_id, "failed_attempt", False, detail=f"{action}:{exc.kind}", **_client_info(request)
    )
    await db.commit()
    return _http_error(exc)


@router.get("/status")
async def two_factor_status(
    user_id: str = Depends(get_current_user_id),
    service: EnrollmentService = Depends(get_enrollment_service),
) -> TwoFactorStatusResponse:
    """Get current 2FA status."""
    current = await service.get_status(user_id)
    return TwoFactorStatusResponse.model_validate(current)


@router.post("/setup")
async def setup_two_factor(
    request: Request,
    body: TotpSetupRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: EnrollmentService = Depends(get_enrollment_service),
) -> TotpSetupResponse:
    """Generate a new secret and backup codes, pending confirmation."""
    label = body.account_label if body else None
    result = await service.setup(user_id, account_label=label)
    await record_event(db, user_id, "setup", True, **_client_info(request))

    return TotpSetupResponse(
        secret=result.secret,
        provisioning_uri=result.provisioning_uri,
        qr_code_svg=generate_qr_code_svg(result.provisioning_uri),
        backup_codes=result.backup_codes,
    )


@router.post("/enable")
async def enable_two_factor(
    request: Request,
    body: TotpCodeRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: EnrollmentService = Depends(get_enrollment_service),
) -> SuccessResponse:
    """Confirm the pending setup with a code from the authenticator app."""
    try:
        await service.enable(user_id, body.code)
    except TwoFactorError as e:
        raise await _reject(db, request, user_id, "enable", e) from e

    await record_event(db, user_id, "enabled", True, **_client_info(request))
    return SuccessResponse()


@router.post("/disable")
async def disable_two_factor(
    request: Request,
    body: TotpCodeRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: EnrollmentService = Depends(get_enrollment_service),
) -> SuccessResponse:
    """Disable 2FA with a TOTP code or an unused backup code."""
    try:
        await service.disable(user_id, body.code)
    except TwoFactorError as e:
        raise await _reject(db, request, user_id, "disable", e) from e

    await record_event(db, user_id, "disabled", True, **_client_info(request))
    return SuccessResponse()


@router.post("/backup-codes/regenerate")
async def regenerate_backup_codes(
    request: Request,
    body: TotpCodeRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: EnrollmentService = Depends(get_enrollment_service),
) -> BackupCodesResponse:
    """Replace all backup codes. Requires a TOTP code."""
    try:
        codes = await service.regenerate_backup_codes(user_id, body.code)
    except TwoFactorError as e:
        raise await _reject(db, request, user_id, "regenerate", e) from e

    await record_event(db, user_id, "backup_codes_regenerated", True, **_client_info(request))
    return BackupCodesResponse(backup_codes=codes)


@router.post("/verify-login")
async def verify_login(
    request: Request,
    body: TotpCodeRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_pending_user_id),
    gateway: VerificationGateway = Depends(get_verification_gateway),
    settings: Settings = Depends(get_settings),
) -> VerifyLoginResponse:
    """Complete a login that is waiting on its second factor."""
    result = await gateway.verify(user_id, body.code)

    if not result.satisfied:
        await record_event(
            db, user_id, "failed_attempt", False, detail="login", **_client_info(request)
        )
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_DETAIL,
        )

    request.session.pop("totp_pending", None)

    warning = None
    if result.method == VerificationMethod.BACKUP_CODE:
        await record_event(db, user_id, "backup_code_used", True, **_client_info(request))
        if result.backup_codes_remaining < settings.backup_code_low_warning:
            warning = (
                "You are running low on backup codes. Consider generating new ones."
            )
    elif result.method == VerificationMethod.TOTP:
        await record_event(db, user_id, "verified", True, **_client_info(request))

    return VerifyLoginResponse(
        success=True,
        method=result.method,
        backup_codes_remaining=result.backup_codes_remaining,
        warning=warning,
    )


@router.get("/audit-log")
async def audit_log(
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> AuditLogResponse:
    """Get the 2FA audit log for the current user."""
    entries = await list_events(db, user_id, limit=limit)
    return AuditLogResponse(entries=[AuditLogEntry.model_validate(e) for e in entries])
