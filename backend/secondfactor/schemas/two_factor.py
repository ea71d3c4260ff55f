"""Schemas for two-factor authentication."""

from datetime import datetime

from pydantic import BaseModel, Field


class TwoFactorStatusResponse(BaseModel):
    """Current 2FA status. Never carries a secret or a code."""

    enabled: bool = False
    backup_codes_remaining: int = 0
    pending_setup: bool = False
    enabled_at: datetime | None = None

    model_config = {"from_attributes": True}


class TotpSetupRequest(BaseModel):
    """Optional label shown in the authenticator app."""

    account_label: str | None = Field(default=None, min_length=1, max_length=255)


class TotpSetupResponse(BaseModel):
    """Response for TOTP setup initiation."""

    secret: str
    provisioning_uri: str
    qr_code_svg: str
    backup_codes: list[str]
    warning: str = "Save these backup codes in a safe place. They will not be shown again."


class TotpCodeRequest(BaseModel):
    """A TOTP code or a backup code.

    Only length is checked here; the shape is validated by the service so
    that every malformed code gets the same generic error.
    """

    code: str = Field(..., min_length=1, max_length=32)


class SuccessResponse(BaseModel):
    success: bool = True


class BackupCodesResponse(BaseModel):
    """Freshly issued backup codes."""

    backup_codes: list[str]
    warning: str = "Old backup codes are no longer valid. Save these new codes in a safe place."


class VerifyLoginResponse(BaseModel):
    """Result of the second-factor step of login."""

    success: bool
    method: str
    backup_codes_remaining: int | None = None
    warning: str | None = None


class AuditLogEntry(BaseModel):
    """One audit log entry."""

    id: int
    action: str
    success: bool
    detail: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditLogResponse(BaseModel):
    entries: list[AuditLogEntry]


class ResetResponse(BaseModel):
    """Result of an admin 2FA reset."""

    success: bool = True
    purged: bool
