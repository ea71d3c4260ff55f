"""SQLAlchemy ORM models."""

from secondfactor.models.audit_log import TwoFactorAuditLog
from secondfactor.models.backup_code import BackupCode
from secondfactor.models.security_profile import SecurityProfile, TwoFactorState

__all__ = [
    "BackupCode",
    "SecurityProfile",
    "TwoFactorAuditLog",
    "TwoFactorState",
]
