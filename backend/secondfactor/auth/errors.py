"""Errors raised by the two-factor subsystem.

Every failure carries a short ``kind`` string. Routers log it and write it to
the audit log, but users only ever see a generic message for verification
failures.
"""


class TwoFactorError(Exception):
    """Base class for two-factor failures."""

    kind = "error"


class InvalidCode(TwoFactorError):
    """The TOTP or backup code did not verify."""

    kind = "invalid_code"


class InvalidFormat(TwoFactorError):
    """The submitted code does not have a recognized shape."""

    kind = "invalid_format"


class NoPendingSetup(TwoFactorError):
    """Enable was requested without an active setup."""

    kind = "no_pending_setup"


class SetupExpired(TwoFactorError):
    """The pending setup secret is too old to be confirmed."""

    kind = "setup_expired"


class NotEnabled(TwoFactorError):
    """The operation requires two-factor authentication to be enabled."""

    kind = "not_enabled"


class StorageConflict(TwoFactorError):
    """A concurrent write won the race; the caller may retry."""

    kind = "storage_conflict"
