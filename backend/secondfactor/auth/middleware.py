"""Authentication dependencies.

The primary login flow lives outside this service. It stores the verified
``user_id`` in the signed session and sets ``totp_pending`` while the second
factor is still outstanding.
"""

from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status

from secondfactor.auth.crypto import AesGcmSecretCipher, SecretCipher
from secondfactor.database import utc_now
from secondfactor.services.enrollment import Clock


def get_session_user_id_optional(request: Request) -> str | None:
    """Get the fully authenticated user id, or None."""
    user_id = request.session.get("user_id")
    if not user_id:
        return None

    # Block access if TOTP verification is still pending
    if request.session.get("totp_pending"):
        return None

    return str(user_id)


def get_current_user_id(
    user_id: str | None = Depends(get_session_user_id_optional),
) -> str:
    """Get the current user id, or raise 401 if not authenticated."""
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id


def get_pending_user_id(request: Request) -> str:
    """Get the user id of a login waiting on its second factor."""
    user_id = request.session.get("user_id")
    if not user_id or not request.session.get("totp_pending"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No login awaiting verification",
        )
    return str(user_id)


def require_admin(
    request: Request,
    _user_id: str = Depends(get_current_user_id),
) -> None:
    """Require the current session to belong to an admin."""
    if not request.session.get("is_admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )


@lru_cache
def get_secret_cipher() -> SecretCipher:
    """Cipher used to seal TOTP secrets, built once from settings."""
    return AesGcmSecretCipher.from_settings()


def get_clock() -> Clock:
    """Time source for TOTP windows and setup expiry."""
    return utc_now
