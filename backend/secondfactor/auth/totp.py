"""TOTP/MFA utility functions.

Secrets travel as raw bytes inside the service. The base32 text form only
exists for ``pyotp``, for the provisioning URI and for manual entry in the
setup response.
"""

import base64
import io
import re
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote, urlencode

import pyotp
import pyotp.utils
import qrcode
import qrcode.image.svg

from secondfactor.auth.errors import InvalidFormat

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_ALGORITHM = "SHA1"

_CODE_RE = re.compile(r"[0-9]{6}")


@dataclass(frozen=True)
class ProvisioningInfo:
    """Fields recovered from an otpauth:// URI."""

    secret: bytes
    account_label: str
    issuer: str | None
    digits: int
    period: int


def generate_secret() -> bytes:
    """Generate a random 160-bit TOTP secret."""
    return decode_secret(pyotp.random_base32())


def encode_secret(secret: bytes) -> str:
    """Render a secret as unpadded base32 for authenticator apps."""
    return base64.b32encode(secret).decode("ascii").rstrip("=")


def decode_secret(text: str) -> bytes:
    """Decode an unpadded base32 secret."""
    text = text.strip().replace(" ", "").upper()
    missing_padding = len(text) % 8
    if missing_padding:
        text += "=" * (8 - missing_padding)
    return base64.b32decode(text)


def encode_provisioning_uri(secret: bytes, account_label: str, issuer: str) -> str:
    """Get the otpauth:// provisioning URI for QR code generation.

    Unlike ``pyotp``'s own builder, digits and period are always written so
    that apps with unusual defaults still provision a 6-digit, 30-second token.
    """
    label = f"{quote(issuer)}:{quote(account_label)}"
    query = urlencode(
        {
            "secret": encode_secret(secret),
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


def parse_provisioning_uri(uri: str) -> ProvisioningInfo:
    """Parse an otpauth:// TOTP URI back into its fields."""
    otp = pyotp.parse_uri(uri)
    if not isinstance(otp, pyotp.TOTP):
        raise ValueError("Not a TOTP provisioning URI")
    return ProvisioningInfo(
        secret=otp.byte_secret(),
        account_label=otp.name,
        issuer=otp.issuer,
        digits=otp.digits,
        period=otp.interval,
    )


def generate_qr_code_svg(uri: str) -> str:
    """Generate an SVG QR code for the given URI."""
    factory = qrcode.image.svg.SvgPathImage
    img = qrcode.make(uri, image_factory=factory)
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue().decode("utf-8")


def _hotp(secret: bytes) -> pyotp.HOTP:
    return pyotp.HOTP(encode_secret(secret), digits=TOTP_DIGITS)


def check_code_format(code: str) -> str:
    """Return the code unchanged if it is exactly six ASCII digits."""
    if not isinstance(code, str) or not _CODE_RE.fullmatch(code):
        raise InvalidFormat("TOTP code must be exactly 6 digits")
    return code


def compute_code(secret: bytes, timestamp: datetime | float) -> str:
    """Compute the 6-digit code for the 30-second step containing ``timestamp``."""
    return _hotp(secret).at(time_step(timestamp))


def time_step(timestamp: datetime | float) -> int:
    """Index of the 30-second step containing ``timestamp``."""
    if isinstance(timestamp, datetime):
        timestamp = timestamp.timestamp()
    return int(timestamp // TOTP_PERIOD)


def find_code_step(
    secret: bytes,
    code: str,
    timestamp: datetime | float,
    valid_window: int = 1,
) -> int | None:
    """Return the time step a TOTP code belongs to, or None if it does not verify.

    Steps within +-valid_window of ``timestamp`` are accepted. Raises
    InvalidFormat for anything other than six ASCII digits. Every step in the
    window is compared, so the time taken does not depend on which one
    matched; if several match, the latest wins.
    """
    check_code_format(code)
    hotp = _hotp(secret)
    step = time_step(timestamp)
    matched = None
    for offset in range(-valid_window, valid_window + 1):
        if step + offset < 0:
            continue
        if pyotp.utils.strings_equal(code, hotp.at(step + offset)):
            matched = step + offset
    return matched


def verify_code(
    secret: bytes,
    code: str,
    timestamp: datetime | float,
    valid_window: int = 1,
) -> bool:
    """Verify a TOTP code against the secret, allowing +-valid_window steps."""
    return find_code_step(secret, code, timestamp, valid_window) is not None
