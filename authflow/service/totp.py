from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import struct
import time
from typing import Optional
from urllib.parse import quote, urlencode

from authflow.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1


def _decode_secret(secret: str) -> Optional[bytes]:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``.

    Returns an empty string when the secret is not valid base32.
    """
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10**digits)).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    timestamp: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> bool:
    """Accept ``code`` if it matches any step within ``window`` of now."""
    code = (code or "").strip()
    if len(code) != digits or not code.isdigit():
        return False
    now = time.time() if timestamp is None else timestamp
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval, digits=digits)
        # Constant-time comparison to prevent timing attacks
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(
    secret: str,
    account: str,
    issuer: str,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    """otpauth:// URI understood by authenticator apps."""
    label = quote(f"{issuer}:{account}", safe="@:")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": interval,
        }
    )
    return f"otpauth://totp/{label}?{params}"
