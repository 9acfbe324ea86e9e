"""Random tokens, one-time codes and masking helpers.

Everything here draws from :mod:`secrets`; nothing uses :mod:`random`.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import List, Optional


def generate_token(nbytes: int = 32) -> str:
    """Return an unguessable URL-safe token."""
    return secrets.token_urlsafe(nbytes)


def generate_numeric_code(length: int = 6) -> str:
    """Return a uniformly random, zero-padded numeric code."""
    if length < 1:
        raise ValueError("code length must be positive")
    return str(secrets.randbelow(10**length)).zfill(length)


def generate_backup_codes(count: int = 10) -> List[str]:
    """Return ``count`` distinct backup codes of 10 uppercase hex chars."""
    codes: set[str] = set()
    while len(codes) < count:
        codes.add(secrets.token_hex(5).upper())
    return sorted(codes)


def normalize_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


def hash_code(code: str) -> str:
    """SHA-256 of a normalized backup code; the stored form of the code."""
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def token_digest(token: str) -> str:
    """Non-reversible digest of a bearer token, used in cache keys."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_totp_secret() -> str:
    """Return a 160-bit base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def mask_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "*" * len(phone)
    return "*" * (len(phone) - 4) + phone[-4:]


def mask_email(email: str) -> str:
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
