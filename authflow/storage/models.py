from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return str(uuid.uuid4())


class MFAMethodType(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    WEBAUTHN = "webauthn"
    BACKUP_CODES = "backup_codes"


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"


class MagicLinkStatus(str, Enum):
    PENDING = "pending"
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"


class MagicLinkAction(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


class PasswordlessMethod(str, Enum):
    MAGIC_LINK = "magic_link"
    SMS = "sms"
    EMAIL_CODE = "email_code"


class AuthFlowMethod(str, Enum):
    PASSWORD = "password"
    MAGIC_LINK = "magic_link"
    PASSWORDLESS = "passwordless"


class AuthFlowStep(str, Enum):
    CREDENTIALS = "credentials"
    MFA = "mfa"
    DEVICE_TRUST = "device_trust"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Method metadata: one variant per method type
# ---------------------------------------------------------------------------


@dataclass
class TOTPMetadata:
    secret: str
    otpauth_uri: str


@dataclass
class SMSMetadata:
    phone_number: str


@dataclass
class EmailMetadata:
    email_address: str


@dataclass
class WebAuthnMetadata:
    device_name: str
    registration_challenge: str
    credential_id: Optional[str] = None


@dataclass
class BackupCodesMetadata:
    pass


MethodMetadata = Union[TOTPMetadata, SMSMetadata, EmailMetadata, WebAuthnMetadata, BackupCodesMetadata]

_METADATA_TYPES: Dict[MFAMethodType, type] = {
    MFAMethodType.TOTP: TOTPMetadata,
    MFAMethodType.SMS: SMSMetadata,
    MFAMethodType.EMAIL: EmailMetadata,
    MFAMethodType.WEBAUTHN: WebAuthnMetadata,
    MFAMethodType.BACKUP_CODES: BackupCodesMetadata,
}


def metadata_from_dict(method_type: MFAMethodType, data: Dict[str, Any]) -> MethodMetadata:
    return _METADATA_TYPES[method_type](**data)


@dataclass
class MFAMethod:
    id: str
    user_id: str
    type: MFAMethodType
    name: str
    metadata: MethodMetadata
    is_enabled: bool = False
    is_primary: bool = False
    is_verified: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_used_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        expected = _METADATA_TYPES[self.type]
        if not isinstance(self.metadata, expected):
            raise TypeError(
                f"{self.type.value} method requires {expected.__name__}, got {type(self.metadata).__name__}"
            )

    @property
    def is_active(self) -> bool:
        return self.is_enabled and self.is_verified

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "name": self.name,
            "metadata": asdict(self.metadata),
            "is_enabled": self.is_enabled,
            "is_primary": self.is_primary,
            "is_verified": self.is_verified,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MFAMethod":
        method_type = MFAMethodType(data["type"])
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=method_type,
            name=data.get("name") or method_type.value,
            metadata=metadata_from_dict(method_type, data.get("metadata") or {}),
            is_enabled=bool(data.get("is_enabled")),
            is_primary=bool(data.get("is_primary")),
            is_verified=bool(data.get("is_verified")),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(timezone.utc),
            last_used_at=_parse_dt(data.get("last_used_at")),
        )


@dataclass
class MFAChallenge:
    id: str
    user_id: str
    method_id: str
    method_type: MFAMethodType
    created_at: datetime
    expires_at: datetime
    attempts_remaining: int
    status: ChallengeStatus = ChallengeStatus.PENDING
    code: Optional[str] = None
    remember_device: bool = False
    device_fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "method_id": self.method_id,
            "method_type": self.method_type.value,
            "status": self.status.value,
            "code": self.code,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "attempts_remaining": self.attempts_remaining,
            "remember_device": self.remember_device,
            "device_fingerprint": self.device_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MFAChallenge":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            method_id=data["method_id"],
            method_type=MFAMethodType(data["method_type"]),
            status=ChallengeStatus(data.get("status", ChallengeStatus.PENDING.value)),
            code=data.get("code"),
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            attempts_remaining=int(data.get("attempts_remaining", 0)),
            remember_device=bool(data.get("remember_device")),
            device_fingerprint=data.get("device_fingerprint"),
        )


@dataclass
class BackupCodesGeneration:
    user_id: str
    codes: set[str]
    used_codes: set[str]
    generated_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return len(self.codes)


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    fingerprint: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_active: bool = True
    name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_trusted_at(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "fingerprint": self.fingerprint,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
            "expires_at": _iso(self.expires_at),
            "is_active": self.is_active,
            "name": self.name,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrustedDevice":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            fingerprint=data["fingerprint"],
            created_at=_parse_dt(data["created_at"]),
            last_used_at=_parse_dt(data.get("last_used_at") or data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            is_active=bool(data.get("is_active", True)),
            name=data.get("name"),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )


@dataclass
class MagicLink:
    id: str
    token: str
    email: str
    action: str
    created_at: datetime
    expires_at: datetime
    redirect_url: str
    status: MagicLinkStatus = MagicLinkStatus.PENDING
    user_id: Optional[str] = None
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "email": self.email,
            "user_id": self.user_id,
            "status": self.status.value,
            "action": self.action,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "used_at": _iso(self.used_at),
            "redirect_url": self.redirect_url,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MagicLink":
        # action stays a raw string; unknown tags are rejected at dispatch time
        return cls(
            id=data["id"],
            token=data["token"],
            email=data["email"],
            user_id=data.get("user_id"),
            status=MagicLinkStatus(data.get("status", MagicLinkStatus.PENDING.value)),
            action=data.get("action", ""),
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            used_at=_parse_dt(data.get("used_at")),
            redirect_url=data.get("redirect_url", ""),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class UserInfo:
    sub: str
    email: Optional[str] = None
    email_verified: bool = False
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    preferred_username: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    organization_ids: List[str] = field(default_factory=list)
    state: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserInfo":
        return cls(
            sub=data["sub"],
            email=data.get("email"),
            email_verified=bool(data.get("email_verified")),
            given_name=data.get("given_name"),
            family_name=data.get("family_name"),
            preferred_username=data.get("preferred_username"),
            roles=list(data.get("roles") or []),
            organization_ids=list(data.get("organization_ids") or []),
            state=data.get("state"),
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass
class AuthTokens:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None
    token_type: str = "Bearer"
    id_token: Optional[str] = None
    session_state: Optional[str] = None
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthTokens":
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or 0),
            refresh_token=data.get("refresh_token"),
            refresh_expires_in=(
                int(data["refresh_expires_in"]) if data.get("refresh_expires_in") is not None else None
            ),
            token_type=data.get("token_type") or "Bearer",
            id_token=data.get("id_token"),
            session_state=data.get("session_state"),
            scope=data.get("scope"),
        )


@dataclass
class UserRegistration:
    username: str
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    enabled: bool = True
    attributes: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class AuthenticationFlow:
    """Progress of one multi-step sign-in, kept for a fixed lifetime."""

    id: str
    method: AuthFlowMethod
    step: AuthFlowStep
    created_at: datetime
    expires_at: datetime
    user_id: Optional[str] = None
    email: Optional[str] = None
    mfa_required: bool = False
    mfa_completed: bool = False
    device_trusted: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method.value,
            "step": self.step.value,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "user_id": self.user_id,
            "email": self.email,
            "mfa_required": self.mfa_required,
            "mfa_completed": self.mfa_completed,
            "device_trusted": self.device_trusted,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthenticationFlow":
        return cls(
            id=data["id"],
            method=AuthFlowMethod(data["method"]),
            step=AuthFlowStep(data["step"]),
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            user_id=data.get("user_id"),
            email=data.get("email"),
            mfa_required=bool(data.get("mfa_required")),
            mfa_completed=bool(data.get("mfa_completed")),
            device_trusted=bool(data.get("device_trusted")),
            metadata=dict(data.get("metadata") or {}),
        )
