from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from authflow.storage.models import (
    AuthTokens,
    ChallengeStatus,
    MagicLinkStatus,
    MFAMethod,
    MFAMethodType,
    PasswordlessMethod,
    UserInfo,
)


@dataclass
class TokenValidationResult:
    valid: bool
    user_id: Optional[str] = None
    email: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    username: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    organization_ids: List[str] = field(default_factory=list)
    state: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_user(cls, user: UserInfo, expires_at: Optional[datetime] = None) -> "TokenValidationResult":
        return cls(
            valid=True,
            user_id=user.sub,
            email=user.email,
            given_name=user.given_name,
            family_name=user.family_name,
            username=user.preferred_username,
            roles=list(user.roles),
            organization_ids=list(user.organization_ids),
            state=user.state,
            attributes=dict(user.attributes),
            expires_at=expires_at,
        )

    @classmethod
    def invalid(cls, error: str) -> "TokenValidationResult":
        return cls(valid=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "user_id": self.user_id,
            "email": self.email,
            "given_name": self.given_name,
            "family_name": self.family_name,
            "username": self.username,
            "roles": self.roles,
            "organization_ids": self.organization_ids,
            "state": self.state,
            "attributes": self.attributes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenValidationResult":
        expires_at = data.get("expires_at")
        return cls(
            valid=bool(data.get("valid")),
            user_id=data.get("user_id"),
            email=data.get("email"),
            given_name=data.get("given_name"),
            family_name=data.get("family_name"),
            username=data.get("username"),
            roles=list(data.get("roles") or []),
            organization_ids=list(data.get("organization_ids") or []),
            state=data.get("state"),
            attributes=dict(data.get("attributes") or {}),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


@dataclass
class AuthorizationResult:
    allowed: bool
    reason: str
    timestamp: datetime
    cached: bool = False
    error_code: Optional[str] = None


@dataclass
class LoginResult:
    success: bool
    tokens: Optional[AuthTokens] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class MFASetupResult:
    success: bool
    method_id: Optional[str] = None
    method_type: Optional[MFAMethodType] = None
    secret: Optional[str] = None
    otpauth_uri: Optional[str] = None
    registration_challenge: Optional[str] = None
    backup_codes: Optional[List[str]] = None
    masked_destination: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class MFAChallengeDescriptor:
    """What the caller may see about an issued challenge; never the code."""

    challenge_id: str
    method_id: str
    method_type: MFAMethodType
    expires_at: datetime
    attempts_remaining: int
    masked_destination: Optional[str] = None
    assertion_challenge: Optional[str] = None
    code_sent: Optional[bool] = None


@dataclass
class MFAVerificationResult:
    success: bool
    status: ChallengeStatus
    message: str
    user_id: Optional[str] = None
    attempts_remaining: Optional[int] = None
    device_trusted: bool = False
    error_code: Optional[str] = None


@dataclass
class RecoveryOptions:
    backup_codes_remaining: int
    methods: List[MFAMethod] = field(default_factory=list)

    @property
    def has_backup_codes(self) -> bool:
        return self.backup_codes_remaining > 0


@dataclass
class LoginWithMFAResult:
    success: bool
    requires_mfa: bool = False
    tokens: Optional[AuthTokens] = None
    user_id: Optional[str] = None
    challenge: Optional[MFAChallengeDescriptor] = None
    device_trusted: bool = False
    message: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class MagicLinkResult:
    success: bool
    message: str
    link_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    email_sent: bool = False
    error_code: Optional[str] = None


@dataclass
class MagicLinkVerificationResult:
    success: bool
    status: MagicLinkStatus
    message: str
    action: Optional[str] = None
    user_info: Optional[UserInfo] = None
    tokens: Optional[AuthTokens] = None
    requires_mfa: bool = False
    redirect_url: Optional[str] = None
    reset_token: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class PasswordlessResult:
    success: bool
    method: PasswordlessMethod
    message: str
    link_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    masked_destination: Optional[str] = None
    error_code: Optional[str] = None
