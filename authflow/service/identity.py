from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ServiceError,
    ServiceTimeoutError,
    ServiceUnavailableError,
    TokenInvalidError,
    ValidationFailedError,
)
from authflow.storage.models import AuthTokens, UserInfo, UserRegistration

logger = get_logger(__name__)

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
REFRESH_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:refresh_token"

# Admin tokens are refreshed this many seconds before they expire
ADMIN_TOKEN_SKEW_SECONDS = 60


@dataclass
class TokenIntrospection:
    user: UserInfo
    expires_at: Optional[datetime] = None


class IdentityProvider(Protocol):
    """Capabilities the auth core needs from the identity provider."""

    async def login(self, username: str, password: str) -> AuthTokens: ...

    async def refresh_token(self, refresh_token: str) -> AuthTokens: ...

    async def logout(self, refresh_token: str) -> None: ...

    async def validate_token(self, access_token: str) -> TokenIntrospection: ...

    async def get_user_info(self, user_id: str) -> UserInfo: ...

    async def get_user_by_email(self, email: str) -> Optional[UserInfo]: ...

    async def register_user(self, registration: UserRegistration) -> str: ...

    async def verify_email(self, user_id: str, token: Optional[str] = None) -> None: ...

    async def send_verify_email(self, user_id: str) -> None: ...

    async def reset_password(self, email: str) -> None: ...

    async def set_password(self, user_id: str, new_password: str, *, temporary: bool = False) -> None: ...

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None: ...

    async def get_client_credentials_token(self) -> AuthTokens: ...

    async def issue_token_for_user(self, user_id: str) -> AuthTokens: ...

    async def get_roles(self, user_id: str) -> List[str]: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _roles_from_claims(claims: Dict[str, Any]) -> List[str]:
    roles: List[str] = list((claims.get("realm_access") or {}).get("roles") or [])
    for client_access in (claims.get("resource_access") or {}).values():
        for role in (client_access or {}).get("roles") or []:
            if role not in roles:
                roles.append(role)
    return roles


def user_from_claims(claims: Dict[str, Any]) -> UserInfo:
    """Build a UserInfo from token/introspection claims."""
    attributes = dict(claims.get("attributes") or {})
    if "risk_score" in claims:
        attributes["risk_score"] = claims["risk_score"]
    return UserInfo(
        sub=claims["sub"],
        email=claims.get("email"),
        email_verified=bool(claims.get("email_verified")),
        given_name=claims.get("given_name"),
        family_name=claims.get("family_name"),
        preferred_username=claims.get("preferred_username") or claims.get("username"),
        roles=_roles_from_claims(claims),
        organization_ids=_as_list(claims.get("organization_ids") or claims.get("organizations")),
        state=claims.get("state"),
        attributes=attributes,
    )


def user_from_representation(rep: Dict[str, Any], roles: Optional[List[str]] = None) -> UserInfo:
    """Build a UserInfo from a Keycloak admin user representation."""
    raw_attributes = rep.get("attributes") or {}
    attributes: Dict[str, Any] = {key: _first(value) for key, value in raw_attributes.items()}
    if "risk_score" in attributes:
        try:
            attributes["risk_score"] = float(attributes["risk_score"])
        except (TypeError, ValueError):
            attributes.pop("risk_score")
    return UserInfo(
        sub=rep["id"],
        email=rep.get("email"),
        email_verified=bool(rep.get("emailVerified")),
        given_name=rep.get("firstName"),
        family_name=rep.get("lastName"),
        preferred_username=rep.get("username"),
        roles=list(roles or []),
        organization_ids=_as_list(raw_attributes.get("organization_ids") or raw_attributes.get("organizations")),
        state=attributes.get("state"),
        attributes=attributes,
    )


class KeycloakClient:
    """Identity provider client for a Keycloak realm.

    Token operations use the realm's OpenID Connect endpoints with the
    configured client; user management uses the admin REST API with a
    service-account token that is cached until shortly before expiry.
    """

    def __init__(
        self,
        *,
        base_url: str,
        realm: str,
        client_id: str,
        client_secret: Optional[str] = None,
        admin_client_id: Optional[str] = None,
        admin_client_secret: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.realm = realm
        self.client_id = client_id
        self.client_secret = client_secret
        self.admin_client_id = admin_client_id or client_id
        self.admin_client_secret = admin_client_secret or client_secret
        self.timeout = timeout
        self.http = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=False)
        self._admin_token: Optional[str] = None
        self._admin_token_expires_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "KeycloakClient":
        return cls(
            base_url=settings.keycloak_url,
            realm=settings.keycloak_realm,
            client_id=settings.keycloak_client_id,
            client_secret=settings.keycloak_client_secret,
            admin_client_id=settings.keycloak_admin_client_id,
            admin_client_secret=settings.keycloak_admin_client_secret,
            timeout=settings.keycloak_timeout_seconds,
            **kwargs,
        )

    @property
    def _oidc(self) -> str:
        return f"{self.base_url}/realms/{self.realm}/protocol/openid-connect"

    @property
    def _admin(self) -> str:
        return f"{self.base_url}/admin/realms/{self.realm}"

    def _client_credentials(self) -> Dict[str, str]:
        data = {"client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    # =========================================================================
    # Transport and error mapping
    # =========================================================================

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("identity_provider_timeout", operation=operation, timeout=self.timeout)
            raise ServiceTimeoutError(
                "Identity provider timed out", detail={"operation": operation}, cause=exc
            ) from exc
        except httpx.TransportError as exc:
            logger.error("identity_provider_unreachable", operation=operation, error=str(exc))
            raise ServiceUnavailableError(
                "Identity provider unavailable", detail={"operation": operation}, cause=exc
            ) from exc

        if response.status_code >= 400:
            raise self._map_error(response, operation)
        return response

    @staticmethod
    def _map_error(response: httpx.Response, operation: str) -> ServiceError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        error = body.get("error")
        description = body.get("error_description") or body.get("errorMessage") or error or ""
        detail = {"operation": operation, "status": status}
        logger.warning("identity_provider_error", operation=operation, status_code=status, error=description)
        if status == 401 or (status == 400 and error == "invalid_grant"):
            if operation in {"login", "change_password"}:
                return InvalidCredentialsError("Invalid username or password", detail=detail)
            return TokenInvalidError(description or "Token is invalid or expired", detail=detail)
        if status == 403:
            return ForbiddenError(description or "Insufficient permissions", detail=detail)
        if status == 404:
            return NotFoundError(description or "User not found", detail=detail)
        if status == 409:
            return ConflictError(description or "User already exists", detail=detail)
        if status >= 500:
            return ServiceUnavailableError("Identity provider unavailable", detail=detail)
        return ValidationFailedError(description or "Identity provider rejected the request", detail=detail)

    async def _token_request(self, data: Dict[str, str], operation: str) -> AuthTokens:
        response = await self._request(
            "POST",
            f"{self._oidc}/token",
            operation=operation,
            data=data,
            headers={"Accept": "application/json"},
        )
        return AuthTokens.from_dict(response.json())

    async def _admin_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self.get_admin_token()}"}

    # =========================================================================
    # Token operations
    # =========================================================================

    async def login(self, username: str, password: str) -> AuthTokens:
        data = {
            **self._client_credentials(),
            "grant_type": "password",
            "username": username,
            "password": password,
            "scope": "openid",
        }
        return await self._token_request(data, "login")

    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        data = {
            **self._client_credentials(),
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return await self._token_request(data, "refresh_token")

    async def logout(self, refresh_token: str) -> None:
        try:
            await self._request(
                "POST",
                f"{self._oidc}/logout",
                operation="logout",
                data={**self._client_credentials(), "refresh_token": refresh_token},
            )
        except (TokenInvalidError, ValidationFailedError):
            # Session already gone at the provider
            logger.info("identity_logout_session_missing")

    async def validate_token(self, access_token: str) -> TokenIntrospection:
        response = await self._request(
            "POST",
            f"{self._oidc}/token/introspect",
            operation="validate_token",
            data={**self._client_credentials(), "token": access_token},
        )
        claims = response.json()
        if not claims.get("active") or not claims.get("sub"):
            raise TokenInvalidError("Token is inactive")
        expires_at = None
        if claims.get("exp"):
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        return TokenIntrospection(user=user_from_claims(claims), expires_at=expires_at)

    async def get_client_credentials_token(self) -> AuthTokens:
        data = {**self._client_credentials(), "grant_type": "client_credentials"}
        return await self._token_request(data, "client_credentials")

    async def issue_token_for_user(self, user_id: str) -> AuthTokens:
        """Mint a user-scoped token via token exchange (impersonation)."""
        service_token = await self.get_client_credentials_token()
        data = {
            **self._client_credentials(),
            "grant_type": TOKEN_EXCHANGE_GRANT,
            "subject_token": service_token.access_token,
            "requested_subject": user_id,
            "requested_token_type": REFRESH_TOKEN_TYPE,
        }
        return await self._token_request(data, "token_exchange")

    async def get_admin_token(self) -> str:
        if self._admin_token and time.monotonic() < self._admin_token_expires_at:
            return self._admin_token
        data = {"client_id": self.admin_client_id, "grant_type": "client_credentials"}
        if self.admin_client_secret:
            data["client_secret"] = self.admin_client_secret
        tokens = await self._token_request(data, "admin_token")
        self._admin_token = tokens.access_token
        self._admin_token_expires_at = time.monotonic() + max(0, tokens.expires_in - ADMIN_TOKEN_SKEW_SECONDS)
        return self._admin_token

    # =========================================================================
    # User management (admin API)
    # =========================================================================

    async def get_roles(self, user_id: str) -> List[str]:
        response = await self._request(
            "GET",
            f"{self._admin}/users/{user_id}/role-mappings/realm",
            operation="get_roles",
            headers=await self._admin_headers(),
        )
        return [role["name"] for role in response.json() if role.get("name")]

    async def get_user_info(self, user_id: str) -> UserInfo:
        response = await self._request(
            "GET",
            f"{self._admin}/users/{user_id}",
            operation="get_user_info",
            headers=await self._admin_headers(),
        )
        roles = await self.get_roles(user_id)
        return user_from_representation(response.json(), roles)

    async def get_user_by_email(self, email: str) -> Optional[UserInfo]:
        response = await self._request(
            "GET",
            f"{self._admin}/users",
            operation="get_user_by_email",
            params={"email": email, "exact": "true"},
            headers=await self._admin_headers(),
        )
        users = response.json()
        if not users:
            return None
        rep = users[0]
        return user_from_representation(rep, await self.get_roles(rep["id"]))

    async def register_user(self, registration: UserRegistration) -> str:
        payload = {
            "username": registration.username,
            "email": registration.email,
            "firstName": registration.first_name,
            "lastName": registration.last_name,
            "enabled": registration.enabled,
            "emailVerified": registration.email_verified,
            "attributes": registration.attributes,
            "credentials": [
                {"type": "password", "value": registration.password, "temporary": False}
            ],
        }
        response = await self._request(
            "POST",
            f"{self._admin}/users",
            operation="register_user",
            json=payload,
            headers=await self._admin_headers(),
        )
        location = response.headers.get("Location", "")
        user_id = location.rstrip("/").rsplit("/", 1)[-1] if location else ""
        if not user_id:
            created = await self.get_user_by_email(registration.email)
            if created is None:
                raise ServiceUnavailableError("User created but could not be resolved")
            user_id = created.sub
        logger.info("identity_user_registered", user_id=user_id)
        return user_id

    async def verify_email(self, user_id: str, token: Optional[str] = None) -> None:
        """Mark the user's email verified; ``token`` is the caller's proof of possession."""
        await self._request(
            "PUT",
            f"{self._admin}/users/{user_id}",
            operation="verify_email",
            json={"emailVerified": True},
            headers=await self._admin_headers(),
        )

    async def send_verify_email(self, user_id: str) -> None:
        await self._request(
            "PUT",
            f"{self._admin}/users/{user_id}/send-verify-email",
            operation="send_verify_email",
            headers=await self._admin_headers(),
        )

    async def reset_password(self, email: str) -> None:
        user = await self.get_user_by_email(email)
        if user is None:
            # Do not reveal whether the account exists
            logger.info("identity_reset_password_unknown_email")
            return
        await self._request(
            "PUT",
            f"{self._admin}/users/{user.sub}/execute-actions-email",
            operation="reset_password",
            json=["UPDATE_PASSWORD"],
            headers=await self._admin_headers(),
        )

    async def set_password(self, user_id: str, new_password: str, *, temporary: bool = False) -> None:
        await self._request(
            "PUT",
            f"{self._admin}/users/{user_id}/reset-password",
            operation="set_password",
            json={"type": "password", "value": new_password, "temporary": temporary},
            headers=await self._admin_headers(),
        )

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        user = await self.get_user_info(user_id)
        # Proves knowledge of the current password before replacing it
        await self.login(user.preferred_username or user.email or user_id, old_password)
        await self.set_password(user_id, new_password)

    async def health_check(self) -> bool:
        try:
            response = await self.http.get(f"{self.base_url}/health/ready")
        except httpx.HTTPError as exc:
            logger.warning("identity_health_check_failed", error=str(exc))
            return False
        return response.status_code == 200

    async def close(self) -> None:
        await self.http.aclose()
