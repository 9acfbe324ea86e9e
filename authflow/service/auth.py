from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from authflow.config import Settings, get_settings
from authflow.logging import get_logger
from authflow.service.authorization import AuthorizationService
from authflow.service.codes import mask_email
from authflow.service.delivery import Notifier
from authflow.service.errors import (
    InvalidCredentialsError,
    NoActiveMFAMethodsError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
    ServiceUnavailableError,
    TokenInvalidError,
    ValidationFailedError,
    enhance_error,
)
from authflow.service.events import AuthEvent, EventBus, EventRecorder, EventType, Listener
from authflow.service.identity import IdentityProvider, KeycloakClient
from authflow.service.magic_link import MagicLinkService
from authflow.service.mfa import MFAService
from authflow.service.policy import OPAClient, PolicyDecisionClient
from authflow.service.results import (
    AuthorizationResult,
    LoginResult,
    LoginWithMFAResult,
    MagicLinkResult,
    MagicLinkVerificationResult,
    MFASetupResult,
    PasswordlessResult,
    TokenValidationResult,
)
from authflow.service.sessions import SessionTracker
from authflow.service.token_cache import TokenCache
from authflow.storage.cache import CacheBackend, CacheGateway, ttl_until, utcnow
from authflow.storage.memory import MemoryCache
from authflow.storage.models import (
    AuthenticationFlow,
    AuthFlowMethod,
    AuthFlowStep,
    AuthTokens,
    MagicLinkAction,
    MagicLinkStatus,
    MFAMethod,
    MFAMethodType,
    PasswordlessMethod,
    TrustedDevice,
    UserInfo,
    UserRegistration,
    new_id,
)
from authflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class AuthService:
    """Entry point for authentication, MFA, passwordless and permission flows.

    Owns one :class:`EventBus` and wires the engines around a shared cache
    gateway, identity provider and policy client.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: CacheGateway,
        identity: IdentityProvider,
        policy: PolicyDecisionClient,
        notifier: Notifier,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.identity = identity
        self.policy = policy
        self.notifier = notifier
        self.events = events or EventBus()
        self._now = clock
        if settings.persist_events:
            self.events.add_sink(EventRecorder(cache, ttl_days=settings.event_ttl_days))

        self.tokens = TokenCache(
            cache,
            identity,
            self.events,
            ttl_seconds=settings.cache_ttl_seconds,
            enabled=settings.cache_enabled,
            clock=clock,
        )
        self.authorization = AuthorizationService(
            cache,
            self.tokens,
            policy,
            self.events,
            cache_ttl_seconds=settings.authorization_cache_ttl_seconds,
            audit_ttl_days=settings.audit_log_ttl_days,
            business_timezone=settings.business_timezone,
            cache_enabled=settings.cache_enabled,
            clock=clock,
        )
        self.sessions = SessionTracker(cache, ttl_seconds=settings.session_ttl_seconds)
        self.mfa = MFAService(cache, self.events, notifier, settings, clock=clock)
        self.magic_links = MagicLinkService(cache, identity, self.events, notifier, settings, clock=clock)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AuthService":
        settings = settings or get_settings()
        settings.ensure_valid()

        backend: CacheBackend
        if settings.use_memory_cache:
            backend = MemoryCache()
        else:
            backend = RedisCache(
                settings.redis_url,
                socket_timeout=settings.redis_command_timeout_seconds,
                connect_timeout=settings.redis_connect_timeout_seconds,
                retry_attempts=settings.redis_retry_attempts,
            )
            try:
                backend.verify_connection()
            except Exception as exc:
                logger.error(
                    "auth_cache_connect_failed",
                    host=settings.redis_host,
                    port=settings.redis_port,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise enhance_error("service_unavailable", exc, "Cache store is unreachable") from exc

        logger.info(
            "auth_service_initialized",
            environment=settings.environment.value,
            cache_backend="memory" if settings.use_memory_cache else "redis",
            mfa_enabled=settings.mfa_enabled,
            magic_link_enabled=settings.magic_link_enabled,
        )
        return cls(
            settings,
            cache=CacheGateway(backend, prefix=settings.redis_prefix),
            identity=KeycloakClient.from_settings(settings),
            policy=OPAClient.from_settings(settings),
            notifier=Notifier.from_settings(settings),
        )

    # =========================================================================
    # Events
    # =========================================================================

    def add_event_listener(self, event_type: EventType, listener: Listener) -> None:
        self.events.subscribe(event_type, listener)

    def remove_event_listener(self, event_type: EventType, listener: Listener) -> bool:
        return self.events.unsubscribe(event_type, listener)

    async def _emit(self, event_type: EventType, user_id: Optional[str], started: float, **kwargs: Any) -> None:
        await self.events.publish(
            AuthEvent(type=event_type, user_id=user_id, duration_ms=_elapsed_ms(started), **kwargs)
        )

    async def _unexpected(self, operation: str, exc: Exception) -> ServiceError:
        error = enhance_error("server_error", exc)
        logger.error("auth_operation_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
        await self.events.publish(
            AuthEvent(type=EventType.ERROR, success=False, error=error.error_code, details={"operation": operation})
        )
        return error

    # =========================================================================
    # Password login and tokens
    # =========================================================================

    async def _start_session(self, tokens: AuthTokens, user_id: Optional[str]) -> Optional[str]:
        session_id = tokens.session_state
        if session_id and user_id:
            await self.sessions.record(session_id, user_id, tokens.refresh_expires_in or None)
        return session_id

    async def login(self, username: str, password: str) -> LoginResult:
        started = time.perf_counter()
        try:
            tokens = await self.identity.login(username, password)
            validation = await self.tokens.validate(tokens.access_token)
            session_id = await self._start_session(tokens, validation.user_id)
        except InvalidCredentialsError as exc:
            await self._emit(EventType.LOGIN, None, started, success=False, error=exc.error_code)
            return LoginResult(success=False, error_code=exc.error_code, message=exc.message)
        except ServiceError:
            raise
        except Exception as exc:
            raise await self._unexpected("login", exc) from exc

        await self._emit(EventType.LOGIN, validation.user_id, started)
        return LoginResult(success=True, tokens=tokens, user_id=validation.user_id, session_id=session_id)

    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        started = time.perf_counter()
        try:
            tokens = await self.identity.refresh_token(refresh_token)
        except TokenInvalidError as exc:
            await self._emit(EventType.TOKEN_REFRESH, None, started, success=False, error=exc.error_code)
            raise
        await self._emit(EventType.TOKEN_REFRESH, None, started)
        return tokens

    async def logout(
        self,
        refresh_token: str,
        *,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        started = time.perf_counter()
        if access_token and not user_id:
            user_id = (await self.tokens.validate(access_token)).user_id

        await self.identity.logout(refresh_token)
        if access_token:
            await self.tokens.invalidate_token(access_token)
        if user_id:
            # The user tag covers cached profile, roles, validations and decisions
            await self.tokens.invalidate_user(user_id)
            await self.sessions.revoke_user_sessions(user_id)
        await self._emit(EventType.LOGOUT, user_id, started)

    async def validate_token(self, token: str) -> TokenValidationResult:
        return await self.tokens.validate(token)

    async def get_user_info(self, user_id: str) -> UserInfo:
        return await self.tokens.get_user_info(user_id)

    async def get_user_roles(self, user_id: str) -> List[str]:
        return await self.tokens.get_user_roles(user_id)

    async def get_client_credentials_token(self) -> AuthTokens:
        return await self.identity.get_client_credentials_token()

    # =========================================================================
    # Authorization
    # =========================================================================

    async def check_permission(
        self,
        token: str,
        resource_id: str,
        resource_type: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.authorization.check_permission(token, resource_id, resource_type, action, context)

    async def check_permission_detailed(
        self,
        token: str,
        resource_id: str,
        resource_type: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationResult:
        return await self.authorization.check_permission_detailed(
            token, resource_id, resource_type, action, context
        )

    # =========================================================================
    # Account management
    # =========================================================================

    async def register_user(self, registration: UserRegistration) -> str:
        started = time.perf_counter()
        try:
            user_id = await self.identity.register_user(registration)
        except ServiceError as exc:
            await self._emit(EventType.REGISTRATION, None, started, success=False, error=exc.error_code)
            raise
        await self._emit(EventType.REGISTRATION, user_id, started)
        return user_id

    async def verify_email(self, user_id: str, token: Optional[str] = None) -> None:
        await self.identity.verify_email(user_id, token)
        await self.tokens.invalidate_user(user_id)

    async def resend_verification_email(self, user_id: str) -> None:
        await self.identity.send_verify_email(user_id)
        logger.info("verification_email_resent", user_id=user_id)

    async def reset_password(self, email: str) -> None:
        await self.identity.reset_password(email)

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        await self.identity.change_password(user_id, old_password, new_password)
        logger.info("password_changed", user_id=user_id)

    # =========================================================================
    # MFA login
    # =========================================================================

    async def login_with_mfa(
        self,
        username: str,
        password: str,
        *,
        device_fingerprint: Optional[str] = None,
        method_type: Optional[MFAMethodType] = None,
    ) -> LoginWithMFAResult:
        """Password login followed by a second factor when one is needed.

        Returns tokens directly for trusted devices and users without MFA;
        otherwise returns a challenge and holds the tokens until
        :meth:`complete_mfa_login` succeeds.
        """
        started = time.perf_counter()
        try:
            tokens = await self.identity.login(username, password)
        except InvalidCredentialsError as exc:
            await self._emit(EventType.LOGIN, None, started, success=False, error=exc.error_code)
            return LoginWithMFAResult(success=False, error_code=exc.error_code, message=exc.message)

        validation = await self.tokens.validate(tokens.access_token)
        if not validation.valid or not validation.user_id:
            await self._emit(EventType.LOGIN, None, started, success=False, error="token_invalid")
            return LoginWithMFAResult(success=False, error_code="token_invalid", message="Authentication failed")
        user_id = validation.user_id

        if not self.settings.mfa_enabled:
            return await self._finish_login(tokens, user_id, started)

        # Trusted devices skip the second factor before any rate limiting applies
        if device_fingerprint and await self.mfa.is_device_trusted(user_id, device_fingerprint):
            logger.info("mfa_skipped_trusted_device", user_id=user_id)
            return await self._finish_login(tokens, user_id, started, device_trusted=True)

        if not await self.mfa.get_active_methods(user_id):
            if set(validation.roles) & set(self.settings.mfa_enforced_roles):
                logger.warning("mfa_setup_required", user_id=user_id)
                return LoginWithMFAResult(
                    success=False,
                    user_id=user_id,
                    error_code="mfa_setup_required",
                    message="MFA setup is required for this account",
                )
            return await self._finish_login(tokens, user_id, started)

        try:
            challenge = await self.mfa.initiate_challenge(
                user_id, method_type, device_fingerprint=device_fingerprint
            )
        except (RateLimitedError, NoActiveMFAMethodsError) as exc:
            return LoginWithMFAResult(success=False, user_id=user_id, error_code=exc.error_code, message=exc.message)

        await self.cache.set_json(
            f"mfa:pending_login:{challenge.challenge_id}",
            {"user_id": user_id, "tokens": tokens.to_dict()},
            ttl_until(challenge.expires_at, self._now()),
        )
        return LoginWithMFAResult(
            success=True,
            requires_mfa=True,
            user_id=user_id,
            challenge=challenge,
            message="MFA verification required",
        )

    async def _finish_login(
        self,
        tokens: AuthTokens,
        user_id: str,
        started: float,
        *,
        device_trusted: bool = False,
        mfa: bool = False,
    ) -> LoginWithMFAResult:
        await self._start_session(tokens, user_id)
        await self._emit(
            EventType.LOGIN, user_id, started, details={"mfa": mfa, "device_trusted": device_trusted}
        )
        return LoginWithMFAResult(success=True, tokens=tokens, user_id=user_id, device_trusted=device_trusted)

    async def complete_mfa_login(
        self,
        challenge_id: str,
        code: str,
        *,
        remember_device: bool = False,
        device_fingerprint: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> LoginWithMFAResult:
        started = time.perf_counter()
        verification = await self.mfa.verify_challenge(
            challenge_id,
            code,
            remember_device=remember_device,
            device_fingerprint=device_fingerprint,
            device_name=device_name,
        )
        if not verification.success:
            return LoginWithMFAResult(
                success=False,
                requires_mfa=True,
                user_id=verification.user_id,
                message=verification.message,
                error_code=verification.error_code,
            )

        held = await self.cache.pop_json(f"mfa:pending_login:{challenge_id}")
        if not held or held.get("user_id") != verification.user_id:
            logger.warning("mfa_pending_login_missing", challenge_id=challenge_id, user_id=verification.user_id)
            return LoginWithMFAResult(
                success=False,
                user_id=verification.user_id,
                message="Login session expired, please sign in again",
                error_code="expired",
            )

        tokens = AuthTokens.from_dict(held["tokens"])
        return await self._finish_login(
            tokens, verification.user_id, started, device_trusted=verification.device_trusted, mfa=True
        )

    # =========================================================================
    # MFA management
    # =========================================================================

    async def setup_mfa(self, user_id: str, method_type: MFAMethodType, **kwargs: Any) -> MFASetupResult:
        return await self.mfa.setup_method(user_id, method_type, **kwargs)

    async def verify_mfa_setup(self, method_id: str, code: str) -> MFASetupResult:
        return await self.mfa.verify_setup(method_id, code)

    async def remove_mfa_method(self, user_id: str, method_id: str) -> None:
        await self.mfa.remove_method(user_id, method_id)

    async def get_mfa_methods(self, user_id: str) -> List[MFAMethod]:
        return await self.mfa.get_user_methods(user_id)

    async def generate_backup_codes(self, user_id: str) -> List[str]:
        return await self.mfa.generate_backup_codes(user_id)

    async def use_backup_code(self, user_id: str, code: str) -> bool:
        return await self.mfa.use_backup_code(user_id, code)

    async def trust_device(self, user_id: str, fingerprint: str, **kwargs: Any) -> TrustedDevice:
        return await self.mfa.trust_device(user_id, fingerprint, **kwargs)

    async def get_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        return await self.mfa.get_trusted_devices(user_id)

    async def revoke_trusted_device(self, user_id: str, device_id: str) -> None:
        await self.mfa.revoke_trusted_device(user_id, device_id)

    # =========================================================================
    # Passwordless
    # =========================================================================

    async def generate_magic_link(
        self, email: str, action: MagicLinkAction = MagicLinkAction.LOGIN, **kwargs: Any
    ) -> MagicLinkResult:
        return await self.magic_links.generate(email, action, **kwargs)

    async def verify_magic_link(self, token: str) -> MagicLinkVerificationResult:
        return await self.magic_links.verify(token)

    async def complete_password_reset(self, reset_token: str, new_password: str) -> str:
        user_id = await self.magic_links.complete_password_reset(reset_token, new_password)
        await self.tokens.invalidate_user(user_id)
        await self.sessions.revoke_user_sessions(user_id)
        return user_id

    async def initiate_passwordless_login(
        self,
        identifier: str,
        method: PasswordlessMethod = PasswordlessMethod.MAGIC_LINK,
        *,
        action: MagicLinkAction = MagicLinkAction.LOGIN,
        redirect_url: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordlessResult:
        """Start a sign-in without a password; only magic links are delivered."""
        method = PasswordlessMethod(method)
        if not self.settings.magic_link_enabled:
            return PasswordlessResult(
                success=False,
                method=method,
                message="Passwordless authentication is disabled",
                error_code="forbidden",
            )
        if method != PasswordlessMethod.MAGIC_LINK:
            return PasswordlessResult(
                success=False,
                method=method,
                message=f"Passwordless method {method.value} is not supported",
                error_code="validation_failed",
            )

        generated = await self.magic_links.generate(
            identifier, action, redirect_url=redirect_url, ip_address=ip_address, user_agent=user_agent
        )
        return PasswordlessResult(
            success=generated.success,
            method=method,
            message=generated.message,
            link_id=generated.link_id,
            expires_at=generated.expires_at,
            masked_destination=mask_email(identifier) if generated.success else None,
            error_code=generated.error_code,
        )

    async def verify_passwordless_login(self, token: str) -> MagicLinkVerificationResult:
        if not self.settings.magic_link_enabled:
            return MagicLinkVerificationResult(
                success=False,
                status=MagicLinkStatus.EXPIRED,
                message="Passwordless authentication is disabled",
                error_code="forbidden",
            )
        return await self.magic_links.verify(token)

    async def login_with_options(
        self,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        magic_link_token: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        method_type: Optional[MFAMethodType] = None,
    ) -> LoginWithMFAResult:
        """Sign in with a magic link token when given, else with a password."""
        if magic_link_token:
            verified = await self.verify_magic_link(magic_link_token)
            if not verified.success:
                return LoginWithMFAResult(success=False, message=verified.message, error_code=verified.error_code)
            return LoginWithMFAResult(
                success=True,
                tokens=verified.tokens,
                user_id=verified.user_info.sub if verified.user_info else None,
                requires_mfa=verified.requires_mfa,
                message=verified.message,
            )

        if username and password:
            return await self.login_with_mfa(
                username, password, device_fingerprint=device_fingerprint, method_type=method_type
            )

        return LoginWithMFAResult(
            success=False, message="Invalid login options provided", error_code="validation_failed"
        )

    # =========================================================================
    # Authentication flows
    # =========================================================================

    async def start_authentication_flow(
        self,
        method: AuthFlowMethod,
        identifier: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthenticationFlow:
        method = AuthFlowMethod(method)
        now = self._now()
        flow = AuthenticationFlow(
            id=new_id(),
            method=method,
            step=AuthFlowStep.CREDENTIALS,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.auth_flow_ttl_minutes),
            email=identifier if method != AuthFlowMethod.PASSWORD else None,
            metadata=dict(context or {}),
        )
        await self._save_flow(flow)
        logger.info("auth_flow_started", flow_id=flow.id, method=method.value)
        return flow

    async def _save_flow(self, flow: AuthenticationFlow) -> None:
        # Updates keep the original deadline
        await self.cache.set_json(f"auth_flow:{flow.id}", flow.to_dict(), ttl_until(flow.expires_at, self._now()))

    async def get_authentication_flow(self, flow_id: str) -> Optional[AuthenticationFlow]:
        data = await self.cache.get_json(f"auth_flow:{flow_id}")
        if not data:
            return None
        try:
            flow = AuthenticationFlow.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("auth_flow_invalid", flow_id=flow_id)
            return None
        if self._now() >= flow.expires_at:
            return None
        return flow

    async def update_authentication_flow(self, flow_id: str, **updates: Any) -> AuthenticationFlow:
        flow = await self.get_authentication_flow(flow_id)
        if flow is None:
            raise NotFoundError("Authentication flow not found")
        for name, value in updates.items():
            if name in ("id", "created_at", "expires_at") or not hasattr(flow, name):
                raise ValidationFailedError(f"Cannot update flow field: {name}")
            setattr(flow, name, value)
        try:
            flow.method = AuthFlowMethod(flow.method)
            flow.step = AuthFlowStep(flow.step)
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from exc
        await self._save_flow(flow)
        return flow

    async def complete_authentication_flow(self, flow_id: str) -> AuthenticationFlow:
        flow = await self.update_authentication_flow(flow_id, step=AuthFlowStep.COMPLETED)
        logger.info("auth_flow_completed", flow_id=flow_id, user_id=flow.user_id)
        return flow

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def health_check(self) -> Dict[str, bool]:
        status: Dict[str, bool] = {}
        try:
            status["cache"] = await self.cache.ping()
        except ServiceUnavailableError:
            status["cache"] = False
        status["identity"] = await self.identity.health_check()
        status["policy"] = await self.policy.health_check()
        return status

    async def close(self) -> None:
        await self.identity.close()
        await self.policy.close()
        await self.notifier.close()
        await self.cache.close()
        logger.info("auth_service_closed")
