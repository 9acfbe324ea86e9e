from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.codes import generate_token, mask_email, token_digest
from authflow.service.delivery import Notifier
from authflow.service.errors import (
    ExpiredError,
    MagicLinkLimitError,
    NotFoundError,
    ServiceError,
    ServiceUnavailableError,
    ValidationFailedError,
)
from authflow.service.events import EventBus, EventType, MagicLinkEvent
from authflow.service.identity import IdentityProvider
from authflow.service.results import MagicLinkResult, MagicLinkVerificationResult
from authflow.storage.cache import CacheGateway, ttl_until, utcnow
from authflow.storage.models import (
    MagicLink,
    MagicLinkAction,
    MagicLinkStatus,
    UserInfo,
    UserRegistration,
    new_id,
)

logger = get_logger(__name__)

PRIVILEGED_ROLES = frozenset({"admin", "super_admin", "administrator"})

_TERMINAL_MESSAGES = {
    MagicLinkStatus.USED: ("Magic link has already been used", "already_used"),
    MagicLinkStatus.REVOKED: ("Magic link has been revoked", "revoked"),
    MagicLinkStatus.EXPIRED: ("Magic link has expired", "expired"),
}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def username_from_email(email: str) -> str:
    """Build a username from the email's local part plus a random suffix."""
    local = email.split("@", 1)[0].lower()
    base = re.sub(r"[^a-z0-9]", "", local) or "user"
    return f"{base}_{secrets.token_hex(2)}"


class MagicLinkService:
    """Single-use passwordless links: issue, deliver, redeem.

    A link leaves ``pending`` exactly once (to used, expired or revoked).
    Records outlive the link by ``magic_link_retention_seconds`` so a late
    click still reports the terminal state instead of "not found".
    """

    def __init__(
        self,
        cache: CacheGateway,
        identity: IdentityProvider,
        events: EventBus,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.identity = identity
        self.events = events
        self.notifier = notifier
        self.settings = settings
        self._now = clock

    # =========================================================================
    # Storage
    # =========================================================================

    async def get_link(self, link_id: str) -> Optional[MagicLink]:
        data = await self.cache.get_json(f"magic_link:{link_id}")
        return MagicLink.from_dict(data) if data else None

    def _retention_ttl(self, link: MagicLink) -> int:
        retain_until = link.expires_at + timedelta(seconds=self.settings.magic_link_retention_seconds)
        return ttl_until(retain_until, self._now())

    async def _store(self, link: MagicLink) -> None:
        ttl = self._retention_ttl(link)
        await self.cache.set_json(f"magic_link:{link.id}", link.to_dict(), ttl)
        await self.cache.set(f"magic_link:token:{token_digest(link.token)}", link.id, ttl)
        await self.cache.sadd(f"magic_link:email:{link.email}", link.id, ttl=ttl)

    async def _update(self, link: MagicLink) -> None:
        await self.cache.set_json(f"magic_link:{link.id}", link.to_dict(), self._retention_ttl(link))

    async def _delete(self, link: MagicLink) -> None:
        await self.cache.delete(f"magic_link:{link.id}", f"magic_link:token:{token_digest(link.token)}")
        await self.cache.srem(f"magic_link:email:{link.email}", link.id)

    async def get_links_for_email(self, email: str) -> List[MagicLink]:
        email = normalize_email(email)
        index_key = f"magic_link:email:{email}"
        links = []
        for link_id in await self.cache.smembers(index_key):
            link = await self.get_link(link_id)
            if link is None:
                await self.cache.srem(index_key, link_id)
                continue
            links.append(link)
        links.sort(key=lambda link: link.created_at, reverse=True)
        return links

    async def _revoke_pending(self, email: str) -> int:
        # Read-then-write over several keys; two concurrent generates can both
        # leave a pending link behind
        revoked = 0
        for link in await self.get_links_for_email(email):
            if link.status == MagicLinkStatus.PENDING:
                link.status = MagicLinkStatus.REVOKED
                await self._update(link)
                revoked += 1
        if revoked:
            logger.info("magic_links_superseded", email=mask_email(email), count=revoked)
        return revoked

    # =========================================================================
    # URLs
    # =========================================================================

    def build_link_url(self, token: str, action: str, redirect_url: Optional[str] = None) -> str:
        params = {"token": token, "action": action}
        if redirect_url:
            params["redirect"] = redirect_url
        return f"{self.settings.frontend_base_url}{self.settings.magic_link_path}?{urlencode(params)}"

    def _default_redirect(self, action: MagicLinkAction) -> str:
        paths = {
            MagicLinkAction.LOGIN: self.settings.redirect_login_path,
            MagicLinkAction.REGISTER: self.settings.redirect_register_path,
            MagicLinkAction.VERIFY_EMAIL: self.settings.redirect_verify_email_path,
            MagicLinkAction.RESET_PASSWORD: self.settings.redirect_reset_password_path,
        }
        return f"{self.settings.frontend_base_url}{paths[action]}"

    # =========================================================================
    # Issue
    # =========================================================================

    async def _consume_daily_quota(self, email: str) -> None:
        day = self._now().strftime("%Y-%m-%d")
        count = await self.cache.increment(f"magic_link:daily:{email}:{day}", 86400)
        if count > self.settings.magic_link_max_per_day:
            raise MagicLinkLimitError(
                f"Daily magic link limit exceeded ({self.settings.magic_link_max_per_day})",
                detail={"max_per_day": self.settings.magic_link_max_per_day},
            )

    async def generate(
        self,
        email: str,
        action: MagicLinkAction = MagicLinkAction.LOGIN,
        *,
        redirect_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MagicLinkResult:
        if not self.settings.magic_link_enabled:
            return MagicLinkResult(
                success=False, message="Magic link authentication is disabled", error_code="forbidden"
            )
        email = normalize_email(email)
        if "@" not in email:
            return MagicLinkResult(success=False, message="A valid email is required", error_code="validation_failed")
        try:
            action = MagicLinkAction(action)
        except ValueError:
            return MagicLinkResult(
                success=False, message=f"Unsupported action: {action}", error_code="validation_failed"
            )

        try:
            await self._consume_daily_quota(email)
        except MagicLinkLimitError as exc:
            logger.warning("magic_link_daily_limit_exceeded", email=mask_email(email))
            return MagicLinkResult(success=False, message=exc.message, error_code=exc.error_code)

        user = await self.identity.get_user_by_email(email)
        if user is None and self.settings.magic_link_require_existing_user:
            return MagicLinkResult(
                success=False, message="User not found. Please register first.", error_code="not_found"
            )

        await self._revoke_pending(email)

        now = self._now()
        link = MagicLink(
            id=new_id(),
            token=generate_token(self.settings.magic_link_token_bytes),
            email=email,
            action=action.value,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.magic_link_expiry_minutes),
            redirect_url=redirect_url or self._default_redirect(action),
            user_id=user.sub if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        await self._store(link)

        delivery = await self.notifier.send_magic_link(
            email,
            self.build_link_url(link.token, link.action, link.redirect_url),
            action=link.action,
            expires_at=link.expires_at,
        )
        if not delivery.success:
            logger.warning("magic_link_delivery_failed", link_id=link.id, error=delivery.error)

        await self.events.publish(
            MagicLinkEvent(
                type=EventType.MAGIC_LINK_GENERATED,
                user_id=link.user_id,
                link_id=link.id,
                link_action=link.action,
                email_sent=delivery.success,
            )
        )
        logger.info("magic_link_generated", link_id=link.id, action=link.action, email_sent=delivery.success)
        return MagicLinkResult(
            success=True,
            message="Magic link sent" if delivery.success else "Magic link created but the email could not be sent",
            link_id=link.id,
            expires_at=link.expires_at,
            email_sent=delivery.success,
        )

    async def resend(self, link_id: str) -> MagicLinkResult:
        link = await self.get_link(link_id)
        if link is None:
            return MagicLinkResult(success=False, message="Magic link not found", error_code="not_found")
        if link.status == MagicLinkStatus.PENDING and self._now() >= link.expires_at:
            link.status = MagicLinkStatus.EXPIRED
            await self._update(link)
        if link.status != MagicLinkStatus.PENDING:
            message, error_code = _TERMINAL_MESSAGES[link.status]
            return MagicLinkResult(success=False, message=message, link_id=link.id, error_code=error_code)

        delivery = await self.notifier.send_magic_link(
            link.email,
            self.build_link_url(link.token, link.action, link.redirect_url),
            action=link.action,
            expires_at=link.expires_at,
        )
        if delivery.success:
            link.metadata["last_sent_at"] = self._now().isoformat()
            await self._update(link)
        return MagicLinkResult(
            success=delivery.success,
            message="Magic link resent" if delivery.success else "Magic link email could not be sent",
            link_id=link.id,
            expires_at=link.expires_at,
            email_sent=delivery.success,
            error_code=None if delivery.success else "delivery_failed",
        )

    async def revoke(self, link_id: str) -> bool:
        """Revoke a pending link. Links already out of ``pending`` keep their status."""
        link = await self.get_link(link_id)
        if link is None:
            raise NotFoundError("Magic link not found")
        if link.status != MagicLinkStatus.PENDING:
            return False
        link.status = MagicLinkStatus.REVOKED
        await self._update(link)
        logger.info("magic_link_revoked", link_id=link_id)
        return True

    async def cleanup_expired(self) -> int:
        """Delete link records whose lifetime is over. Returns the count removed."""
        now = self._now()
        removed = 0
        for key in await self.cache.scan("magic_link:*"):
            # Only primary records (magic_link:{id}); indexes and counters nest deeper
            if key.count(":") != 1:
                continue
            data = await self.cache.get_json(key)
            if not data:
                continue
            link = MagicLink.from_dict(data)
            if now >= link.expires_at:
                await self._delete(link)
                removed += 1
        if removed:
            logger.info("magic_links_cleaned_up", count=removed)
        return removed

    # =========================================================================
    # Redeem
    # =========================================================================

    async def verify(self, token: str) -> MagicLinkVerificationResult:
        link_id = await self.cache.get(f"magic_link:token:{token_digest(token)}") if token else None
        link = await self.get_link(link_id) if link_id else None
        if link is None:
            return MagicLinkVerificationResult(
                success=False,
                status=MagicLinkStatus.EXPIRED,
                message="Magic link not found or expired",
                error_code="expired",
            )

        if link.status == MagicLinkStatus.PENDING and self._now() >= link.expires_at:
            link.status = MagicLinkStatus.EXPIRED
            await self._update(link)
            logger.info("magic_link_expired", link_id=link.id)

        if link.status != MagicLinkStatus.PENDING or not await self._claim(link):
            status = link.status if link.status != MagicLinkStatus.PENDING else MagicLinkStatus.USED
            message, error_code = _TERMINAL_MESSAGES[status]
            return MagicLinkVerificationResult(
                success=False, status=status, message=message, action=link.action, error_code=error_code
            )

        link.status = MagicLinkStatus.USED
        link.used_at = self._now()
        await self._update(link)

        result = await self._dispatch(link)

        await self.events.publish(
            MagicLinkEvent(
                type=EventType.MAGIC_LINK_USED,
                user_id=result.user_info.sub if result.user_info else link.user_id,
                success=result.success,
                link_id=link.id,
                link_action=link.action,
                error=result.error_code,
            )
        )
        if result.success and link.action in (MagicLinkAction.LOGIN.value, MagicLinkAction.REGISTER.value):
            await self.events.publish(
                MagicLinkEvent(
                    type=EventType.PASSWORDLESS_AUTH_SUCCESS,
                    user_id=result.user_info.sub if result.user_info else link.user_id,
                    link_id=link.id,
                    link_action=link.action,
                )
            )
        return result

    async def _claim(self, link: MagicLink) -> bool:
        # First caller to increment wins; a concurrent verify sees 2 and is
        # reported as already used
        count = await self.cache.increment(f"magic_link:claim:{link.id}", self._retention_ttl(link))
        return count == 1

    async def _dispatch(self, link: MagicLink) -> MagicLinkVerificationResult:
        try:
            action = MagicLinkAction(link.action)
        except ValueError:
            action = None

        try:
            if action == MagicLinkAction.LOGIN:
                return await self._handle_login(link)
            elif action == MagicLinkAction.REGISTER:
                return await self._handle_register(link)
            elif action == MagicLinkAction.VERIFY_EMAIL:
                return await self._handle_verify_email(link)
            elif action == MagicLinkAction.RESET_PASSWORD:
                return await self._handle_reset_password(link)
            else:
                logger.error("magic_link_unsupported_action", link_id=link.id, action=link.action)
                return self._failure(link, f"Unsupported action: {link.action}", "unsupported_action")
        except ServiceUnavailableError:
            raise
        except ServiceError as exc:
            logger.warning(
                "magic_link_action_failed",
                link_id=link.id,
                action=link.action,
                error=exc.message,
                error_code=exc.error_code,
            )
            return self._failure(link, exc.message, exc.error_code)

    @staticmethod
    def _failure(link: MagicLink, message: str, error_code: str) -> MagicLinkVerificationResult:
        return MagicLinkVerificationResult(
            success=False, status=link.status, message=message, action=link.action, error_code=error_code
        )

    def requires_mfa(self, user: UserInfo) -> bool:
        if PRIVILEGED_ROLES & set(user.roles):
            return True
        try:
            risk = float(user.attributes.get("risk_score") or 0)
        except (TypeError, ValueError):
            return False
        return risk > self.settings.magic_link_risk_threshold

    async def _handle_login(self, link: MagicLink) -> MagicLinkVerificationResult:
        if not link.user_id:
            return self._failure(link, "User not found for login", "not_found")
        user = await self.identity.get_user_info(link.user_id)
        tokens = await self.identity.issue_token_for_user(link.user_id)
        return MagicLinkVerificationResult(
            success=True,
            status=MagicLinkStatus.USED,
            message="Login successful",
            action=link.action,
            user_info=user,
            tokens=tokens,
            requires_mfa=self.requires_mfa(user),
            redirect_url=link.redirect_url,
        )

    async def _handle_register(self, link: MagicLink) -> MagicLinkVerificationResult:
        if not self.settings.magic_link_auto_create_user:
            return self._failure(link, "User registration is disabled", "forbidden")

        registration = UserRegistration(
            username=username_from_email(link.email),
            email=link.email,
            password=generate_token(32),
            email_verified=True,
            enabled=True,
        )
        user_id = await self.identity.register_user(registration)
        user = await self.identity.get_user_info(user_id)
        tokens = await self.identity.issue_token_for_user(user_id)

        welcome = await self.notifier.send_welcome(link.email, user.given_name)
        if not welcome.success:
            logger.warning("welcome_email_failed", user_id=user_id, error=welcome.error)

        logger.info("magic_link_user_registered", user_id=user_id, link_id=link.id)
        return MagicLinkVerificationResult(
            success=True,
            status=MagicLinkStatus.USED,
            message="Registration completed successfully",
            action=link.action,
            user_info=user,
            tokens=tokens,
            redirect_url=link.redirect_url,
        )

    async def _handle_verify_email(self, link: MagicLink) -> MagicLinkVerificationResult:
        if not link.user_id:
            return self._failure(link, "User not found for email verification", "not_found")
        await self.identity.verify_email(link.user_id, link.token)
        return MagicLinkVerificationResult(
            success=True,
            status=MagicLinkStatus.USED,
            message="Email verified successfully",
            action=link.action,
            user_info=UserInfo(sub=link.user_id, email=link.email, email_verified=True),
            redirect_url=link.redirect_url,
        )

    async def _handle_reset_password(self, link: MagicLink) -> MagicLinkVerificationResult:
        now = self._now()
        ttl_seconds = self.settings.password_reset_ttl_minutes * 60
        reset_token = generate_token(self.settings.magic_link_token_bytes)
        await self.cache.set_json(
            f"password_reset:{token_digest(reset_token)}",
            {
                "email": link.email,
                "user_id": link.user_id,
                "link_id": link.id,
                "created_at": now.isoformat(),
                "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
            },
            ttl_seconds,
        )
        return MagicLinkVerificationResult(
            success=True,
            status=MagicLinkStatus.USED,
            message="Password reset authorized",
            action=link.action,
            user_info=UserInfo(sub=link.user_id or "", email=link.email),
            redirect_url=link.redirect_url,
            reset_token=reset_token,
        )

    async def complete_password_reset(self, reset_token: str, new_password: str) -> str:
        """Consume a reset grant and set the new password. Returns the user id."""
        if not new_password:
            raise ValidationFailedError("New password is required")
        grant = await self.cache.pop_json(f"password_reset:{token_digest(reset_token or '')}")
        if not grant:
            raise ExpiredError("Password reset token is invalid or expired")

        user_id = grant.get("user_id")
        if not user_id:
            user = await self.identity.get_user_by_email(grant["email"])
            if user is None:
                raise NotFoundError("User not found")
            user_id = user.sub

        await self.identity.set_password(user_id, new_password)
        logger.info("password_reset_completed", user_id=user_id)
        return user_id
