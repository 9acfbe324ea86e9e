from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service import totp
from authflow.service.codes import (
    constant_time_equals,
    generate_backup_codes,
    generate_numeric_code,
    generate_token,
    generate_totp_secret,
    hash_code,
    mask_email,
    mask_phone,
    token_digest,
)
from authflow.service.delivery import EMAIL, SMS, Notifier
from authflow.service.errors import (
    ExpiredError,
    NoActiveMFAMethodsError,
    NotFoundError,
    ValidationFailedError,
)
from authflow.service.events import EventBus, EventType, MFAEvent
from authflow.service.rate_limit import RateLimiter
from authflow.service.results import (
    MFAChallengeDescriptor,
    MFASetupResult,
    MFAVerificationResult,
    RecoveryOptions,
)
from authflow.storage.cache import CacheGateway, ttl_until, utcnow
from authflow.storage.models import (
    BackupCodesGeneration,
    ChallengeStatus,
    EmailMetadata,
    MFAChallenge,
    MFAMethod,
    MFAMethodType,
    SMSMetadata,
    TOTPMetadata,
    TrustedDevice,
    WebAuthnMetadata,
    new_id,
)

logger = get_logger(__name__)

BACKUP_CODES_METHOD_ID = "backup_codes"
_CODE_METHODS = (MFAMethodType.SMS, MFAMethodType.EMAIL)


class MFAStatus(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    ENFORCED = "enforced"
    SETUP_REQUIRED = "setup_required"


class MFAService:
    """Second-factor setup, challenges, backup codes and device trust.

    All state lives in the cache store:

    - ``mfa:method:{id}`` method record (24h while unverified, a year after)
    - ``mfa:user:{user_id}:methods`` set of verified method ids
    - ``mfa:challenge:setup:{method_id}`` setup code for SMS/email
    - ``mfa:challenge:{id}`` login challenge, expiring with the challenge
    - ``mfa:challenge:{id}:attempts`` atomic count of verification attempts
    - ``mfa:backup_codes:{user_id}`` / ``:used`` sets of code hashes
    - ``mfa:device:{id}`` and ``mfa:user:{user_id}:devices`` trusted devices
    """

    def __init__(
        self,
        cache: CacheGateway,
        events: EventBus,
        notifier: Notifier,
        settings: Settings,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.events = events
        self.notifier = notifier
        self.settings = settings
        self.rate_limiter = rate_limiter or RateLimiter(
            cache,
            max_attempts=settings.mfa_rate_limit_max_attempts,
            window_seconds=settings.mfa_rate_limit_window_minutes * 60,
        )
        self._now = clock
        self.method_ttl_seconds = settings.mfa_method_ttl_days * 86400

    # =========================================================================
    # Method storage
    # =========================================================================

    async def _load_method(self, method_id: str) -> Optional[MFAMethod]:
        data = await self.cache.get_json(f"mfa:method:{method_id}")
        return MFAMethod.from_dict(data) if data else None

    async def _save_method(self, method: MFAMethod) -> None:
        ttl = self.method_ttl_seconds if method.is_verified else self.settings.mfa_setup_ttl_seconds
        await self.cache.set_json(f"mfa:method:{method.id}", method.to_dict(), ttl)

    async def get_user_methods(self, user_id: str) -> List[MFAMethod]:
        index_key = f"mfa:user:{user_id}:methods"
        methods: List[MFAMethod] = []
        for method_id in await self.cache.smembers(index_key):
            method = await self._load_method(method_id)
            if method is None:
                await self.cache.srem(index_key, method_id)
                continue
            methods.append(method)
        methods.sort(key=lambda m: m.created_at)
        return methods

    async def get_active_methods(self, user_id: str) -> List[MFAMethod]:
        return [m for m in await self.get_user_methods(user_id) if m.is_active]

    # =========================================================================
    # Setup
    # =========================================================================

    async def setup_method(
        self,
        user_id: str,
        method_type: MFAMethodType,
        *,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
        email_address: Optional[str] = None,
        device_name: Optional[str] = None,
        account_name: Optional[str] = None,
    ) -> MFASetupResult:
        """Start enrolling a method; it stays disabled until verified."""
        try:
            method_type = MFAMethodType(method_type)
        except ValueError:
            return MFASetupResult(
                success=False, message="Unsupported MFA method", error_code="validation_failed"
            )

        if method_type == MFAMethodType.BACKUP_CODES:
            codes = await self.generate_backup_codes(user_id)
            return MFASetupResult(
                success=True,
                method_type=method_type,
                backup_codes=codes,
                message="Backup codes generated",
            )

        method_id = new_id()
        now = self._now()
        result = MFASetupResult(success=True, method_id=method_id, method_type=method_type)

        if method_type == MFAMethodType.TOTP:
            secret = generate_totp_secret()
            uri = totp.provisioning_uri(secret, account_name or email_address or user_id, self.settings.mfa_issuer)
            metadata = TOTPMetadata(secret=secret, otpauth_uri=uri)
            result.secret = secret
            result.otpauth_uri = uri
            result.message = "Scan the QR code with your authenticator app, then enter a code"
        elif method_type == MFAMethodType.SMS:
            if not phone_number:
                return MFASetupResult(
                    success=False,
                    method_type=method_type,
                    message="Phone number is required for SMS MFA",
                    error_code="validation_failed",
                )
            metadata = SMSMetadata(phone_number=phone_number)
            result.masked_destination = mask_phone(phone_number)
            result.message = "Verification code sent"
        elif method_type == MFAMethodType.EMAIL:
            if not email_address:
                return MFASetupResult(
                    success=False,
                    method_type=method_type,
                    message="Email address is required for email MFA",
                    error_code="validation_failed",
                )
            metadata = EmailMetadata(email_address=email_address)
            result.masked_destination = mask_email(email_address)
            result.message = "Verification code sent"
        else:
            challenge = generate_token(32)
            metadata = WebAuthnMetadata(
                device_name=device_name or name or "Security key",
                registration_challenge=challenge,
            )
            result.registration_challenge = challenge
            result.message = "Complete registration on your security key"

        method = MFAMethod(
            id=method_id,
            user_id=user_id,
            type=method_type,
            name=name or method_type.value,
            metadata=metadata,
            created_at=now,
        )
        await self._save_method(method)

        if method_type in _CODE_METHODS:
            code = generate_numeric_code(self.settings.mfa_code_length)
            await self.cache.set_json(
                f"mfa:challenge:setup:{method_id}",
                {"code": code, "created_at": now.isoformat()},
                self.settings.mfa_code_expiry_seconds,
            )
            delivery = await self._send_code(method, code)
            if not delivery:
                result.message = "Verification code could not be delivered; request a new code"

        logger.info("mfa_setup_started", user_id=user_id, method_id=method_id, method_type=method_type.value)
        return result

    async def verify_setup(self, method_id: str, code: str) -> MFASetupResult:
        method = await self._load_method(method_id)
        if method is None:
            return MFASetupResult(
                success=False, method_id=method_id, message="Setup not found or expired", error_code="expired"
            )
        if method.is_verified:
            return MFASetupResult(
                success=False,
                method_id=method_id,
                method_type=method.type,
                message="Method is already verified",
                error_code="already_used",
            )

        if not await self._check_setup_code(method, code):
            logger.info("mfa_setup_verification_failed", user_id=method.user_id, method_id=method_id)
            return MFASetupResult(
                success=False,
                method_id=method_id,
                method_type=method.type,
                message="Invalid verification code",
                error_code="validation_failed",
            )

        existing = await self.get_active_methods(method.user_id)
        method.is_enabled = True
        method.is_verified = True
        method.is_primary = not existing
        await self._save_method(method)
        await self.cache.sadd(f"mfa:user:{method.user_id}:methods", method.id)
        await self.cache.delete(f"mfa:challenge:setup:{method.id}")

        backup_codes = None
        if method.type == MFAMethodType.TOTP and self.settings.mfa_require_backup_codes:
            backup_codes = await self.generate_backup_codes(method.user_id)

        await self.events.publish(
            MFAEvent(
                type=EventType.MFA_METHOD_ADDED,
                user_id=method.user_id,
                method_type=method.type.value,
                method_id=method.id,
            )
        )
        logger.info(
            "mfa_method_enabled",
            user_id=method.user_id,
            method_id=method.id,
            method_type=method.type.value,
            is_primary=method.is_primary,
        )
        return MFASetupResult(
            success=True,
            method_id=method.id,
            method_type=method.type,
            backup_codes=backup_codes,
            message="MFA method enabled",
        )

    async def _check_setup_code(self, method: MFAMethod, code: str) -> bool:
        code = (code or "").strip()
        if method.type == MFAMethodType.TOTP:
            return totp.verify_totp(method.metadata.secret, code, timestamp=self._now().timestamp())
        if method.type in _CODE_METHODS:
            setup = await self.cache.get_json(f"mfa:challenge:setup:{method.id}")
            return bool(setup) and constant_time_equals(setup.get("code"), code)
        if method.type == MFAMethodType.WEBAUTHN:
            return constant_time_equals(method.metadata.registration_challenge, code)
        return False

    async def _send_code(self, method: MFAMethod, code: str) -> bool:
        if method.type == MFAMethodType.SMS:
            kind, destination = SMS, method.metadata.phone_number
        else:
            kind, destination = EMAIL, method.metadata.email_address
        result = await self.notifier.send_mfa_code(
            kind,
            destination,
            code,
            expires_minutes=max(1, self.settings.mfa_code_expiry_seconds // 60),
        )
        if not result.success:
            logger.warning("mfa_code_delivery_failed", user_id=method.user_id, method_id=method.id, error=result.error)
        return result.success

    # =========================================================================
    # Method management
    # =========================================================================

    async def remove_method(self, user_id: str, method_id: str) -> None:
        method = await self._load_method(method_id)
        if method is None or method.user_id != user_id:
            raise NotFoundError("MFA method not found")

        others = [m for m in await self.get_active_methods(user_id) if m.id != method_id]
        if method.is_active and not others:
            raise ValidationFailedError("Cannot remove the last active MFA method")

        await self.cache.delete(f"mfa:method:{method_id}")
        await self.cache.srem(f"mfa:user:{user_id}:methods", method_id)

        if method.is_primary and others:
            successor = others[0]
            successor.is_primary = True
            await self._save_method(successor)
            logger.info("mfa_primary_promoted", user_id=user_id, method_id=successor.id)

        await self.events.publish(
            MFAEvent(
                type=EventType.MFA_METHOD_REMOVED,
                user_id=user_id,
                method_type=method.type.value,
                method_id=method_id,
            )
        )

    async def set_primary_method(self, user_id: str, method_id: str) -> None:
        active = await self.get_active_methods(user_id)
        if not any(m.id == method_id for m in active):
            raise NotFoundError("MFA method not found")
        for method in active:
            should_be_primary = method.id == method_id
            if method.is_primary != should_be_primary:
                method.is_primary = should_be_primary
                await self._save_method(method)

    async def get_mfa_status(self, user_id: str, roles: Iterable[str] = ()) -> MFAStatus:
        if not self.settings.mfa_enabled:
            return MFAStatus.DISABLED
        enforced = bool(set(roles) & set(self.settings.mfa_enforced_roles))
        has_methods = bool(await self.get_active_methods(user_id))
        if has_methods:
            return MFAStatus.ENFORCED if enforced else MFAStatus.ENABLED
        return MFAStatus.SETUP_REQUIRED if enforced else MFAStatus.DISABLED

    # =========================================================================
    # Challenges
    # =========================================================================

    async def _load_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        data = await self.cache.get_json(f"mfa:challenge:{challenge_id}")
        return MFAChallenge.from_dict(data) if data else None

    async def _save_challenge(self, challenge: MFAChallenge) -> None:
        await self.cache.set_json(
            f"mfa:challenge:{challenge.id}",
            challenge.to_dict(),
            ttl_until(challenge.expires_at, self._now()),
        )

    async def _discard_challenge(self, challenge_id: str) -> None:
        await self.cache.delete(f"mfa:challenge:{challenge_id}", f"mfa:challenge:{challenge_id}:attempts")

    async def _attempts_remaining(self, challenge: MFAChallenge) -> int:
        used = await self.cache.get(f"mfa:challenge:{challenge.id}:attempts")
        return max(0, challenge.attempts_remaining - int(used or 0))

    async def _select_method(self, user_id: str, method_type: Optional[MFAMethodType]) -> MFAMethod:
        active = await self.get_active_methods(user_id)
        if method_type is not None:
            active = [m for m in active if m.type == method_type]
        if not active:
            raise NoActiveMFAMethodsError("No active MFA methods available")
        primary = [m for m in active if m.is_primary]
        return primary[0] if primary else active[0]

    async def initiate_challenge(
        self,
        user_id: str,
        method_type: Optional[MFAMethodType] = None,
        *,
        remember_device: bool = False,
        device_fingerprint: Optional[str] = None,
    ) -> MFAChallengeDescriptor:
        method_type = MFAMethodType(method_type) if method_type else None
        method: Optional[MFAMethod] = None
        if method_type == MFAMethodType.BACKUP_CODES:
            status = await self.get_backup_codes_status(user_id)
            if status.remaining == 0:
                raise NoActiveMFAMethodsError("No backup codes remaining")
            method_id, selected_type = BACKUP_CODES_METHOD_ID, MFAMethodType.BACKUP_CODES
        else:
            method = await self._select_method(user_id, method_type)
            method_id, selected_type = method.id, method.type

        await self.rate_limiter.check_and_increment(user_id)

        now = self._now()
        code: Optional[str] = None
        if selected_type in _CODE_METHODS:
            code = generate_numeric_code(self.settings.mfa_code_length)
        elif selected_type == MFAMethodType.WEBAUTHN:
            code = generate_token(32)

        challenge = MFAChallenge(
            id=new_id(),
            user_id=user_id,
            method_id=method_id,
            method_type=selected_type,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.mfa_code_expiry_seconds),
            attempts_remaining=self.settings.mfa_max_attempts,
            code=code,
            remember_device=remember_device,
            device_fingerprint=device_fingerprint,
        )
        await self._save_challenge(challenge)

        descriptor = MFAChallengeDescriptor(
            challenge_id=challenge.id,
            method_id=method_id,
            method_type=selected_type,
            expires_at=challenge.expires_at,
            attempts_remaining=challenge.attempts_remaining,
        )
        if selected_type in _CODE_METHODS:
            descriptor.code_sent = await self._send_code(method, code)
            descriptor.masked_destination = self._masked_destination(method)
        elif selected_type == MFAMethodType.WEBAUTHN:
            descriptor.assertion_challenge = code

        await self.events.publish(
            MFAEvent(
                type=EventType.MFA_CHALLENGE_CREATED,
                user_id=user_id,
                method_type=selected_type.value,
                method_id=method_id,
                challenge_id=challenge.id,
            )
        )
        return descriptor

    @staticmethod
    def _masked_destination(method: MFAMethod) -> Optional[str]:
        if method.type == MFAMethodType.SMS:
            return mask_phone(method.metadata.phone_number)
        if method.type == MFAMethodType.EMAIL:
            return mask_email(method.metadata.email_address)
        return None

    async def resend_code(self, challenge_id: str) -> MFAChallengeDescriptor:
        """Issue a fresh code for a pending SMS/email challenge."""
        challenge = await self._load_challenge(challenge_id)
        if challenge is None or challenge.status != ChallengeStatus.PENDING or self._now() >= challenge.expires_at:
            raise ExpiredError("Challenge not found or expired")
        if challenge.method_type not in _CODE_METHODS:
            raise ValidationFailedError("This challenge type does not use delivered codes")
        method = await self._load_method(challenge.method_id)
        if method is None:
            raise NotFoundError("MFA method not found")

        await self.rate_limiter.check_and_increment(challenge.user_id)
        challenge.code = generate_numeric_code(self.settings.mfa_code_length)
        await self._save_challenge(challenge)
        sent = await self._send_code(method, challenge.code)
        return MFAChallengeDescriptor(
            challenge_id=challenge.id,
            method_id=method.id,
            method_type=method.type,
            expires_at=challenge.expires_at,
            attempts_remaining=await self._attempts_remaining(challenge),
            masked_destination=self._masked_destination(method),
            code_sent=sent,
        )

    async def verify_challenge(
        self,
        challenge_id: str,
        code: str,
        *,
        remember_device: Optional[bool] = None,
        device_fingerprint: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> MFAVerificationResult:
        """Check ``code`` against a pending challenge.

        Every call spends one attempt from an atomic counter before the code
        is compared. A correct code succeeds only for the caller whose GETDEL
        removes the challenge.
        """
        challenge = await self._load_challenge(challenge_id)
        if challenge is None:
            return MFAVerificationResult(
                success=False,
                status=ChallengeStatus.EXPIRED,
                message="Challenge not found or expired",
                error_code="expired",
            )

        now = self._now()
        if now >= challenge.expires_at:
            await self._discard_challenge(challenge_id)
            return MFAVerificationResult(
                success=False,
                status=ChallengeStatus.EXPIRED,
                message="Challenge has expired",
                user_id=challenge.user_id,
                error_code="expired",
            )

        attempt = await self.cache.increment(
            f"mfa:challenge:{challenge_id}:attempts", ttl_until(challenge.expires_at, now)
        )
        if challenge.status == ChallengeStatus.RATE_LIMITED or attempt > challenge.attempts_remaining:
            return MFAVerificationResult(
                success=False,
                status=ChallengeStatus.RATE_LIMITED,
                message="Too many failed attempts",
                user_id=challenge.user_id,
                attempts_remaining=0,
                error_code="rate_limited",
            )

        method: Optional[MFAMethod] = None
        if challenge.method_type == MFAMethodType.BACKUP_CODES:
            valid = await self.use_backup_code(challenge.user_id, code)
        else:
            method = await self._load_method(challenge.method_id)
            if method is None or not method.is_active:
                await self._discard_challenge(challenge_id)
                return MFAVerificationResult(
                    success=False,
                    status=ChallengeStatus.EXPIRED,
                    message="MFA method is no longer available",
                    user_id=challenge.user_id,
                    error_code="not_found",
                )
            valid = await self._check_challenge_code(method, challenge, code)

        if not valid:
            return await self._record_failure(challenge, challenge.attempts_remaining - attempt)

        if await self.cache.pop_json(f"mfa:challenge:{challenge_id}") is None:
            logger.warning("mfa_challenge_already_claimed", user_id=challenge.user_id, challenge_id=challenge_id)
            return MFAVerificationResult(
                success=False,
                status=ChallengeStatus.EXPIRED,
                message="Challenge has already been used",
                user_id=challenge.user_id,
                error_code="already_used",
            )
        await self.cache.delete(f"mfa:challenge:{challenge_id}:attempts")
        if method is not None:
            method.last_used_at = now
            await self._save_method(method)

        trust = challenge.remember_device if remember_device is None else remember_device
        fingerprint = device_fingerprint or challenge.device_fingerprint
        device_trusted = False
        if trust and fingerprint and self.settings.device_trust_enabled:
            await self.trust_device(challenge.user_id, fingerprint, name=device_name)
            device_trusted = True

        await self.events.publish(
            MFAEvent(
                type=EventType.MFA_VERIFICATION_SUCCESS,
                user_id=challenge.user_id,
                method_type=challenge.method_type.value,
                method_id=challenge.method_id,
                challenge_id=challenge.id,
            )
        )
        return MFAVerificationResult(
            success=True,
            status=ChallengeStatus.VERIFIED,
            message="Verification successful",
            user_id=challenge.user_id,
            device_trusted=device_trusted,
        )

    async def _check_challenge_code(self, method: MFAMethod, challenge: MFAChallenge, code: str) -> bool:
        code = (code or "").strip()
        if method.type == MFAMethodType.TOTP:
            if not totp.verify_totp(method.metadata.secret, code, timestamp=self._now().timestamp()):
                return False
            # A TOTP code is accepted once across all challenges within its window
            replay_key = f"mfa:totp_used:{method.id}:{token_digest(code)}"
            window_seconds = totp.TOTP_INTERVAL * (2 * totp.TOTP_WINDOW + 1)
            if await self.cache.increment(replay_key, window_seconds) > 1:
                logger.warning("mfa_totp_replay_rejected", user_id=method.user_id, method_id=method.id)
                return False
            return True
        return constant_time_equals(challenge.code, code)

    async def _record_failure(self, challenge: MFAChallenge, remaining: int) -> MFAVerificationResult:
        remaining = max(0, remaining)
        await self.events.publish(
            MFAEvent(
                type=EventType.MFA_VERIFICATION_FAILED,
                user_id=challenge.user_id,
                success=False,
                method_type=challenge.method_type.value,
                method_id=challenge.method_id,
                challenge_id=challenge.id,
                error="invalid_code",
            )
        )
        if remaining == 0:
            logger.warning("mfa_challenge_rate_limited", user_id=challenge.user_id, challenge_id=challenge.id)
            return MFAVerificationResult(
                success=False,
                status=ChallengeStatus.RATE_LIMITED,
                message="Too many failed attempts",
                user_id=challenge.user_id,
                attempts_remaining=0,
                error_code="rate_limited",
            )
        return MFAVerificationResult(
            success=False,
            status=ChallengeStatus.PENDING,
            message="Invalid verification code",
            user_id=challenge.user_id,
            attempts_remaining=remaining,
            error_code="validation_failed",
        )

    # =========================================================================
    # Backup codes
    # =========================================================================

    async def generate_backup_codes(self, user_id: str) -> List[str]:
        """Replace the user's backup codes; the plain codes are returned once."""
        codes = generate_backup_codes(self.settings.mfa_backup_code_count)
        available_key = f"mfa:backup_codes:{user_id}"
        await self.cache.delete(available_key, f"{available_key}:used", f"{available_key}:meta")
        await self.cache.sadd(available_key, *(hash_code(c) for c in codes), ttl=self.method_ttl_seconds)
        await self.cache.set_json(
            f"{available_key}:meta",
            {"generated_at": self._now().isoformat()},
            self.method_ttl_seconds,
        )
        logger.info("mfa_backup_codes_generated", user_id=user_id, count=len(codes))
        return codes

    async def use_backup_code(self, user_id: str, code: str) -> bool:
        """Redeem a backup code; each code succeeds exactly once."""
        if not code:
            return False
        digest = hash_code(code)
        available_key = f"mfa:backup_codes:{user_id}"
        # SREM is atomic, so concurrent redemptions of one code cannot both win
        if not await self.cache.srem(available_key, digest):
            logger.info("mfa_backup_code_rejected", user_id=user_id)
            return False
        await self.cache.sadd(f"{available_key}:used", digest, ttl=self.method_ttl_seconds)
        logger.info("mfa_backup_code_used", user_id=user_id)
        return True

    async def get_backup_codes_status(self, user_id: str) -> BackupCodesGeneration:
        available_key = f"mfa:backup_codes:{user_id}"
        meta = await self.cache.get_json(f"{available_key}:meta") or {}
        generated_at = meta.get("generated_at")
        return BackupCodesGeneration(
            user_id=user_id,
            codes=await self.cache.smembers(available_key),
            used_codes=await self.cache.smembers(f"{available_key}:used"),
            generated_at=datetime.fromisoformat(generated_at) if generated_at else None,
        )

    async def get_recovery_options(self, user_id: str) -> RecoveryOptions:
        status = await self.get_backup_codes_status(user_id)
        return RecoveryOptions(
            backup_codes_remaining=status.remaining,
            methods=await self.get_active_methods(user_id),
        )

    # =========================================================================
    # Device trust
    # =========================================================================

    async def _load_device(self, device_id: str) -> Optional[TrustedDevice]:
        data = await self.cache.get_json(f"mfa:device:{device_id}")
        return TrustedDevice.from_dict(data) if data else None

    async def _save_device(self, device: TrustedDevice) -> None:
        await self.cache.set_json(
            f"mfa:device:{device.id}", device.to_dict(), ttl_until(device.expires_at, self._now())
        )

    async def _user_devices(self, user_id: str) -> List[TrustedDevice]:
        index_key = f"mfa:user:{user_id}:devices"
        devices = []
        for device_id in await self.cache.smembers(index_key):
            device = await self._load_device(device_id)
            if device is None:
                await self.cache.srem(index_key, device_id)
                continue
            devices.append(device)
        return devices

    async def trust_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TrustedDevice:
        """Trust ``fingerprint`` for ``user_id`` for the remember-device period.

        Only a digest of the fingerprint is stored.
        """
        if not fingerprint:
            raise ValidationFailedError("Device fingerprint is required")
        now = self._now()
        digest = token_digest(fingerprint)
        expires_at = now + timedelta(days=self.settings.mfa_remember_device_days)

        device = next((d for d in await self._user_devices(user_id) if d.fingerprint == digest), None)
        if device is None:
            device = TrustedDevice(
                id=new_id(),
                user_id=user_id,
                fingerprint=digest,
                created_at=now,
                last_used_at=now,
                expires_at=expires_at,
            )
        device.is_active = True
        device.expires_at = expires_at
        device.last_used_at = now
        device.name = name or device.name
        device.user_agent = user_agent or device.user_agent
        device.ip_address = ip_address or device.ip_address

        await self._save_device(device)
        await self.cache.sadd(
            f"mfa:user:{user_id}:devices", device.id, ttl=ttl_until(expires_at, now)
        )
        await self.events.publish(
            MFAEvent(type=EventType.DEVICE_TRUSTED, user_id=user_id, device_id=device.id)
        )
        return device

    async def is_device_trusted(self, user_id: str, fingerprint: Optional[str]) -> bool:
        if not fingerprint or not self.settings.device_trust_enabled:
            return False
        now = self._now()
        digest = token_digest(fingerprint)
        for device in await self._user_devices(user_id):
            if not constant_time_equals(device.fingerprint, digest):
                continue
            if not device.is_trusted_at(now):
                return False
            device.last_used_at = now
            await self._save_device(device)
            return True
        return False

    async def get_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        """List live trusted devices, pruning expired records, newest use first."""
        now = self._now()
        live = []
        for device in await self._user_devices(user_id):
            if device.is_trusted_at(now):
                live.append(device)
                continue
            await self.cache.delete(f"mfa:device:{device.id}")
            await self.cache.srem(f"mfa:user:{user_id}:devices", device.id)
            logger.info("mfa_trusted_device_pruned", user_id=user_id, device_id=device.id)
        live.sort(key=lambda d: d.last_used_at, reverse=True)
        return live

    async def revoke_trusted_device(self, user_id: str, device_id: str) -> None:
        device = await self._load_device(device_id)
        if device is None or device.user_id != user_id:
            raise NotFoundError("Trusted device not found")
        await self.cache.delete(f"mfa:device:{device_id}")
        await self.cache.srem(f"mfa:user:{user_id}:devices", device_id)
        logger.info("mfa_trusted_device_revoked", user_id=user_id, device_id=device_id)
