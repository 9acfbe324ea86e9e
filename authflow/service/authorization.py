from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from authflow.logging import get_logger
from authflow.service.errors import ServiceError, ServiceUnavailableError
from authflow.service.events import AuthEvent, EventBus, EventType
from authflow.service.policy import PolicyDecision, PolicyDecisionClient
from authflow.service.results import AuthorizationResult, TokenValidationResult
from authflow.service.token_cache import TokenCache, user_tag
from authflow.storage.cache import CacheGateway, utcnow
from authflow.storage.models import new_id

logger = get_logger(__name__)

SYSTEM_ERROR_REASON = "Authorization check failed due to system error"
INVALID_TOKEN_REASON = "Invalid or expired token"

BUSINESS_DAYS = range(0, 5)  # Monday..Friday
BUSINESS_HOURS = range(9, 18)


def authorization_cache_key(user_id: str, resource_id: str, resource_type: str, action: str) -> str:
    payload = json.dumps(
        {"user_id": user_id, "resource_id": resource_id, "resource_type": resource_type, "action": action},
        sort_keys=True,
    )
    return f"auth:authz:{hashlib.sha256(payload.encode()).hexdigest()}"


def is_business_hours(moment: datetime) -> bool:
    return moment.weekday() in BUSINESS_DAYS and moment.hour in BUSINESS_HOURS


class AuthorizationService:
    """Cached, fail-closed permission checks against the policy service."""

    def __init__(
        self,
        cache: CacheGateway,
        tokens: TokenCache,
        policy: PolicyDecisionClient,
        events: EventBus,
        *,
        cache_ttl_seconds: int = 300,
        audit_ttl_days: int = 30,
        business_timezone: str = "UTC",
        cache_enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.tokens = tokens
        self.policy = policy
        self.events = events
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cache_enabled = cache_enabled
        self.audit_ttl_seconds = audit_ttl_days * 86400
        self.business_tz = ZoneInfo(business_timezone)
        self._now = clock

    async def check_permission(
        self,
        token: str,
        resource_id: str,
        resource_type: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        result = await self.check_permission_detailed(token, resource_id, resource_type, action, context)
        return result.allowed

    async def check_permission_detailed(
        self,
        token: str,
        resource_id: str,
        resource_type: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationResult:
        started = time.perf_counter()
        user_id: Optional[str] = None
        try:
            validation = await self.tokens.validate(token)
            if not validation.valid:
                result = AuthorizationResult(
                    allowed=False,
                    reason=INVALID_TOKEN_REASON,
                    timestamp=self._now(),
                    error_code="token_invalid",
                )
            else:
                user_id = validation.user_id
                result = await self._decide(validation, resource_id, resource_type, action, context or {})
        except Exception as exc:
            # Fail closed: no failure may turn into access
            error_code = exc.error_code if isinstance(exc, ServiceError) else "server_error"
            logger.error(
                "authorization_check_failed",
                user_id=user_id,
                resource_id=resource_id,
                resource_type=resource_type,
                action=action,
                error=str(exc),
                error_code=error_code,
            )
            result = AuthorizationResult(
                allowed=False,
                reason=SYSTEM_ERROR_REASON,
                timestamp=self._now(),
                error_code=error_code,
            )

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        await self.events.publish(
            AuthEvent(
                type=EventType.AUTHORIZATION_CHECK,
                user_id=user_id,
                success=result.allowed,
                duration_ms=duration_ms,
                error=result.error_code,
                resource=f"{resource_type}:{resource_id}",
                action=action,
                details={"reason": result.reason, "cached": result.cached},
            )
        )
        return result

    async def _decide(
        self,
        validation: TokenValidationResult,
        resource_id: str,
        resource_type: str,
        action: str,
        context: Dict[str, Any],
    ) -> AuthorizationResult:
        key = authorization_cache_key(validation.user_id, resource_id, resource_type, action)
        cached = await self._read_cached(key)
        if cached is not None:
            return cached

        policy_input = self.build_policy_input(validation, resource_id, resource_type, action, context)
        started = time.perf_counter()
        decision: PolicyDecision = await self.policy.evaluate(policy_input)
        evaluation_ms = round((time.perf_counter() - started) * 1000, 2)

        result = AuthorizationResult(allowed=decision.allow, reason=decision.reason, timestamp=self._now())
        await self._write_cached(key, result, validation.user_id)
        await self._audit(validation.user_id, resource_id, resource_type, action, result, evaluation_ms)
        return result

    def build_policy_input(
        self,
        validation: TokenValidationResult,
        resource_id: str,
        resource_type: str,
        action: str,
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        now = self._now()
        local_now = now.astimezone(self.business_tz)
        return {
            "user": {
                "id": validation.user_id,
                "roles": list(validation.roles),
                "organization_ids": list(validation.organization_ids),
                "state": validation.state,
                "attributes": dict(validation.attributes),
            },
            "resource": {"id": resource_id, "type": resource_type, "attributes": {}},
            "action": action,
            "context": {
                "current_date": now.isoformat(),
                "business_hours": is_business_hours(local_now),
                **context,
            },
        }

    async def _read_cached(self, key: str) -> Optional[AuthorizationResult]:
        if not self.cache_enabled:
            return None
        try:
            entry = await self.cache.get_cache(key)
        except ServiceUnavailableError as exc:
            logger.warning("authorization_cache_read_failed", error=exc.message)
            return None
        if entry is None:
            return None
        data = entry.data
        return AuthorizationResult(
            allowed=bool(data.get("allowed")),
            reason=data.get("reason", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            cached=True,
        )

    async def _write_cached(self, key: str, result: AuthorizationResult, user_id: str) -> None:
        if not self.cache_enabled:
            return
        payload = {"allowed": result.allowed, "reason": result.reason, "timestamp": result.timestamp.isoformat()}
        try:
            await self.cache.set_cache(key, payload, self.cache_ttl_seconds, tags=[user_tag(user_id)])
        except ServiceUnavailableError as exc:
            logger.warning("authorization_cache_write_failed", error=exc.message)

    async def _audit(
        self,
        user_id: str,
        resource_id: str,
        resource_type: str,
        action: str,
        result: AuthorizationResult,
        evaluation_ms: float,
    ) -> None:
        record = {
            "id": new_id(),
            "user_id": user_id,
            "resource_id": resource_id,
            "resource_type": resource_type,
            "action": action,
            "allowed": result.allowed,
            "reason": result.reason,
            "evaluation_ms": evaluation_ms,
            "timestamp": result.timestamp.isoformat(),
        }
        logger.info(
            "authorization_decision",
            user_id=user_id,
            resource_id=resource_id,
            resource_type=resource_type,
            action=action,
            allowed=result.allowed,
            reason=result.reason,
            evaluation_ms=evaluation_ms,
        )
        try:
            await self.cache.set_json(f"auth:log:{record['id']}", record, self.audit_ttl_seconds)
        except ServiceUnavailableError as exc:
            logger.warning("authorization_audit_write_failed", error=exc.message)

    async def invalidate_user(self, user_id: str) -> int:
        return await self.cache.invalidate_tag(user_tag(user_id))
