from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import ServiceTimeoutError, ServiceUnavailableError

logger = get_logger(__name__)

NO_DECISION_REASON = "No decision returned by policy"


@dataclass
class PolicyDecision:
    allow: bool
    reason: str = ""


class PolicyDecisionClient(Protocol):
    async def evaluate(self, policy_input: Dict[str, Any]) -> PolicyDecision: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


def parse_decision(body: Any) -> PolicyDecision:
    """Interpret an OPA data API response.

    Accepts ``{"result": {"decision": {...}}}``, ``{"result": {"allow": ...}}``
    and ``{"result": true}``; anything else is a deny.
    """
    result = body.get("result") if isinstance(body, dict) else None
    if isinstance(result, dict) and "decision" in result:
        result = result["decision"]
    if isinstance(result, dict) and "allow" in result:
        allow = result.get("allow") is True
        reason = result.get("reason") or ("Access granted by policy" if allow else "Access denied by policy")
        return PolicyDecision(allow=allow, reason=str(reason))
    if isinstance(result, bool):
        return PolicyDecision(
            allow=result, reason="Access granted by policy" if result else "Access denied by policy"
        )
    return PolicyDecision(allow=False, reason=NO_DECISION_REASON)


class OPAClient:
    """Policy decision client for Open Policy Agent's data API."""

    def __init__(
        self,
        *,
        base_url: str,
        policy_path: str = "/v1/data/authz/decision",
        timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        batch_size: int = 50,
        enable_batching: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.policy_path = policy_path
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.batch_size = max(1, batch_size)
        self.enable_batching = enable_batching
        self.http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "OPAClient":
        return cls(
            base_url=settings.opa_url,
            policy_path=settings.opa_policy_path,
            timeout=settings.opa_timeout_seconds,
            retry_attempts=settings.opa_retry_attempts,
            retry_delay=settings.opa_retry_delay_seconds,
            batch_size=settings.opa_batch_size,
            enable_batching=settings.opa_enable_batching,
            **kwargs,
        )

    async def evaluate(self, policy_input: Dict[str, Any]) -> PolicyDecision:
        url = f"{self.base_url}{self.policy_path}"
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = await self.http.post(url, json={"input": policy_input})
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "policy_request_failed",
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    error=str(exc),
                )
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.retry_delay)
                continue
            if response.status_code >= 500 and attempt < self.retry_attempts:
                logger.warning("policy_server_error", attempt=attempt, status_code=response.status_code)
                await asyncio.sleep(self.retry_delay)
                continue
            if response.status_code >= 400:
                logger.error("policy_request_rejected", status_code=response.status_code)
                raise ServiceUnavailableError(
                    "Policy service rejected the request",
                    detail={"status": response.status_code},
                )
            try:
                body = response.json()
            except ValueError:
                logger.error("policy_response_invalid")
                return PolicyDecision(allow=False, reason=NO_DECISION_REASON)
            return parse_decision(body)

        if isinstance(last_error, httpx.TimeoutException):
            raise ServiceTimeoutError("Policy service timed out", cause=last_error) from last_error
        raise ServiceUnavailableError("Policy service unavailable", cause=last_error) from last_error

    async def evaluate_batch(self, inputs: List[Dict[str, Any]]) -> List[PolicyDecision]:
        """Evaluate many inputs, ``batch_size`` at a time, preserving order."""
        if not self.enable_batching:
            return [await self.evaluate(policy_input) for policy_input in inputs]
        decisions: List[PolicyDecision] = []
        for start in range(0, len(inputs), self.batch_size):
            chunk = inputs[start : start + self.batch_size]
            decisions.extend(await asyncio.gather(*(self.evaluate(item) for item in chunk)))
        return decisions

    async def health_check(self) -> bool:
        try:
            response = await self.http.get(f"{self.base_url}/health")
        except httpx.HTTPError as exc:
            logger.warning("policy_health_check_failed", error=str(exc))
            return False
        return response.status_code == 200

    async def close(self) -> None:
        await self.http.aclose()
