from __future__ import annotations

import inspect
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from authflow.logging import get_logger
from authflow.storage.models import new_id

logger = get_logger(__name__)


class EventType(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_VALIDATION = "token_validation"
    AUTHORIZATION_CHECK = "authorization_check"
    REGISTRATION = "registration"
    ERROR = "error"
    MFA_CHALLENGE_CREATED = "mfa_challenge_created"
    MFA_VERIFICATION_SUCCESS = "mfa_verification_success"
    MFA_VERIFICATION_FAILED = "mfa_verification_failed"
    MFA_METHOD_ADDED = "mfa_method_added"
    MFA_METHOD_REMOVED = "mfa_method_removed"
    DEVICE_TRUSTED = "device_trusted"
    MAGIC_LINK_GENERATED = "magic_link_generated"
    MAGIC_LINK_USED = "magic_link_used"
    PASSWORDLESS_AUTH_SUCCESS = "passwordless_auth_success"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Event:
    type: EventType
    user_id: Optional[str] = None
    success: bool = True
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["timestamp"] = self.timestamp.isoformat()
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass
class AuthEvent(Event):
    """Login, logout, token and authorization outcomes."""

    duration_ms: Optional[float] = None
    error: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MFAEvent(Event):
    method_type: Optional[str] = None
    method_id: Optional[str] = None
    challenge_id: Optional[str] = None
    device_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MagicLinkEvent(Event):
    link_id: Optional[str] = None
    link_action: Optional[str] = None
    email_sent: Optional[bool] = None
    error: Optional[str] = None


Listener = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """Observer registry owned by one service graph.

    Listeners run in subscription order; a listener that raises is logged
    and skipped so side effects never break the flow that emitted the event.
    """

    def __init__(self) -> None:
        self._listeners: Dict[EventType, List[Listener]] = {}
        self._sinks: List[Listener] = []

    def subscribe(self, event_type: EventType, listener: Listener) -> None:
        self._listeners.setdefault(EventType(event_type), []).append(listener)

    def unsubscribe(self, event_type: EventType, listener: Listener) -> bool:
        listeners = self._listeners.get(EventType(event_type), [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def add_sink(self, sink: Listener) -> None:
        """Register a listener that receives every event type."""
        self._sinks.append(sink)

    def listener_count(self, event_type: EventType) -> int:
        return len(self._listeners.get(EventType(event_type), []))

    async def publish(self, event: Event) -> None:
        for listener in [*self._sinks, *self._listeners.get(event.type, [])]:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "event_listener_failed",
                    event_type=event.type.value,
                    event_id=event.id,
                    error=str(exc),
                )


class EventRecorder:
    """Sink that persists every event to the cache for later audit."""

    def __init__(self, cache, *, ttl_days: int = 7) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_days * 86400

    async def __call__(self, event: Event) -> None:
        await self.cache.set_json(f"auth:events:{event.id}", event.to_dict(), self.ttl_seconds)
