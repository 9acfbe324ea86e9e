import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authflow.config import Settings, reset_settings_cache  # noqa: E402
from authflow.service.auth import AuthService  # noqa: E402
from authflow.service.delivery import EMAIL, SMS, DeliveryResult, Notifier  # noqa: E402
from authflow.service.errors import (  # noqa: E402
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
)
from authflow.service.events import EventBus  # noqa: E402
from authflow.service.identity import TokenIntrospection  # noqa: E402
from authflow.service.policy import PolicyDecision  # noqa: E402
from authflow.storage.cache import CacheGateway  # noqa: E402
from authflow.storage.memory import MemoryCache  # noqa: E402
from authflow.storage.models import AuthTokens, UserInfo  # noqa: E402


class FakeClock:
    """Controllable clock; ``now`` for services, ``time`` for MemoryCache."""

    def __init__(self, start: datetime = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class RecordingChannel:
    """Delivery channel that keeps every message instead of sending it."""

    def __init__(self, name: str = "recording", *, succeed: bool = True):
        self.name = name
        self.succeed = succeed
        self.sent = []

    async def send(self, destination, message):
        self.sent.append((destination, message))
        if not self.succeed:
            return DeliveryResult(success=False, provider=self.name, error="refused")
        return DeliveryResult(success=True, provider=self.name, message_id=f"msg-{len(self.sent)}")

    @property
    def last(self):
        return self.sent[-1]


class FakeIdentityProvider:
    """In-memory identity provider with the same contract as KeycloakClient."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.users = {}
        self.passwords = {}
        self.access_tokens = {}
        self.refresh_tokens = {}
        self.logged_out = []
        self.verified_emails = []
        self.verification_emails = []
        self.password_sets = []
        self.calls = []
        self._counter = 0

    def add_user(self, username, password, *, user_id=None, email=None, roles=None, attributes=None):
        user_id = user_id or f"user-{len(self.users) + 1}"
        self.users[user_id] = UserInfo(
            sub=user_id,
            email=email or f"{username}@example.com",
            email_verified=True,
            given_name=username.title(),
            preferred_username=username,
            roles=list(roles or ["user"]),
            organization_ids=["org-1"],
            state="active",
            attributes=dict(attributes or {}),
        )
        self.passwords[username] = (password, user_id)
        return self.users[user_id]

    def _issue(self, user_id):
        self._counter += 1
        access = f"access-{self._counter}"
        refresh = f"refresh-{self._counter}"
        self.access_tokens[access] = user_id
        self.refresh_tokens[refresh] = user_id
        return AuthTokens(
            access_token=access,
            expires_in=300,
            refresh_token=refresh,
            refresh_expires_in=1800,
            session_state=f"session-{self._counter}",
        )

    async def login(self, username, password):
        self.calls.append(("login", username))
        stored = self.passwords.get(username)
        if stored is None or stored[0] != password:
            raise InvalidCredentialsError("Invalid username or password")
        return self._issue(stored[1])

    async def refresh_token(self, refresh_token):
        user_id = self.refresh_tokens.pop(refresh_token, None)
        if user_id is None:
            raise TokenInvalidError("Refresh token is invalid or expired")
        return self._issue(user_id)

    async def logout(self, refresh_token):
        self.logged_out.append(refresh_token)
        self.refresh_tokens.pop(refresh_token, None)

    async def validate_token(self, access_token):
        self.calls.append(("validate_token", access_token))
        user_id = self.access_tokens.get(access_token)
        if user_id is None:
            raise TokenInvalidError("Token is not active")
        return TokenIntrospection(user=self.users[user_id], expires_at=self.clock.now() + timedelta(seconds=300))

    async def get_user_info(self, user_id):
        self.calls.append(("get_user_info", user_id))
        if user_id not in self.users:
            raise NotFoundError("User not found")
        return self.users[user_id]

    async def get_user_by_email(self, email):
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    async def register_user(self, registration):
        if any(u.email == registration.email for u in self.users.values()):
            raise ConflictError("User already exists")
        user = self.add_user(registration.username, registration.password, email=registration.email)
        user.email_verified = registration.email_verified
        user.given_name = registration.first_name
        return user.sub

    async def verify_email(self, user_id, token=None):
        self.verified_emails.append((user_id, token))
        self.users[user_id].email_verified = True

    async def send_verify_email(self, user_id):
        if user_id not in self.users:
            raise NotFoundError("User not found")
        self.verification_emails.append(user_id)

    async def reset_password(self, email):
        self.calls.append(("reset_password", email))

    async def set_password(self, user_id, new_password, *, temporary=False):
        self.password_sets.append((user_id, new_password))
        for username, (_, uid) in list(self.passwords.items()):
            if uid == user_id:
                self.passwords[username] = (new_password, uid)

    async def change_password(self, user_id, old_password, new_password):
        username = self.users[user_id].preferred_username
        if self.passwords[username][0] != old_password:
            raise InvalidCredentialsError("Current password is incorrect")
        await self.set_password(user_id, new_password)

    async def get_client_credentials_token(self):
        return AuthTokens(access_token="service-token", expires_in=300)

    async def issue_token_for_user(self, user_id):
        self.calls.append(("issue_token_for_user", user_id))
        return self._issue(user_id)

    async def get_roles(self, user_id):
        self.calls.append(("get_roles", user_id))
        return list(self.users[user_id].roles)

    async def health_check(self):
        return True

    async def close(self):
        pass


class FakePolicyClient:
    """Policy client answering from a rule function and counting calls."""

    def __init__(self, rule=None):
        self.rule = rule or (lambda policy_input: PolicyDecision(allow=True, reason="allowed"))
        self.inputs = []

    @property
    def calls(self):
        return len(self.inputs)

    async def evaluate(self, policy_input):
        self.inputs.append(policy_input)
        return self.rule(policy_input)

    async def health_check(self):
        return True

    async def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(clock=clock.time)


@pytest.fixture
def cache(memory_cache, clock):
    return CacheGateway(memory_cache, prefix="test", clock=clock.now)


@pytest.fixture
def settings():
    reset_settings_cache()
    return Settings(
        environment="test",
        use_memory_cache=True,
        mfa_max_attempts=3,
        mfa_rate_limit_max_attempts=5,
        magic_link_max_per_day=3,
        mfa_enforced_roles=["admin"],
    )


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def email_channel():
    return RecordingChannel("email")


@pytest.fixture
def sms_channel():
    return RecordingChannel("sms")


@pytest.fixture
def notifier(email_channel, sms_channel):
    return Notifier({EMAIL: email_channel, SMS: sms_channel}, app_name="Test Auth")


@pytest.fixture
def identity(clock):
    provider = FakeIdentityProvider(clock)
    provider.add_user("alice", "correct-horse", user_id="user-alice", email="alice@example.com")
    provider.add_user("root", "admin-pass", user_id="user-admin", email="root@example.com", roles=["admin"])
    return provider


@pytest.fixture
def policy():
    return FakePolicyClient()


@pytest.fixture
def policy_factory():
    return FakePolicyClient


@pytest.fixture
def auth_service(settings, cache, identity, policy, notifier, events, clock):
    return AuthService(
        settings,
        cache=cache,
        identity=identity,
        policy=policy,
        notifier=notifier,
        events=events,
        clock=clock.now,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
