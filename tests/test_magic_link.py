"""Tests for passwordless magic links."""

from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from authflow.service.errors import ExpiredError, NotFoundError, ServiceUnavailableError, ValidationFailedError
from authflow.service.events import EventType
from authflow.service.magic_link import MagicLinkService, username_from_email
from authflow.storage.models import MagicLink, MagicLinkAction, MagicLinkStatus, UserInfo, new_id


@pytest.fixture
def links(cache, identity, events, notifier, settings, clock):
    return MagicLinkService(cache, identity, events, notifier, settings, clock=clock.now)


async def _issue(links, email="alice@example.com", action=MagicLinkAction.LOGIN, **kwargs):
    result = await links.generate(email, action, **kwargs)
    assert result.success, result.message
    return await links.get_link(result.link_id)


def _issued(identity):
    return [c for c in identity.calls if c[0] == "issue_token_for_user"]


class TestGenerate:
    async def test_link_is_stored_and_emailed(self, links, email_channel, events):
        generated = []
        events.subscribe(EventType.MAGIC_LINK_GENERATED, generated.append)

        result = await links.generate("  Alice@Example.com ")

        assert result.success
        assert result.email_sent
        link = await links.get_link(result.link_id)
        assert link.email == "alice@example.com"
        assert link.user_id == "user-alice"
        assert link.status == MagicLinkStatus.PENDING
        assert link.redirect_url == "http://localhost:3000/dashboard"

        destination, message = email_channel.last
        assert destination == "alice@example.com"
        assert message.kind == "magic_link"
        assert link.token in message.text
        assert generated[0].link_id == link.id

    async def test_new_link_revokes_pending_ones(self, links):
        first = await _issue(links)
        second = await _issue(links)

        assert (await links.get_link(first.id)).status == MagicLinkStatus.REVOKED
        assert (await links.get_link(second.id)).status == MagicLinkStatus.PENDING
        pending = [l for l in await links.get_links_for_email("alice@example.com") if l.status == MagicLinkStatus.PENDING]
        assert [l.id for l in pending] == [second.id]

    async def test_daily_limit(self, links, clock):
        """The fourth request in one day is refused; the quota resets the next day."""
        for _ in range(3):
            await _issue(links)

        with patch("authflow.service.magic_link.logger") as mock_logger:
            refused = await links.generate("alice@example.com")

        assert not refused.success
        assert refused.error_code == "daily_limit_exceeded"
        assert mock_logger.warning.call_args[0][0] == "magic_link_daily_limit_exceeded"
        assert (await links.generate("root@example.com")).success

        clock.advance(86400)
        assert (await links.generate("alice@example.com")).success

    async def test_invalid_email_and_action(self, links):
        assert (await links.generate("not-an-email")).error_code == "validation_failed"
        assert (await links.generate("alice@example.com", "teleport")).error_code == "validation_failed"

    async def test_disabled(self, links, settings):
        settings.magic_link_enabled = False
        assert (await links.generate("alice@example.com")).error_code == "forbidden"

    async def test_unknown_user_when_existing_user_required(self, links, settings):
        settings.magic_link_require_existing_user = True
        result = await links.generate("nobody@example.com")
        assert not result.success
        assert result.error_code == "not_found"

    async def test_failed_delivery_still_creates_link(self, links, email_channel):
        email_channel.succeed = False
        result = await links.generate("alice@example.com")
        assert result.success
        assert not result.email_sent
        assert (await links.get_link(result.link_id)).status == MagicLinkStatus.PENDING

    def test_build_link_url(self, links):
        url = links.build_link_url("tok en", "login", "http://localhost:3000/next")
        parsed = urlparse(url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "http://localhost:3000/auth/magic-link"
        assert parse_qs(parsed.query) == {
            "token": ["tok en"],
            "action": ["login"],
            "redirect": ["http://localhost:3000/next"],
        }


class TestVerify:
    async def test_login_link_issues_tokens_once(self, links, identity, events):
        used = []
        events.subscribe(EventType.MAGIC_LINK_USED, used.append)
        events.subscribe(EventType.PASSWORDLESS_AUTH_SUCCESS, used.append)
        link = await _issue(links)

        result = await links.verify(link.token)

        assert result.success
        assert result.status == MagicLinkStatus.USED
        assert result.user_info.sub == "user-alice"
        assert result.tokens.access_token
        assert not result.requires_mfa
        assert [e.type for e in used] == [EventType.MAGIC_LINK_USED, EventType.PASSWORDLESS_AUTH_SUCCESS]

        again = await links.verify(link.token)
        assert not again.success
        assert again.status == MagicLinkStatus.USED
        assert again.error_code == "already_used"
        assert len(_issued(identity)) == 1

    async def test_expired_link_never_runs_handler(self, links, identity, clock):
        link = await _issue(links)
        clock.advance(31 * 60)

        result = await links.verify(link.token)

        assert not result.success
        assert result.status == MagicLinkStatus.EXPIRED
        assert _issued(identity) == []
        assert (await links.get_link(link.id)).status == MagicLinkStatus.EXPIRED

    async def test_revoked_link(self, links, identity):
        link = await _issue(links)
        assert await links.revoke(link.id)
        assert not await links.revoke(link.id)

        result = await links.verify(link.token)
        assert result.status == MagicLinkStatus.REVOKED
        assert result.error_code == "revoked"
        assert _issued(identity) == []

    async def test_superseded_link_reports_revoked(self, links):
        first = await _issue(links)
        await _issue(links)
        assert (await links.verify(first.token)).status == MagicLinkStatus.REVOKED

    async def test_unknown_token(self, links):
        result = await links.verify("no-such-token")
        assert not result.success
        assert result.status == MagicLinkStatus.EXPIRED

    async def test_concurrent_claim_loses(self, links, cache, identity):
        link = await _issue(links)
        await cache.increment(f"magic_link:claim:{link.id}", 60)

        result = await links.verify(link.token)
        assert result.error_code == "already_used"
        assert _issued(identity) == []

    async def test_register_creates_verified_user(self, links, identity, email_channel):
        link = await _issue(links, "newcomer@example.com", MagicLinkAction.REGISTER)
        assert link.user_id is None

        result = await links.verify(link.token)

        assert result.success
        assert result.user_info.email == "newcomer@example.com"
        assert result.user_info.email_verified
        assert result.tokens is not None
        assert result.redirect_url == "http://localhost:3000/welcome"
        assert email_channel.last[1].kind == "welcome"

    async def test_register_disabled(self, links, settings):
        settings.magic_link_auto_create_user = False
        link = await _issue(links, "newcomer@example.com", MagicLinkAction.REGISTER)

        result = await links.verify(link.token)

        assert not result.success
        assert result.error_code == "forbidden"

    async def test_register_conflict_is_a_failed_result(self, links):
        link = await _issue(links, "alice@example.com", MagicLinkAction.REGISTER)

        with patch("authflow.service.magic_link.logger") as mock_logger:
            result = await links.verify(link.token)

        assert not result.success
        assert result.error_code == "conflict"
        assert mock_logger.warning.call_args[0][0] == "magic_link_action_failed"

    async def test_verify_email(self, links, identity):
        link = await _issue(links, action=MagicLinkAction.VERIFY_EMAIL)
        result = await links.verify(link.token)
        assert result.success
        assert identity.verified_emails == [("user-alice", link.token)]

    async def test_login_for_unknown_user_fails(self, links, identity):
        link = await _issue(links, "nobody@example.com")
        result = await links.verify(link.token)
        assert not result.success
        assert result.error_code == "not_found"
        assert _issued(identity) == []

    async def test_unsupported_action(self, links, clock):
        now = clock.now()
        link = MagicLink(
            id=new_id(),
            token="legacy-token",
            email="alice@example.com",
            action="teleport",
            created_at=now,
            expires_at=now + timedelta(minutes=30),
            redirect_url="",
            user_id="user-alice",
        )
        await links._store(link)

        result = await links.verify("legacy-token")

        assert not result.success
        assert result.error_code == "unsupported_action"

    async def test_identity_outage_propagates(self, links, identity):
        async def down(user_id):
            raise ServiceUnavailableError("Identity provider unavailable")

        identity.issue_token_for_user = down
        link = await _issue(links)
        with pytest.raises(ServiceUnavailableError):
            await links.verify(link.token)

    async def test_privileged_login_requires_mfa(self, links):
        link = await _issue(links, "root@example.com")
        result = await links.verify(link.token)
        assert result.requires_mfa


class TestPasswordReset:
    async def test_reset_grant_is_single_use(self, links, identity):
        link = await _issue(links, action=MagicLinkAction.RESET_PASSWORD)
        result = await links.verify(link.token)
        assert result.success
        assert result.reset_token

        assert await links.complete_password_reset(result.reset_token, "new-secret") == "user-alice"
        assert identity.password_sets == [("user-alice", "new-secret")]

        with pytest.raises(ExpiredError):
            await links.complete_password_reset(result.reset_token, "again")

    async def test_reset_grant_expires(self, links, clock):
        link = await _issue(links, action=MagicLinkAction.RESET_PASSWORD)
        result = await links.verify(link.token)
        clock.advance(15 * 60 + 1)
        with pytest.raises(ExpiredError):
            await links.complete_password_reset(result.reset_token, "new-secret")

    async def test_new_password_required(self, links):
        with pytest.raises(ValidationFailedError):
            await links.complete_password_reset("anything", "")


class TestMaintenance:
    async def test_resend(self, links, email_channel):
        link = await _issue(links)
        sent_before = len(email_channel.sent)

        result = await links.resend(link.id)

        assert result.success
        assert len(email_channel.sent) == sent_before + 1
        assert "last_sent_at" in (await links.get_link(link.id)).metadata

    async def test_resend_terminal_link(self, links, clock):
        link = await _issue(links)
        clock.advance(31 * 60)
        result = await links.resend(link.id)
        assert result.error_code == "expired"
        assert (await links.resend("missing")).error_code == "not_found"

    async def test_revoke_unknown(self, links):
        with pytest.raises(NotFoundError):
            await links.revoke("missing")

    async def test_cleanup_expired(self, links, clock):
        link = await _issue(links)
        assert await links.cleanup_expired() == 0

        clock.advance(31 * 60)
        assert await links.cleanup_expired() == 1
        assert await links.get_link(link.id) is None
        assert (await links.verify(link.token)).status == MagicLinkStatus.EXPIRED


class TestHelpers:
    def test_username_from_email(self):
        username = username_from_email("Jane.Doe+tag@example.com")
        base, suffix = username.rsplit("_", 1)
        assert base == "janedoetag"
        assert len(suffix) == 4

    def test_requires_mfa_on_risk_score(self, links):
        assert links.requires_mfa(UserInfo(sub="u", attributes={"risk_score": "75"}))
        assert not links.requires_mfa(UserInfo(sub="u", attributes={"risk_score": 10}))
        assert not links.requires_mfa(UserInfo(sub="u", attributes={"risk_score": "n/a"}))
        assert links.requires_mfa(UserInfo(sub="u", roles=["super_admin"]))
