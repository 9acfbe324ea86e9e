"""Tests for MFA setup, challenges, backup codes and trusted devices."""

import asyncio
import re
from unittest.mock import patch

import pytest

from authflow.service import totp
from authflow.service.errors import (
    NoActiveMFAMethodsError,
    NotFoundError,
    RateLimitedError,
    ValidationFailedError,
)
from authflow.service.events import EventType
from authflow.service.mfa import MFAService, MFAStatus
from authflow.storage.cache import CacheGateway
from authflow.storage.memory import MemoryCache
from authflow.storage.models import ChallengeStatus, MFAMethodType


class YieldingMemoryCache(MemoryCache):
    """Gives up the event loop before every call, like a network round trip."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl=None):
        await asyncio.sleep(0)
        await super().set(key, value, ttl)

    async def delete(self, *keys):
        await asyncio.sleep(0)
        return await super().delete(*keys)

    async def incr_with_ttl(self, key, ttl):
        await asyncio.sleep(0)
        return await super().incr_with_ttl(key, ttl)

    async def getdel(self, key):
        await asyncio.sleep(0)
        return await super().getdel(key)

    async def smembers(self, key):
        await asyncio.sleep(0)
        return await super().smembers(key)


@pytest.fixture
def mfa(cache, events, notifier, settings, clock):
    return MFAService(cache, events, notifier, settings, clock=clock.now)


@pytest.fixture
def yielding_mfa(events, notifier, settings, clock):
    cache = CacheGateway(YieldingMemoryCache(clock=clock.time), prefix="test", clock=clock.now)
    return MFAService(cache, events, notifier, settings, clock=clock.now)


def _sent_code(channel):
    return re.search(r"code is (\d+)", channel.last[1].text).group(1)


async def _enroll_totp(mfa, clock, user_id="user-alice"):
    setup = await mfa.setup_method(user_id, MFAMethodType.TOTP)
    result = await mfa.verify_setup(setup.method_id, totp.generate_totp(setup.secret, clock.time()))
    assert result.success
    return setup.method_id, setup.secret


async def _enroll_sms(mfa, sms_channel, user_id="user-alice", phone="+15551234567"):
    setup = await mfa.setup_method(user_id, MFAMethodType.SMS, phone_number=phone)
    result = await mfa.verify_setup(setup.method_id, _sent_code(sms_channel))
    assert result.success
    return setup.method_id


class TestSetup:
    async def test_totp_setup_then_verify_enables_primary(self, mfa, clock, events):
        """A code from the returned secret at the current step enables the method."""
        added = []
        events.subscribe(EventType.MFA_METHOD_ADDED, added.append)

        setup = await mfa.setup_method("user-alice", MFAMethodType.TOTP, email_address="alice@example.com")
        assert setup.success
        assert setup.secret
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert await mfa.get_active_methods("user-alice") == []

        result = await mfa.verify_setup(setup.method_id, totp.generate_totp(setup.secret, clock.time()))

        assert result.success
        assert len(result.backup_codes) == 10
        methods = await mfa.get_active_methods("user-alice")
        assert [m.id for m in methods] == [setup.method_id]
        assert methods[0].is_primary
        assert [e.method_id for e in added] == [setup.method_id]

    async def test_wrong_setup_code_changes_nothing(self, mfa):
        setup = await mfa.setup_method("user-alice", MFAMethodType.TOTP)

        with patch("authflow.service.mfa.logger") as mock_logger:
            result = await mfa.verify_setup(setup.method_id, "abcdef")

        assert not result.success
        assert result.error_code == "validation_failed"
        assert mock_logger.info.call_args[0][0] == "mfa_setup_verification_failed"
        assert await mfa.get_user_methods("user-alice") == []

    async def test_unverified_setup_expires(self, mfa, clock):
        setup = await mfa.setup_method("user-alice", MFAMethodType.TOTP)
        clock.advance(24 * 3600 + 1)

        result = await mfa.verify_setup(setup.method_id, totp.generate_totp(setup.secret, clock.time()))

        assert not result.success
        assert result.error_code == "expired"

    async def test_verified_method_cannot_be_verified_again(self, mfa, clock):
        method_id, secret = await _enroll_totp(mfa, clock)
        result = await mfa.verify_setup(method_id, totp.generate_totp(secret, clock.time()))
        assert result.error_code == "already_used"

    async def test_sms_setup_requires_phone(self, mfa):
        result = await mfa.setup_method("user-alice", MFAMethodType.SMS)
        assert not result.success
        assert result.error_code == "validation_failed"

    async def test_sms_setup_sends_code(self, mfa, sms_channel):
        setup = await mfa.setup_method("user-alice", MFAMethodType.SMS, phone_number="+15551234567")

        assert setup.masked_destination == "********4567"
        destination, message = sms_channel.last
        assert destination == "+15551234567"
        assert message.kind == "mfa_code"

        result = await mfa.verify_setup(setup.method_id, _sent_code(sms_channel))
        assert result.success
        assert result.backup_codes is None

    async def test_email_setup_requires_address(self, mfa, email_channel):
        assert (await mfa.setup_method("user-alice", MFAMethodType.EMAIL)).error_code == "validation_failed"

        setup = await mfa.setup_method("user-alice", MFAMethodType.EMAIL, email_address="alice@example.com")
        assert setup.masked_destination == "al***@example.com"
        assert (await mfa.verify_setup(setup.method_id, _sent_code(email_channel))).success

    async def test_webauthn_setup_echoes_registration_challenge(self, mfa):
        setup = await mfa.setup_method("user-alice", MFAMethodType.WEBAUTHN, device_name="YubiKey")
        assert setup.registration_challenge

        assert not (await mfa.verify_setup(setup.method_id, "wrong")).success
        assert (await mfa.verify_setup(setup.method_id, setup.registration_challenge)).success
        methods = await mfa.get_active_methods("user-alice")
        assert methods[0].metadata.device_name == "YubiKey"

    async def test_backup_code_setup_returns_codes(self, mfa):
        result = await mfa.setup_method("user-alice", MFAMethodType.BACKUP_CODES)
        assert result.success
        assert len(result.backup_codes) == 10

    async def test_unknown_method_type(self, mfa):
        result = await mfa.setup_method("user-alice", "carrier_pigeon")
        assert not result.success
        assert result.error_code == "validation_failed"

    async def test_second_method_is_not_primary(self, mfa, clock, sms_channel):
        first, _ = await _enroll_totp(mfa, clock)
        second = await _enroll_sms(mfa, sms_channel)

        methods = {m.id: m for m in await mfa.get_active_methods("user-alice")}
        assert methods[first].is_primary
        assert not methods[second].is_primary


class TestChallenges:
    async def test_no_methods_raises(self, mfa):
        with pytest.raises(NoActiveMFAMethodsError):
            await mfa.initiate_challenge("user-alice")

    async def test_requested_type_must_be_enrolled(self, mfa, clock):
        await _enroll_totp(mfa, clock)
        with pytest.raises(NoActiveMFAMethodsError):
            await mfa.initiate_challenge("user-alice", MFAMethodType.SMS)

    async def test_totp_challenge_verifies_once(self, mfa, clock, events):
        _, secret = await _enroll_totp(mfa, clock)
        succeeded = []
        events.subscribe(EventType.MFA_VERIFICATION_SUCCESS, succeeded.append)

        challenge = await mfa.initiate_challenge("user-alice")
        assert challenge.method_type == MFAMethodType.TOTP
        assert challenge.attempts_remaining == 3
        assert challenge.masked_destination is None

        code = totp.generate_totp(secret, clock.time())
        result = await mfa.verify_challenge(challenge.challenge_id, code)
        assert result.success
        assert result.status == ChallengeStatus.VERIFIED
        assert result.user_id == "user-alice"
        assert len(succeeded) == 1

        again = await mfa.verify_challenge(challenge.challenge_id, code)
        assert not again.success
        assert again.status == ChallengeStatus.EXPIRED

    async def test_wrong_codes_exhaust_attempts(self, mfa, clock, events):
        """After the attempt budget is spent even the right code is refused."""
        _, secret = await _enroll_totp(mfa, clock)
        failed = []
        events.subscribe(EventType.MFA_VERIFICATION_FAILED, failed.append)
        challenge = await mfa.initiate_challenge("user-alice")

        first = await mfa.verify_challenge(challenge.challenge_id, "abcdef")
        assert first.status == ChallengeStatus.PENDING
        assert first.attempts_remaining == 2
        await mfa.verify_challenge(challenge.challenge_id, "abcdef")
        third = await mfa.verify_challenge(challenge.challenge_id, "abcdef")
        assert third.status == ChallengeStatus.RATE_LIMITED
        assert third.attempts_remaining == 0

        correct = await mfa.verify_challenge(challenge.challenge_id, totp.generate_totp(secret, clock.time()))
        assert not correct.success
        assert correct.status == ChallengeStatus.RATE_LIMITED
        assert len(failed) == 3

    async def test_failed_attempt_keeps_challenge_expiry(self, mfa, clock, cache):
        await _enroll_totp(mfa, clock)
        challenge = await mfa.initiate_challenge("user-alice")
        clock.advance(200)
        await mfa.verify_challenge(challenge.challenge_id, "abcdef")
        assert await cache.ttl(f"mfa:challenge:{challenge.challenge_id}") == 100

    async def test_expired_challenge(self, mfa, clock):
        _, secret = await _enroll_totp(mfa, clock)
        challenge = await mfa.initiate_challenge("user-alice")
        clock.advance(301)

        result = await mfa.verify_challenge(challenge.challenge_id, totp.generate_totp(secret, clock.time()))
        assert not result.success
        assert result.status == ChallengeStatus.EXPIRED
        assert result.error_code == "expired"

    async def test_totp_code_cannot_be_replayed(self, mfa, clock):
        _, secret = await _enroll_totp(mfa, clock)
        code = totp.generate_totp(secret, clock.time())

        first = await mfa.initiate_challenge("user-alice")
        assert (await mfa.verify_challenge(first.challenge_id, code)).success

        second = await mfa.initiate_challenge("user-alice")
        assert not (await mfa.verify_challenge(second.challenge_id, code)).success

    async def test_sms_challenge_dispatches_code(self, mfa, sms_channel):
        await _enroll_sms(mfa, sms_channel)

        challenge = await mfa.initiate_challenge("user-alice")
        assert challenge.method_type == MFAMethodType.SMS
        assert challenge.code_sent is True
        assert challenge.masked_destination == "********4567"

        result = await mfa.verify_challenge(challenge.challenge_id, _sent_code(sms_channel))
        assert result.success

    async def test_failed_delivery_is_reported(self, mfa, sms_channel):
        await _enroll_sms(mfa, sms_channel)
        sms_channel.succeed = False

        challenge = await mfa.initiate_challenge("user-alice")
        assert challenge.code_sent is False

    async def test_resend_code(self, mfa, sms_channel, clock):
        await _enroll_sms(mfa, sms_channel)
        challenge = await mfa.initiate_challenge("user-alice")
        sent_before = len(sms_channel.sent)

        resent = await mfa.resend_code(challenge.challenge_id)

        assert resent.code_sent
        assert len(sms_channel.sent) == sent_before + 1
        assert (await mfa.verify_challenge(challenge.challenge_id, _sent_code(sms_channel))).success

    async def test_resend_rejects_totp(self, mfa, clock):
        await _enroll_totp(mfa, clock)
        challenge = await mfa.initiate_challenge("user-alice")
        with pytest.raises(ValidationFailedError):
            await mfa.resend_code(challenge.challenge_id)

    async def test_webauthn_challenge_returns_assertion_nonce(self, mfa):
        setup = await mfa.setup_method("user-alice", MFAMethodType.WEBAUTHN)
        await mfa.verify_setup(setup.method_id, setup.registration_challenge)

        challenge = await mfa.initiate_challenge("user-alice")
        assert challenge.assertion_challenge
        assert (await mfa.verify_challenge(challenge.challenge_id, challenge.assertion_challenge)).success

    async def test_initiation_is_rate_limited(self, mfa, clock):
        await _enroll_totp(mfa, clock)
        for _ in range(5):
            await mfa.initiate_challenge("user-alice")
        with pytest.raises(RateLimitedError):
            await mfa.initiate_challenge("user-alice")

    async def test_removed_method_fails_verification(self, mfa, clock, sms_channel):
        method_id, secret = await _enroll_totp(mfa, clock)
        await _enroll_sms(mfa, sms_channel)
        challenge = await mfa.initiate_challenge("user-alice", MFAMethodType.TOTP)
        await mfa.remove_method("user-alice", method_id)

        result = await mfa.verify_challenge(challenge.challenge_id, totp.generate_totp(secret, clock.time()))
        assert not result.success
        assert result.error_code == "not_found"

    async def test_remember_device_on_success(self, mfa, clock):
        _, secret = await _enroll_totp(mfa, clock)
        challenge = await mfa.initiate_challenge(
            "user-alice", remember_device=True, device_fingerprint="fp-laptop"
        )

        result = await mfa.verify_challenge(challenge.challenge_id, totp.generate_totp(secret, clock.time()))

        assert result.device_trusted
        assert await mfa.is_device_trusted("user-alice", "fp-laptop")


class TestConcurrentVerification:
    async def test_parallel_guesses_stay_within_attempt_budget(self, yielding_mfa, sms_channel, events):
        await _enroll_sms(yielding_mfa, sms_channel)
        failed = []
        events.subscribe(EventType.MFA_VERIFICATION_FAILED, failed.append)
        challenge = await yielding_mfa.initiate_challenge("user-alice")
        code = _sent_code(sms_channel)

        results = await asyncio.gather(
            *(yielding_mfa.verify_challenge(challenge.challenge_id, "wrong") for _ in range(20))
        )

        assert len(failed) == 3
        assert [r.status for r in results].count(ChallengeStatus.PENDING) == 2
        assert [r.status for r in results].count(ChallengeStatus.RATE_LIMITED) == 18

        late = await yielding_mfa.verify_challenge(challenge.challenge_id, code)
        assert not late.success
        assert late.status == ChallengeStatus.RATE_LIMITED

    async def test_parallel_correct_codes_succeed_once(self, yielding_mfa, sms_channel, events):
        await _enroll_sms(yielding_mfa, sms_channel)
        succeeded = []
        events.subscribe(EventType.MFA_VERIFICATION_SUCCESS, succeeded.append)
        challenge = await yielding_mfa.initiate_challenge("user-alice")
        code = _sent_code(sms_channel)

        results = await asyncio.gather(
            yielding_mfa.verify_challenge(challenge.challenge_id, code),
            yielding_mfa.verify_challenge(challenge.challenge_id, code),
        )

        assert [r.success for r in results].count(True) == 1
        loser = next(r for r in results if not r.success)
        assert loser.error_code in ("already_used", "expired")
        assert len(succeeded) == 1

    async def test_resend_reports_spent_attempts(self, mfa, sms_channel):
        await _enroll_sms(mfa, sms_channel)
        challenge = await mfa.initiate_challenge("user-alice")
        await mfa.verify_challenge(challenge.challenge_id, "wrong")

        resent = await mfa.resend_code(challenge.challenge_id)
        assert resent.attempts_remaining == 2

class TestBackupCodes:
    async def test_each_code_redeems_once(self, mfa):
        codes = await mfa.generate_backup_codes("user-alice")

        assert await mfa.use_backup_code("user-alice", codes[0])
        assert not await mfa.use_backup_code("user-alice", codes[0])
        assert await mfa.use_backup_code("user-alice", codes[1].lower())

        status = await mfa.get_backup_codes_status("user-alice")
        assert status.remaining == 8
        assert len(status.used_codes) == 2
        assert status.generated_at is not None

    async def test_regeneration_invalidates_old_codes(self, mfa):
        old = await mfa.generate_backup_codes("user-alice")
        await mfa.generate_backup_codes("user-alice")
        assert not await mfa.use_backup_code("user-alice", old[0])

    async def test_codes_are_stored_hashed(self, mfa, cache):
        codes = await mfa.generate_backup_codes("user-alice")
        stored = await cache.smembers("mfa:backup_codes:user-alice")
        assert len(stored) == 10
        assert not set(codes) & stored

    async def test_backup_code_challenge(self, mfa):
        with pytest.raises(NoActiveMFAMethodsError):
            await mfa.initiate_challenge("user-alice", MFAMethodType.BACKUP_CODES)

        codes = await mfa.generate_backup_codes("user-alice")
        challenge = await mfa.initiate_challenge("user-alice", MFAMethodType.BACKUP_CODES)
        assert challenge.method_id == "backup_codes"

        assert (await mfa.verify_challenge(challenge.challenge_id, codes[3])).success
        assert not await mfa.use_backup_code("user-alice", codes[3])

    async def test_recovery_options(self, mfa, clock):
        await _enroll_totp(mfa, clock)
        options = await mfa.get_recovery_options("user-alice")
        assert options.has_backup_codes
        assert options.backup_codes_remaining == 10
        assert len(options.methods) == 1


class TestMethodManagement:
    async def test_last_method_cannot_be_removed(self, mfa, clock):
        method_id, _ = await _enroll_totp(mfa, clock)
        with pytest.raises(ValidationFailedError):
            await mfa.remove_method("user-alice", method_id)

    async def test_removing_non_primary_keeps_primary(self, mfa, clock, sms_channel):
        primary, _ = await _enroll_totp(mfa, clock)
        secondary = await _enroll_sms(mfa, sms_channel)

        await mfa.remove_method("user-alice", secondary)

        methods = await mfa.get_active_methods("user-alice")
        assert [m.id for m in methods] == [primary]
        assert methods[0].is_primary

    async def test_removing_primary_promotes_exactly_one(self, mfa, clock, sms_channel, events):
        removed = []
        events.subscribe(EventType.MFA_METHOD_REMOVED, removed.append)
        primary, _ = await _enroll_totp(mfa, clock)
        await _enroll_sms(mfa, sms_channel, phone="+15550000001")
        clock.advance(1)
        await _enroll_sms(mfa, sms_channel, phone="+15550000002")

        await mfa.remove_method("user-alice", primary)

        methods = await mfa.get_active_methods("user-alice")
        assert len(methods) == 2
        assert sum(m.is_primary for m in methods) == 1
        assert [e.method_id for e in removed] == [primary]

    async def test_remove_unknown_or_foreign_method(self, mfa, clock):
        method_id, _ = await _enroll_totp(mfa, clock)
        with pytest.raises(NotFoundError):
            await mfa.remove_method("user-alice", "missing")
        with pytest.raises(NotFoundError):
            await mfa.remove_method("user-bob", method_id)

    async def test_set_primary_method(self, mfa, clock, sms_channel):
        first, _ = await _enroll_totp(mfa, clock)
        second = await _enroll_sms(mfa, sms_channel)

        await mfa.set_primary_method("user-alice", second)

        methods = {m.id: m for m in await mfa.get_active_methods("user-alice")}
        assert methods[second].is_primary
        assert not methods[first].is_primary

    async def test_mfa_status(self, mfa, clock, settings):
        assert await mfa.get_mfa_status("user-alice", ["user"]) == MFAStatus.DISABLED
        assert await mfa.get_mfa_status("user-alice", ["admin"]) == MFAStatus.SETUP_REQUIRED

        await _enroll_totp(mfa, clock)
        assert await mfa.get_mfa_status("user-alice", ["user"]) == MFAStatus.ENABLED
        assert await mfa.get_mfa_status("user-alice", ["admin"]) == MFAStatus.ENFORCED

        settings.mfa_enabled = False
        assert await mfa.get_mfa_status("user-alice", ["admin"]) == MFAStatus.DISABLED


class TestTrustedDevices:
    async def test_trust_expires_after_remember_period(self, mfa, clock):
        await mfa.trust_device("user-alice", "fp-laptop", name="Laptop")
        assert await mfa.is_device_trusted("user-alice", "fp-laptop")
        assert not await mfa.is_device_trusted("user-alice", "fp-phone")
        assert not await mfa.is_device_trusted("user-bob", "fp-laptop")

        clock.advance(30 * 86400 + 1)
        assert not await mfa.is_device_trusted("user-alice", "fp-laptop")

    async def test_fingerprint_is_not_stored_in_clear(self, mfa):
        device = await mfa.trust_device("user-alice", "fp-laptop")
        assert device.fingerprint != "fp-laptop"

    async def test_retrusting_refreshes_existing_record(self, mfa, clock):
        first = await mfa.trust_device("user-alice", "fp-laptop")
        clock.advance(3600)
        second = await mfa.trust_device("user-alice", "fp-laptop")
        assert first.id == second.id
        assert second.expires_at > first.expires_at
        assert len(await mfa.get_trusted_devices("user-alice")) == 1

    async def test_listing_sorts_by_last_use(self, mfa, clock):
        await mfa.trust_device("user-alice", "fp-laptop", name="Laptop")
        clock.advance(60)
        await mfa.trust_device("user-alice", "fp-phone", name="Phone")
        clock.advance(60)
        await mfa.is_device_trusted("user-alice", "fp-laptop")

        devices = await mfa.get_trusted_devices("user-alice")
        assert [d.name for d in devices] == ["Laptop", "Phone"]

    async def test_revoke(self, mfa):
        device = await mfa.trust_device("user-alice", "fp-laptop")
        await mfa.revoke_trusted_device("user-alice", device.id)
        assert not await mfa.is_device_trusted("user-alice", "fp-laptop")
        with pytest.raises(NotFoundError):
            await mfa.revoke_trusted_device("user-alice", device.id)

    async def test_trust_emits_event(self, mfa, events):
        trusted = []
        events.subscribe(EventType.DEVICE_TRUSTED, trusted.append)
        device = await mfa.trust_device("user-alice", "fp-laptop")
        assert trusted[0].device_id == device.id
