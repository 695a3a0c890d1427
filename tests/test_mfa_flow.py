"""Tests for the one-time-code step of login."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from authgate.service.auth import Authenticated, Blocked, Expired, Rejected, Retry
from authgate.service.coordination import (
    MFA_CODE_TTL_SECONDS,
    mfa_attempts_key,
    mfa_challenge_key,
    request_limit_key,
)
from authgate.service.errors import ConfidentialityFailure, ValidationError

PASSWORD = "correct horse battery"
PHONE = "+15551234567"


async def _challenged(auth_service, code="042"):
    auth_service.code_factory = lambda: code
    user = await auth_service.register("alice", PASSWORD, PHONE)
    await auth_service.login("alice", PASSWORD)
    return user


async def test_correct_code_issues_token_and_clears_state(auth_service, cache, tokens):
    user = await _challenged(auth_service)
    await cache.incr_with_expiry(request_limit_key("10.0.0.1"), 900)

    result = await auth_service.verify_mfa("alice", "042", client_id="10.0.0.1")

    assert isinstance(result, Authenticated)
    assert result.user.id == user.id
    assert result.user.phone == PHONE
    claims = tokens.decode(result.token)
    assert claims["sub"] == user.id
    assert claims["phone"] == PHONE
    assert await cache.get(mfa_challenge_key(user.id)) is None
    assert await cache.get(mfa_attempts_key(user.id)) is None
    assert await cache.get(request_limit_key("10.0.0.1")) is None


async def test_code_is_single_use(auth_service):
    await _challenged(auth_service)

    assert isinstance(await auth_service.verify_mfa("alice", "042"), Authenticated)
    assert isinstance(await auth_service.verify_mfa("alice", "042"), Expired)


async def test_leading_zeros_are_significant(auth_service):
    await _challenged(auth_service, code="007")

    assert await auth_service.verify_mfa("alice", "700") == Retry(remaining=2)
    assert isinstance(await auth_service.verify_mfa("alice", "007"), Authenticated)


async def test_surrounding_whitespace_is_ignored(auth_service):
    await _challenged(auth_service)
    assert isinstance(await auth_service.verify_mfa("alice", " 042 "), Authenticated)


@pytest.mark.parametrize("code", ["", "42", "0042", "abc", "4 2", "\u0664\u0662\u0660"])
async def test_malformed_code_is_rejected_before_lookup(auth_service, store, code):
    store.get_user_by_username = MagicMock(wraps=store.get_user_by_username)

    with pytest.raises(ValidationError):
        await auth_service.verify_mfa("alice", code)

    store.get_user_by_username.assert_not_called()


async def test_unknown_user_is_rejected_without_counting(auth_service, cache):
    assert await auth_service.verify_mfa("ghost", "123") == Rejected()


async def test_code_expires_after_two_minutes(auth_service, clock):
    await _challenged(auth_service)
    clock.advance(MFA_CODE_TTL_SECONDS)

    assert isinstance(await auth_service.verify_mfa("alice", "042"), Expired)


async def test_three_wrong_codes_block_and_discard_challenge(auth_service, cache):
    user = await _challenged(auth_service)

    assert await auth_service.verify_mfa("alice", "111") == Retry(remaining=2)
    assert await auth_service.verify_mfa("alice", "222") == Retry(remaining=1)
    assert isinstance(await auth_service.verify_mfa("alice", "333"), Blocked)

    assert await cache.get(mfa_challenge_key(user.id)) is None
    assert await cache.get(mfa_attempts_key(user.id)) is None
    # The correct code no longer works once the challenge is gone
    assert isinstance(await auth_service.verify_mfa("alice", "042"), Expired)


async def test_fresh_login_after_block_gives_new_chances(auth_service, sms):
    await _challenged(auth_service)
    for wrong in ("111", "222", "333"):
        await auth_service.verify_mfa("alice", wrong)

    auth_service.code_factory = lambda: "555"
    await auth_service.login("alice", PASSWORD)

    assert isinstance(await auth_service.verify_mfa("alice", "555"), Authenticated)


async def test_lost_consume_race_reports_expired(auth_service):
    await _challenged(auth_service)
    auth_service.limiter.consume_challenge = AsyncMock(return_value=False)

    assert isinstance(await auth_service.verify_mfa("alice", "042"), Expired)


async def test_sms_carries_the_stored_code(auth_service, sms, cache):
    auth_service.code_factory = lambda: "314"
    user = await auth_service.register("alice", PASSWORD, PHONE)
    await auth_service.login("alice", PASSWORD)

    assert sms.last_code == "314"
    assert await cache.get(mfa_challenge_key(user.id)) == "314"


async def test_undecryptable_phone_is_fatal(auth_service, store):
    user = await _challenged(auth_service)
    store.users[user.id].encrypted_phone = "corrupted"

    with pytest.raises(ConfidentialityFailure):
        await auth_service.verify_mfa("alice", "042")
