import asyncio
from datetime import timedelta

import pytest

from settlement.exceptions import AuthorizationError, PlatformAPIError
from settlement.integrations.oauth import OAuthProvider
from settlement.models.db.enums import Platform
from settlement.models.schemas.tokens import RefreshedCredentials, SocialToken
from settlement.services.credential_manager import CredentialManager


class FakeProvider(OAuthProvider):
    platform = Platform.TIKTOK
    default_expires_in = 86400

    def __init__(self, error=None, expires_in=None):
        self.error = error
        self.expires_in = expires_in
        self.calls = 0

    async def refresh(self, token):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return RefreshedCredentials(access_token=f"access_{self.calls}", expires_in=self.expires_in)


def make_token(clock, expires_in_seconds, user_id="user_1"):
    return SocialToken(
        access_token="access_0",
        refresh_token="refresh_0",
        expires_at=clock.now + timedelta(seconds=expires_in_seconds),
        platform=Platform.TIKTOK,
        user_id=user_id,
        platform_user_id="tt_42",
    )


def make_manager(store, lock, clock, provider, **kwargs):
    kwargs.setdefault("sleep", asyncio.sleep)
    kwargs.setdefault("contention_backoff_seconds", 0.01)
    return CredentialManager(store, lock, {Platform.TIKTOK: provider}, clock=clock, **kwargs)


def test_fresh_token_is_returned_without_refresh(store, lock, clock):
    provider = FakeProvider()
    manager = make_manager(store, lock, clock, provider)

    async def scenario():
        await manager.store_token(make_token(clock, 3 * 86400))
        return await manager.get_valid_token("user_1", "tiktok")

    token = asyncio.run(scenario())
    assert token.access_token == "access_0"
    assert provider.calls == 0


def test_token_inside_refresh_window_is_refreshed(store, lock, clock):
    provider = FakeProvider(expires_in=7200)
    manager = make_manager(store, lock, clock, provider)

    async def scenario():
        await manager.store_token(make_token(clock, 3600))
        token = await manager.get_valid_token("user_1", Platform.TIKTOK)
        stored = await manager.get_token("user_1", Platform.TIKTOK)
        return token, stored

    token, stored = asyncio.run(scenario())
    assert token.access_token == "access_1"
    assert token.expires_at == clock.now + timedelta(seconds=7200)
    # provider returned no refresh token: the previous one is kept
    assert token.refresh_token == "refresh_0"
    assert token.platform_user_id == "tt_42"
    assert stored == token


def test_default_expiry_used_when_provider_omits_it(store, lock, clock):
    manager = make_manager(store, lock, clock, FakeProvider())

    async def scenario():
        await manager.store_token(make_token(clock, -10))
        return await manager.get_valid_token("user_1", Platform.TIKTOK)

    token = asyncio.run(scenario())
    assert token.expires_at == clock.now + timedelta(seconds=86400)


def test_transient_failure_keeps_still_valid_token(store, lock, clock):
    provider = FakeProvider(error=PlatformAPIError("tiktok", "server error 502", status_code=502, retryable=True))
    manager = make_manager(store, lock, clock, provider)

    async def scenario():
        await manager.store_token(make_token(clock, 600))
        return await manager.get_valid_token("user_1", Platform.TIKTOK)

    token = asyncio.run(scenario())
    assert token.access_token == "access_0"


def test_transient_failure_on_expired_token_returns_none_but_keeps_it(store, lock, clock):
    provider = FakeProvider(error=PlatformAPIError("tiktok", "timeout", retryable=True))
    manager = make_manager(store, lock, clock, provider)

    async def scenario():
        await manager.store_token(make_token(clock, -1))
        token = await manager.get_valid_token("user_1", Platform.TIKTOK)
        return token, await manager.needs_reauth("user_1", Platform.TIKTOK)

    token, needs_reauth = asyncio.run(scenario())
    assert token is None
    assert needs_reauth is False


def test_revoked_refresh_token_deletes_credential(store, lock, clock):
    provider = FakeProvider(error=AuthorizationError("invalid_grant"))
    manager = make_manager(store, lock, clock, provider)

    async def scenario():
        await manager.store_token(make_token(clock, 600))
        result = await manager.refresh_token("user_1", Platform.TIKTOK)
        return result, await manager.get_token("user_1", Platform.TIKTOK)

    result, stored = asyncio.run(scenario())
    assert result.success is False
    assert result.needs_reauth is True
    assert stored is None


def test_concurrent_callers_share_one_refresh(store, lock, clock):
    provider = FakeProvider()
    manager = make_manager(store, lock, clock, provider)

    async def scenario():
        await manager.store_token(make_token(clock, -1))
        return await asyncio.gather(*(manager.get_valid_token("user_1", Platform.TIKTOK) for _ in range(3)))

    tokens = asyncio.run(scenario())
    assert provider.calls == 1
    assert {t.access_token for t in tokens} == {"access_1"}


def test_refresh_lock_is_released(store, lock, clock):
    manager = make_manager(store, lock, clock, FakeProvider())

    async def scenario():
        await manager.store_token(make_token(clock, -1))
        await manager.refresh_token("user_1", Platform.TIKTOK)
        return await lock.is_locked("refresh-lock:tiktok:user_1")

    assert asyncio.run(scenario()) is False


def test_missing_token_and_invalidate(store, lock, clock):
    manager = make_manager(store, lock, clock, FakeProvider())

    async def scenario():
        missing = await manager.get_valid_token("nobody", Platform.TIKTOK)
        await manager.store_token(make_token(clock, 3 * 86400))
        await manager.invalidate("user_1", Platform.TIKTOK, "401 from platform")
        return missing, await manager.needs_reauth("user_1", Platform.TIKTOK)

    missing, needs_reauth = asyncio.run(scenario())
    assert missing is None
    assert needs_reauth is True


@pytest.mark.parametrize("seconds, valid, needs_refresh", [
    (-1, False, True),
    (0, False, True),
    (3600, True, True),
    (86400, True, True),
    (86401, True, False),
])
def test_validate_token_boundaries(store, lock, clock, seconds, valid, needs_refresh):
    manager = make_manager(store, lock, clock, FakeProvider())
    validation = manager.validate_token(make_token(clock, seconds))
    assert validation.is_valid is valid
    assert validation.needs_refresh is needs_refresh
