"""OAuth credential lifecycle per (user, platform).

Tokens live in the shared key-value store under ``token:{platform}:{user_id}``
as JSON. The manager is the only writer.

Refresh policy:
  - valid, expiring later than the refresh window (24h) -> use as is
  - valid, expiring within the window                    -> refresh; keep the
    current token if the refresh fails transiently
  - expired                                              -> refresh is mandatory

Refresh concurrency: only the holder of ``refresh-lock:{platform}:{user_id}``
(30s TTL) talks to the OAuth provider. Other callers back off briefly and
re-read the stored token, so one upstream refresh serves everybody. Providers
may invalidate earlier tokens on refresh, which makes duplicate refreshes
actively harmful.

Failure handling:
  - AuthorizationError (revoked / invalid refresh token) -> token deleted,
    ``needs_reauth=True``
  - anything else -> stale token kept, caller may retry later
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Mapping, Optional

from settlement.config import TOKEN_SETTINGS
from settlement.exceptions import AuthorizationError, SettlementError
from settlement.integrations.oauth import OAuthProvider
from settlement.integrations.platforms import resolve_platform
from settlement.models.db.enums import Platform
from settlement.models.schemas.tokens import SocialToken, TokenRefreshResult, TokenValidation
from settlement.utils import get_logger, log_business_event
from settlement.utils.kvstore import KeyValueStore
from settlement.utils.locks import DistributedLock
from settlement.utils.time import ensure_aware, utc_now

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class CredentialManager:
    def __init__(
        self,
        store: KeyValueStore,
        lock: DistributedLock,
        providers: Mapping[Platform, OAuthProvider],
        *,
        refresh_window_seconds: Optional[float] = None,
        lock_ttl_seconds: Optional[float] = None,
        contention_backoff_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.lock = lock
        self.providers = dict(providers)
        self.refresh_window = timedelta(seconds=float(
            refresh_window_seconds if refresh_window_seconds is not None else TOKEN_SETTINGS["refresh_window_seconds"]
        ))
        self.lock_ttl = float(lock_ttl_seconds if lock_ttl_seconds is not None else TOKEN_SETTINGS["refresh_lock_ttl_seconds"])
        self.contention_backoff = float(
            contention_backoff_seconds if contention_backoff_seconds is not None else TOKEN_SETTINGS["contention_backoff_seconds"]
        )
        self._clock = clock
        self._sleep = sleep

    # ----------------------------- storage ----------------------------- #
    @staticmethod
    def _token_key(platform: Platform, user_id: str) -> str:
        return f"token:{platform.value}:{user_id}"

    @staticmethod
    def _lock_key(platform: Platform, user_id: str) -> str:
        return f"refresh-lock:{platform.value}:{user_id}"

    async def store_token(self, token: SocialToken) -> None:
        await self.store.set(self._token_key(token.platform, token.user_id), token.model_dump_json())
        logger.info("Token stored", user_id=token.user_id, platform=token.platform.value,
                    expires_at=token.expires_at.isoformat())

    async def get_token(self, user_id: str, platform: Platform | str) -> Optional[SocialToken]:
        platform = resolve_platform(platform)
        raw = await self.store.get(self._token_key(platform, user_id))
        if raw is None:
            return None
        return SocialToken.model_validate_json(raw)

    async def remove_token(self, user_id: str, platform: Platform | str) -> None:
        platform = resolve_platform(platform)
        await self.store.delete(self._token_key(platform, user_id))
        logger.info("Token removed", user_id=user_id, platform=platform.value)

    async def needs_reauth(self, user_id: str, platform: Platform | str) -> bool:
        return await self.get_token(user_id, platform) is None

    async def invalidate(self, user_id: str, platform: Platform | str, reason: str) -> None:
        """Drop a credential the platform rejected; the user must log in again."""
        platform = resolve_platform(platform)
        await self.remove_token(user_id, platform)
        log_business_event("credential_invalidated", {"platform": platform.value, "reason": reason}, promoter_id=user_id)

    # ----------------------------- validation ----------------------------- #
    def validate_token(self, token: SocialToken) -> TokenValidation:
        remaining = (ensure_aware(token.expires_at) - self._clock()).total_seconds()
        if remaining <= 0:
            return TokenValidation(is_valid=False, needs_refresh=True, expires_in_seconds=0.0, error="Token expired")
        return TokenValidation(
            is_valid=True,
            needs_refresh=remaining <= self.refresh_window.total_seconds(),
            expires_in_seconds=remaining,
        )

    # ----------------------------- main entry ----------------------------- #
    async def get_valid_token(self, user_id: str, platform: Platform | str) -> Optional[SocialToken]:
        platform = resolve_platform(platform)
        token = await self.get_token(user_id, platform)
        if token is None:
            return None
        validation = self.validate_token(token)
        if not validation.needs_refresh:
            return token

        result = await self.refresh_token(user_id, platform)
        if result.success and result.token is not None:
            return result.token
        if validation.is_valid and not result.needs_reauth:
            logger.warning(
                "Proactive refresh failed, using current token",
                user_id=user_id,
                platform=platform.value,
                error=result.error,
            )
            return token
        return None

    async def refresh_token(self, user_id: str, platform: Platform | str) -> TokenRefreshResult:
        platform = resolve_platform(platform)
        lock_key = self._lock_key(platform, user_id)
        token = await self.lock.acquire(lock_key, self.lock_ttl)
        if token is None:
            logger.info("Refresh already in progress, waiting", user_id=user_id, platform=platform.value)
            await self._sleep(self.contention_backoff)
            current = await self.get_token(user_id, platform)
            if current is not None and self.validate_token(current).is_valid:
                return TokenRefreshResult(success=True, token=current)
            return TokenRefreshResult(
                success=False,
                token=current,
                error="Refresh in progress by another worker",
                needs_reauth=current is None,
            )
        try:
            return await self._refresh_locked(user_id, platform)
        finally:
            await self.lock.release(lock_key, token)

    async def _refresh_locked(self, user_id: str, platform: Platform) -> TokenRefreshResult:
        current = await self.get_token(user_id, platform)
        if current is None:
            return TokenRefreshResult(success=False, error="No token stored", needs_reauth=True)
        provider = self.providers.get(platform)
        if provider is None:
            return TokenRefreshResult(success=False, token=current, error=f"No OAuth provider for {platform.value}")

        try:
            credentials = await provider.refresh(current)
        except AuthorizationError as e:
            await self.remove_token(user_id, platform)
            log_business_event("token_revoked", {"platform": platform.value, "error": str(e)}, promoter_id=user_id)
            logger.warning("Refresh token rejected, re-authentication required",
                           user_id=user_id, platform=platform.value, error=str(e))
            return TokenRefreshResult(success=False, error=str(e), needs_reauth=True)
        except SettlementError as e:
            logger.warning("Token refresh failed, keeping stale token",
                           user_id=user_id, platform=platform.value, error=str(e))
            return TokenRefreshResult(success=False, token=current, error=str(e))

        expires_in = credentials.expires_in or provider.default_expires_in
        refreshed = SocialToken(
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token or current.refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            platform=platform,
            user_id=user_id,
            platform_user_id=current.platform_user_id,
        )
        await self.store_token(refreshed)
        logger.info("Token refreshed", user_id=user_id, platform=platform.value, expires_in=expires_in)
        return TokenRefreshResult(success=True, token=refreshed)


__all__ = ["CredentialManager"]
