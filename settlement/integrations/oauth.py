"""
OAuth token refresh providers.

Each provider turns a stored ``SocialToken`` into fresh credentials or raises:
    AuthorizationError -> refresh token invalid / revoked (re-auth required)
    PlatformAPIError   -> anything else (kept as transient by the caller)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from settlement.config import PLATFORM_API_SETTINGS, TOKEN_SETTINGS
from settlement.exceptions import AuthorizationError, PlatformAPIError
from settlement.models.db.enums import Platform
from settlement.models.schemas.tokens import RefreshedCredentials, SocialToken
from settlement.utils import get_logger
from .base import raise_for_platform_status, request_json

logger = get_logger(__name__)


class OAuthProvider(ABC):
    platform: Platform
    default_expires_in: int

    @abstractmethod
    async def refresh(self, token: SocialToken) -> RefreshedCredentials:
        """Exchange the stored credential for a new one."""


class TikTokOAuthProvider(OAuthProvider):
    platform = Platform.TIKTOK
    default_expires_in = int(TOKEN_SETTINGS["tiktok_default_expires_in"])

    def __init__(self, *, client_key: Optional[str] = None, client_secret: Optional[str] = None,
                 base_url: Optional[str] = None, timeout_seconds: float = 10.0) -> None:
        cfg = PLATFORM_API_SETTINGS["tiktok"]
        self.client_key = str(client_key if client_key is not None else cfg["client_key"])
        self.client_secret = str(client_secret if client_secret is not None else cfg["client_secret"])
        self.base_url = str(base_url or cfg["base_url"]).rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def refresh(self, token: SocialToken) -> RefreshedCredentials:
        if not token.refresh_token:
            raise AuthorizationError("tiktok token has no refresh token")
        status, headers, body = await request_json(
            "tiktok",
            "POST",
            f"{self.base_url}/oauth/token/",
            timeout_seconds=self.timeout_seconds,
            data={
                "client_key": self.client_key,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": token.refresh_token,
            },
        )
        if body.get("error") in ("invalid_grant", "invalid_request"):
            raise AuthorizationError(f"tiktok refresh rejected: {body.get('error_description', body['error'])}")
        raise_for_platform_status("tiktok", status, headers, body)
        return _credentials(body, "tiktok")


class InstagramOAuthProvider(OAuthProvider):
    """Long-lived Instagram tokens refresh themselves (no separate refresh token)."""
    platform = Platform.INSTAGRAM
    default_expires_in = int(TOKEN_SETTINGS["instagram_default_expires_in"])

    def __init__(self, *, base_url: Optional[str] = None, timeout_seconds: float = 10.0) -> None:
        cfg = PLATFORM_API_SETTINGS["instagram"]
        self.base_url = str(base_url or cfg["base_url"]).rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def refresh(self, token: SocialToken) -> RefreshedCredentials:
        status, headers, body = await request_json(
            "instagram",
            "GET",
            f"{self.base_url}/refresh_access_token",
            timeout_seconds=self.timeout_seconds,
            params={"grant_type": "ig_refresh_token", "access_token": token.access_token},
        )
        error = body.get("error")
        if isinstance(error, dict) and error.get("code") == 190:
            raise AuthorizationError(f"instagram refresh rejected: {error.get('message', 'invalid token')}")
        raise_for_platform_status("instagram", status, headers, body)
        return _credentials(body, "instagram")


def _credentials(body: Dict[str, Any], platform: str) -> RefreshedCredentials:
    payload = body.get("data") if isinstance(body.get("data"), dict) else body
    if not payload.get("access_token"):
        raise PlatformAPIError(platform, "token response missing access_token", retryable=True)
    return RefreshedCredentials(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token"),
        expires_in=payload.get("expires_in"),
    )


def default_oauth_providers() -> dict[Platform, OAuthProvider]:
    return {
        Platform.TIKTOK: TikTokOAuthProvider(),
        Platform.INSTAGRAM: InstagramOAuthProvider(),
    }


__all__ = [
    "OAuthProvider",
    "TikTokOAuthProvider",
    "InstagramOAuthProvider",
    "default_oauth_providers",
]
