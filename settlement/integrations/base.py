"""
Shared plumbing for social platform adapters.

Adapters perform exactly one HTTP exchange per call and translate the outcome
into the settlement error taxonomy; retries and rate limiting live one level up
in ``RateLimitedPlatformClient``.

Classification:
    2xx            -> success
    401 / 403      -> AuthorizationError (credential invalid, re-auth needed)
    429            -> PlatformAPIError(retryable=True, retry_after=<Retry-After>)
    5xx            -> PlatformAPIError(retryable=True)
    other 4xx      -> PlatformAPIError(retryable=False)
    network/timeout-> PlatformAPIError(retryable=True, status_code=None)
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import aiohttp

from settlement.exceptions import AuthorizationError, PlatformAPIError
from settlement.models.db.enums import Platform
from settlement.utils import get_logger

logger = get_logger(__name__)


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    raw = headers.get("Retry-After") if headers else None
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def raise_for_platform_status(platform: str, status: int, headers: Mapping[str, str], body: Dict[str, Any]) -> None:
    """Translate an HTTP status into the settlement error taxonomy."""
    if 200 <= status < 300:
        return
    detail = str(body.get("error") or body.get("message") or body)[:300]
    if status in (401, 403):
        raise AuthorizationError(f"{platform} rejected credentials ({status}): {detail}")
    if status == 429:
        raise PlatformAPIError(platform, f"rate limited upstream: {detail}", status_code=status,
                               retryable=True, retry_after=parse_retry_after(headers))
    if status >= 500:
        raise PlatformAPIError(platform, f"server error {status}: {detail}", status_code=status, retryable=True)
    raise PlatformAPIError(platform, f"request rejected {status}: {detail}", status_code=status, retryable=False)


async def request_json(
    platform: str,
    method: str,
    url: str,
    *,
    timeout_seconds: float,
    **kwargs: Any,
) -> tuple[int, Mapping[str, str], Dict[str, Any]]:
    """One HTTP exchange; returns (status, headers, parsed body). Network errors are retryable."""
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url, **kwargs) as response:
                text = await response.text()
                try:
                    body = json.loads(text) if text else {}
                except ValueError:
                    body = {"raw": text[:500]}
                if not isinstance(body, dict):
                    body = {"data": body}
                return response.status, dict(response.headers), body
    except asyncio.TimeoutError as e:
        raise PlatformAPIError(platform, f"timeout after {timeout_seconds}s", retryable=True) from e
    except aiohttp.ClientError as e:
        raise PlatformAPIError(platform, f"network error: {e}", retryable=True) from e


class PlatformIntegration(ABC):
    """Read-side adapter for one social platform."""

    platform: Platform

    def __init__(self, *, base_url: str, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(f"integration.{self.platform.value}")

    @abstractmethod
    async def fetch_content_metrics(self, access_token: str, content_id: str) -> Dict[str, Any]:
        """Return raw counts: view_count, like_count, comment_count, share_count, raw."""

    async def _call(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        status, headers, body = await request_json(
            self.platform.value, method, url, timeout_seconds=self.timeout_seconds, **kwargs
        )
        self._check_body(status, body)
        raise_for_platform_status(self.platform.value, status, headers, body)
        return body

    def _check_body(self, status: int, body: Dict[str, Any]) -> None:
        """Hook for platforms that signal auth failures in the payload."""
        return None


__all__ = [
    "PlatformIntegration",
    "raise_for_platform_status",
    "request_json",
    "parse_retry_after",
]
