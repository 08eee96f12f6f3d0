"""
TikTok integration (Display API v2, video query endpoint).
"""
from typing import Any, Dict, Optional

from settlement.config import PLATFORM_API_SETTINGS
from settlement.exceptions import AuthorizationError, PlatformAPIError
from settlement.models.db.enums import Platform
from .base import PlatformIntegration

VIDEO_FIELDS = "id,view_count,like_count,comment_count,share_count"

# error.code values TikTok puts in otherwise-2xx payloads
_AUTH_ERROR_CODES = {"access_token_invalid", "scope_not_authorized", "token_expired"}
_RETRYABLE_ERROR_CODES = {"rate_limit_exceeded", "internal_error"}


class TikTokIntegration(PlatformIntegration):
    platform = Platform.TIKTOK

    def __init__(self, *, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> None:
        cfg = PLATFORM_API_SETTINGS["tiktok"]
        super().__init__(
            base_url=str(base_url or cfg["base_url"]),
            timeout_seconds=float(timeout_seconds or cfg["timeout_seconds"]),
        )

    def _check_body(self, status: int, body: Dict[str, Any]) -> None:
        error = body.get("error")
        if not isinstance(error, dict):
            return
        code = str(error.get("code") or "ok")
        if code == "ok":
            return
        message = str(error.get("message") or code)
        if code in _AUTH_ERROR_CODES:
            raise AuthorizationError(f"tiktok rejected credentials: {message}")
        if code in _RETRYABLE_ERROR_CODES:
            raise PlatformAPIError("tiktok", message, status_code=status, retryable=True)
        if 200 <= status < 300:
            raise PlatformAPIError("tiktok", message, status_code=status, retryable=False)

    async def fetch_content_metrics(self, access_token: str, content_id: str) -> Dict[str, Any]:
        self.logger.debug("Fetching TikTok video metrics", content_id=content_id)
        body = await self._call(
            "POST",
            f"{self.base_url}/video/query/",
            params={"fields": VIDEO_FIELDS},
            headers={"Authorization": f"Bearer {access_token}"},
            json={"filters": {"video_ids": [content_id]}},
        )
        videos = (body.get("data") or {}).get("videos") or []
        video = next((v for v in videos if str(v.get("id")) == str(content_id)), None)
        if video is None:
            raise PlatformAPIError("tiktok", f"video {content_id} not found", status_code=404, retryable=False)
        return {
            "view_count": video.get("view_count"),
            "like_count": video.get("like_count"),
            "comment_count": video.get("comment_count"),
            "share_count": video.get("share_count"),
            "raw": video,
        }
