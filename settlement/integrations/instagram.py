"""
Instagram integration (Graph API media fields + insights).

Like and comment counts come from the media node; views and shares come from
the insights edge, which is only available to the media owner, which is why
collection runs with the promoter's own token.
"""
from typing import Any, Dict, Optional

from settlement.config import PLATFORM_API_SETTINGS
from settlement.exceptions import AuthorizationError
from settlement.models.db.enums import Platform
from .base import PlatformIntegration

# Graph API OAuthException code
_INVALID_TOKEN_CODE = 190


class InstagramIntegration(PlatformIntegration):
    platform = Platform.INSTAGRAM

    def __init__(self, *, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> None:
        cfg = PLATFORM_API_SETTINGS["instagram"]
        super().__init__(
            base_url=str(base_url or cfg["base_url"]),
            timeout_seconds=float(timeout_seconds or cfg["timeout_seconds"]),
        )

    def _check_body(self, status: int, body: Dict[str, Any]) -> None:
        error = body.get("error")
        if isinstance(error, dict) and error.get("code") == _INVALID_TOKEN_CODE:
            raise AuthorizationError(f"instagram rejected credentials: {error.get('message', 'invalid token')}")

    @staticmethod
    def _insight(body: Dict[str, Any], name: str) -> Optional[int]:
        for entry in body.get("data") or []:
            if entry.get("name") != name:
                continue
            values = entry.get("values") or []
            if values:
                return values[0].get("value")
            return entry.get("total_value", {}).get("value")
        return None

    async def fetch_content_metrics(self, access_token: str, content_id: str) -> Dict[str, Any]:
        self.logger.debug("Fetching Instagram media metrics", content_id=content_id)
        media = await self._call(
            "GET",
            f"{self.base_url}/{content_id}",
            params={"fields": "id,like_count,comments_count", "access_token": access_token},
        )
        insights = await self._call(
            "GET",
            f"{self.base_url}/{content_id}/insights",
            params={"metric": "views,shares", "access_token": access_token},
        )
        return {
            "view_count": self._insight(insights, "views"),
            "like_count": media.get("like_count"),
            "comment_count": media.get("comments_count"),
            "share_count": self._insight(insights, "shares"),
            "raw": {"media": media, "insights": insights},
        }
