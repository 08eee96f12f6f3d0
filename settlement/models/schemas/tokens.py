"""OAuth credential schemas owned by the credential manager."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from settlement.models.db.enums import Platform


class SocialToken(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_at: datetime
    platform: Platform
    user_id: str
    platform_user_id: Optional[str] = None


class RefreshedCredentials(BaseModel):
    """Token endpoint response, normalized across providers."""
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)


class TokenRefreshResult(BaseModel):
    success: bool
    token: Optional[SocialToken] = None
    error: Optional[str] = None
    needs_reauth: bool = False


class TokenValidation(BaseModel):
    is_valid: bool
    needs_refresh: bool = False
    expires_in_seconds: Optional[float] = None
    error: Optional[str] = None


__all__ = ["SocialToken", "RefreshedCredentials", "TokenRefreshResult", "TokenValidation"]
