"""
Platform integrations package.
"""
from .base import PlatformIntegration
from .instagram import InstagramIntegration
from .tiktok import TikTokIntegration
from .platforms import RateLimitedPlatformClient, default_integrations, resolve_platform
from .oauth import OAuthProvider, TikTokOAuthProvider, InstagramOAuthProvider, default_oauth_providers

__all__ = [
    "PlatformIntegration",
    "InstagramIntegration",
    "TikTokIntegration",
    "RateLimitedPlatformClient",
    "default_integrations",
    "resolve_platform",
    "OAuthProvider",
    "TikTokOAuthProvider",
    "InstagramOAuthProvider",
    "default_oauth_providers",
]
