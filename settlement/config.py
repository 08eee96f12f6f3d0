"""Core settlement configuration & tunable governance rules.

Every business rule that may evolve (fees, payout minimums, fraud thresholds,
rate limits, retry/backoff policies, scheduling) is centralized here so it can be
adjusted without diving into service logic. Values are read from the environment
once at import time; components take explicit keyword arguments and only fall back
to these dictionaries, so tests pass their own values instead of monkeypatching.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# ------------------------------- Settlement ------------------------------- #
PLATFORM_FEE_PERCENTAGE: float = float(os.getenv("PLATFORM_FEE_PERCENTAGE", "5"))
MIN_PAYOUT_AMOUNT: float = float(os.getenv("MIN_PAYOUT_AMOUNT", "1000"))
SETTLEMENT_TIMEZONE: str = os.getenv("SETTLEMENT_TIMEZONE", "Asia/Jakarta")

# Whether fraud assessments are handed to the action handler automatically
# (view invalidation / account suspension). Off by default: assessments are
# still recorded and views still flagged.
ENABLE_AUTO_ACTIONS: bool = _env_bool("ENABLE_AUTO_ACTIONS", False)
ENABLE_PAYOUT_NOTIFICATIONS: bool = _env_bool("ENABLE_PAYOUT_NOTIFICATIONS", True)

PAYOUT_SETTINGS: dict[str, float | int | str] = {
	"currency": os.getenv("PAYOUT_CURRENCY", "IDR"),
	# Bot share of total views above which a payout gets a sanity warning.
	"max_bot_ratio": 0.5,
	# Pairs computed concurrently inside one daily batch.
	"batch_concurrency": int(os.getenv("PAYOUT_BATCH_CONCURRENCY", "5")),
	# Single-flight lock TTL; generous so a slow batch keeps its lock.
	"batch_lock_ttl_seconds": 3600,
	"batch_lock_key": "settlement:daily-batch",
}

# ----------------------------- Platform access ---------------------------- #
# Requests per fixed window, per (platform, user).
PLATFORM_RATE_LIMITS: dict[str, dict[str, int]] = {
	"tiktok": {"limit": int(os.getenv("TIKTOK_RATE_LIMIT", "100")), "window_seconds": 3600},
	"instagram": {"limit": int(os.getenv("INSTAGRAM_RATE_LIMIT", "200")), "window_seconds": 3600},
}

PLATFORM_RETRY_POLICY: dict[str, int | float] = {
	"max_retries": int(os.getenv("PLATFORM_MAX_RETRIES", "3")),
	"base_seconds": 1,
	"factor": 2,
	"max_seconds": 30,
	"jitter_pct": 0.0,
}

PLATFORM_API_SETTINGS: dict[str, dict[str, str | float]] = {
	"tiktok": {
		"base_url": os.getenv("TIKTOK_API_BASE_URL", "https://open.tiktokapis.com/v2"),
		"client_key": os.getenv("TIKTOK_CLIENT_KEY", ""),
		"client_secret": os.getenv("TIKTOK_CLIENT_SECRET", ""),
		"timeout_seconds": 10.0,
	},
	"instagram": {
		"base_url": os.getenv("INSTAGRAM_API_BASE_URL", "https://graph.instagram.com"),
		"timeout_seconds": 10.0,
	},
}

TOKEN_SETTINGS: dict[str, int | float] = {
	# Refresh proactively when the token expires within this window.
	"refresh_window_seconds": 24 * 3600,
	"refresh_lock_ttl_seconds": 30,
	# Sleep before re-reading the token when another caller holds the lock.
	"contention_backoff_seconds": 1.0,
	"tiktok_default_expires_in": 86400,
	"instagram_default_expires_in": 5184000,  # 60 days (long-lived token)
}

# ----------------------------- Fraud detection ---------------------------- #
FRAUD_DETECTION_SETTINGS: dict[str, float | int | dict[str, float]] = {
	"view_like_ratio_threshold": 10.0,
	"view_comment_ratio_threshold": 100.0,
	"spike_threshold_pct": 500.0,
	"spike_window_seconds": 300,
	"min_views_for_engagement": 100,
	"weights": {
		"high_view_like_ratio": 30.0,
		"high_view_comment_ratio": 25.0,
		"view_spike": 45.0,
		"no_engagement": 20.0,
	},
	# Lower-inclusive score bands.
	"bands": {
		"ban": 90.0,
		"warning": 50.0,
		"monitor": 20.0,
	},
}

# ------------------------------- Ingestion -------------------------------- #
INGESTION_SETTINGS: dict[str, float | int] = {
	"collection_interval_seconds": int(os.getenv("COLLECTION_INTERVAL_SECONDS", "60")),
	"batch_size": 10,
	"max_concurrent_jobs": 5,
	"max_retries": int(os.getenv("INGESTION_MAX_RETRIES", "3")),
	"retry_delay_seconds": float(os.getenv("INGESTION_RETRY_DELAY_SECONDS", "5")),
	# Snapshots of the same content closer together than this are duplicates.
	"duplicate_window_seconds": 10,
}

VALIDATION_SETTINGS: dict[str, float | int] = {
	"max_engagement_rate": 1.0,   # (likes+comments+shares)/views above 100% suspicious
	"max_comment_rate": 0.10,     # comments/views above 10% suspicious
	"max_metric_value": 1_000_000_000,
}

# -------------------------------- Payments -------------------------------- #
PAYMENT_GATEWAY: str = os.getenv("PAYMENT_GATEWAY", "mock")

PAYMENT_SETTINGS: dict[str, float | int | str] = {
	"max_retries": int(os.getenv("PAYMENT_MAX_RETRIES", "3")),
	"base_seconds": 1,
	"factor": 2,
	"max_seconds": float(os.getenv("PAYMENT_MAX_BACKOFF_SECONDS", "30")),
	"poll_interval_seconds": 5,
	"max_polls": 60,  # 5 minutes at the default interval
	"batch_concurrency": int(os.getenv("PAYMENT_BATCH_CONCURRENCY", "5")),
	"batch_lock_ttl_seconds": 3600,
	"batch_lock_key": "payments:batch-lock",
}

GATEWAY_SETTINGS: dict[str, dict[str, str | float]] = {
	"xendit": {
		"base_url": os.getenv("XENDIT_BASE_URL", "https://api.xendit.co"),
		"secret_key": os.getenv("XENDIT_SECRET_KEY", ""),
		"timeout_seconds": 30.0,
	},
}

# ------------------------------- Scheduling ------------------------------- #
SCHEDULER_SETTINGS: dict[str, int | bool] = {
	"settlement_hour": 0,
	"settlement_minute": 0,
	"start_on_boot": _env_bool("START_SCHEDULER", True),
}

# ---------------------------- Shared state store -------------------------- #
STORE_SETTINGS: dict[str, str | float | bool] = {
	"use_redis": _env_bool("USE_REDIS", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_health_check_timeout": 2.0,
	"key_prefix": os.getenv("STORE_KEY_PREFIX", "settlement"),
}

QUEUE_SETTINGS: dict[str, dict[str, int] | int] = {
	"priorities": {  # Lower number = higher priority
		"high": 0,
		"normal": 5,
		"low": 10,
	},
	"warn_depth": 1000,
	"max_in_memory": 5000,
}

__all__ = [
	"PLATFORM_FEE_PERCENTAGE",
	"MIN_PAYOUT_AMOUNT",
	"SETTLEMENT_TIMEZONE",
	"ENABLE_AUTO_ACTIONS",
	"ENABLE_PAYOUT_NOTIFICATIONS",
	"PAYMENT_GATEWAY",
	# Rule groups
	"PAYOUT_SETTINGS",
	"PLATFORM_RATE_LIMITS",
	"PLATFORM_RETRY_POLICY",
	"PLATFORM_API_SETTINGS",
	"TOKEN_SETTINGS",
	"FRAUD_DETECTION_SETTINGS",
	"INGESTION_SETTINGS",
	"VALIDATION_SETTINGS",
	"PAYMENT_SETTINGS",
	"GATEWAY_SETTINGS",
	"SCHEDULER_SETTINGS",
	"STORE_SETTINGS",
	"QUEUE_SETTINGS",
]
