"""Validation of collected metrics before they enter the ledger.

Each rule returns either None (no issue) or a structured issue dict:
  key: unique identifier for the rule
  severity: "error" (snapshot rejected) | "warning" (kept, logged)
  message: human readable description
  value / threshold: measured figure and the limit it crossed (when numeric)

Errors are local validation failures: the collection job fails terminally and
is never retried, since fetching the same thing again cannot fix it.

Public entrypoint: validate_candidate(...)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from settlement.config import VALIDATION_SETTINGS
from settlement.models.db.enums import Platform

SUPPORTED_PLATFORMS = {p.value for p in Platform}
COUNT_FIELDS = ("view_count", "like_count", "comment_count", "share_count")


@dataclass
class ValidationReport:
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return "; ".join(issue["message"] for issue in self.errors or self.warnings)


def _num(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0

# ----------------------------- error rules ----------------------------- #

def _rule_identifiers(candidate: Mapping[str, Any]) -> List[dict]:
    issues = []
    for name in ("promoter_id", "campaign_id", "content_id"):
        value = candidate.get(name)
        if value is None or not str(value).strip():
            issues.append({"key": f"missing_{name}", "severity": "error", "message": f"{name} is required"})
    return issues


def _rule_platform(candidate: Mapping[str, Any]) -> Optional[dict]:
    platform = candidate.get("platform")
    value = getattr(platform, "value", platform)
    if value is None or str(value).strip().lower() not in SUPPORTED_PLATFORMS:
        return {"key": "unsupported_platform", "severity": "error",
                "message": f"unsupported platform {value!r}", "value": value}
    return None


def _rule_numeric(candidate: Mapping[str, Any]) -> List[dict]:
    issues = []
    for name in COUNT_FIELDS:
        value = candidate.get(name)
        if value is None:
            continue
        try:
            float(value)
        except (TypeError, ValueError):
            issues.append({"key": f"non_numeric_{name}", "severity": "error",
                           "message": f"{name} is not a number", "value": value})
    return issues

# ----------------------------- warning rules ----------------------------- #

def _rule_likes_exceed_views(views: float, likes: float) -> Optional[dict]:
    if views > 0 and likes > views:
        return {"key": "likes_exceed_views", "severity": "warning",
                "message": "like count exceeds view count", "value": likes, "threshold": views}
    return None


def _rule_engagement_rate(views: float, likes: float, comments: float, shares: float) -> Optional[dict]:
    if views <= 0:
        return None
    rate = (likes + comments + shares) / views
    threshold = float(VALIDATION_SETTINGS["max_engagement_rate"])
    if rate > threshold:
        return {"key": "engagement_rate_over_limit", "severity": "warning",
                "message": f"engagement rate {rate:.0%} above {threshold:.0%}",
                "value": round(rate, 4), "threshold": threshold}
    return None


def _rule_comment_rate(views: float, comments: float) -> Optional[dict]:
    if views <= 0:
        return None
    rate = comments / views
    threshold = float(VALIDATION_SETTINGS["max_comment_rate"])
    if rate > threshold:
        return {"key": "comment_rate_over_limit", "severity": "warning",
                "message": f"comment rate {rate:.0%} above {threshold:.0%}",
                "value": round(rate, 4), "threshold": threshold}
    return None


def validate_candidate(candidate: Mapping[str, Any]) -> ValidationReport:
    """Validate an assembled (pre-normalization) snapshot candidate."""
    report = ValidationReport()
    report.errors.extend(_rule_identifiers(candidate))
    platform_issue = _rule_platform(candidate)
    if platform_issue:
        report.errors.append(platform_issue)
    report.errors.extend(_rule_numeric(candidate))
    if report.errors:
        return report

    views = _num(candidate.get("view_count"))
    likes = _num(candidate.get("like_count"))
    comments = _num(candidate.get("comment_count"))
    shares = _num(candidate.get("share_count"))
    for issue in (
        _rule_likes_exceed_views(views, likes),
        _rule_engagement_rate(views, likes, comments, shares),
        _rule_comment_rate(views, comments),
    ):
        if issue:
            report.warnings.append(issue)
    return report


__all__ = ["ValidationReport", "validate_candidate", "SUPPORTED_PLATFORMS"]
