"""Ordered, composable normalization of raw engagement counts.

Default pipeline:
    clamp_non_negative -> round_counts -> cap_extreme_values -> derive_engagement

Rules are plain functions ``dict -> dict`` over the count fields and never
mutate their input. ``NormalizationPipeline.append`` returns a new pipeline
with one more rule, so extensions never touch the existing ones.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from settlement.config import VALIDATION_SETTINGS
from settlement.models.schemas.metrics import ViewMetricsSnapshot
from settlement.services.snapshot_validation import COUNT_FIELDS
from settlement.utils.metrics import safe_div

Values = Dict[str, Any]
Rule = Callable[[Values], Values]


def clamp_non_negative(values: Values) -> Values:
    out = dict(values)
    for name in COUNT_FIELDS:
        raw = out.get(name)
        number = float(raw) if raw is not None else 0.0
        out[name] = number if number > 0 else 0.0
    return out


def round_counts(values: Values) -> Values:
    # floor so a fractional platform estimate never rounds up into payable views
    out = dict(values)
    for name in COUNT_FIELDS:
        out[name] = int(math.floor(float(out.get(name) or 0)))
    return out


def cap_extreme_values(values: Values) -> Values:
    ceiling = int(VALIDATION_SETTINGS["max_metric_value"])
    out = dict(values)
    for name in COUNT_FIELDS:
        out[name] = min(int(out.get(name) or 0), ceiling)
    return out


def derive_engagement(values: Values) -> Values:
    out = dict(values)
    interactions = out["like_count"] + out["comment_count"] + out["share_count"]
    out["engagement_rate"] = round(safe_div(interactions, out["view_count"]), 6)
    return out


DEFAULT_RULES: Tuple[Tuple[str, Rule], ...] = (
    ("clamp_non_negative", clamp_non_negative),
    ("round_counts", round_counts),
    ("cap_extreme_values", cap_extreme_values),
    ("derive_engagement", derive_engagement),
)


class NormalizationPipeline:
    def __init__(self, rules: Optional[Sequence[Tuple[str, Rule]]] = None) -> None:
        self._rules: Tuple[Tuple[str, Rule], ...] = tuple(rules if rules is not None else DEFAULT_RULES)

    @property
    def rule_names(self) -> list[str]:
        return [name for name, _ in self._rules]

    def append(self, name: str, rule: Rule) -> "NormalizationPipeline":
        return NormalizationPipeline(self._rules + ((name, rule),))

    def run(self, values: Mapping[str, Any]) -> Values:
        current: Values = dict(values)
        for _, rule in self._rules:
            current = rule(current)
        return current

    def to_snapshot(self, candidate: Mapping[str, Any], timestamp: datetime) -> ViewMetricsSnapshot:
        values = self.run(candidate)
        platform = candidate["platform"]
        return ViewMetricsSnapshot(
            platform=str(getattr(platform, "value", platform)).strip().lower(),
            content_id=str(candidate["content_id"]).strip(),
            promoter_id=str(candidate["promoter_id"]).strip(),
            campaign_id=str(candidate["campaign_id"]).strip(),
            view_count=values["view_count"],
            like_count=values["like_count"],
            comment_count=values["comment_count"],
            share_count=values["share_count"],
            engagement_rate=values.get("engagement_rate", 0.0),
            timestamp=timestamp,
        )


def normalize(candidate: Mapping[str, Any], timestamp: datetime) -> ViewMetricsSnapshot:
    """Run the default pipeline and build the snapshot."""
    return NormalizationPipeline().to_snapshot(candidate, timestamp)


__all__ = [
    "NormalizationPipeline",
    "normalize",
    "clamp_non_negative",
    "round_counts",
    "cap_extreme_values",
    "derive_engagement",
    "DEFAULT_RULES",
]
