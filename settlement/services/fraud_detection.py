"""Bot-engagement scoring for one promoter/campaign pair.

Inputs are the snapshots of a piece of content in arrival order; the latest one
is scored. Nothing here touches I/O, so the engine is safe to call from anywhere
and trivially testable. Applying the recommended action is the caller's job.

Rules (weights in FRAUD_DETECTION_SETTINGS):
    high_view_like_ratio     views / max(likes, 1)     > 10
    high_view_comment_ratio  views / max(comments, 1)  > 100
    view_spike               growth vs earliest snapshot in the trailing
                             5 minute window            >= 500%
    no_engagement            >= 100 views, zero likes and zero comments

A threshold rule contributes ``weight * min(1, 0.5 + excess / threshold)``: half
its weight as soon as it fires, the full weight once the value reaches 1.5x the
threshold. The sum is clamped to [0, 100].

Boundary convention: ratio rules fire only strictly above their threshold (a
view:like ratio of exactly 10 is reported but not flagged), while a spike counts
once growth reaches its threshold (100 -> 600 views is a 500% spike). Action
bands are lower-inclusive (score 90 is a ban).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Sequence

from settlement.config import FRAUD_DETECTION_SETTINGS
from settlement.models.db.enums import Confidence, FraudAction
from settlement.models.schemas.fraud import FraudAssessment, FraudMetrics
from settlement.models.schemas.metrics import ViewMetricsSnapshot
from settlement.utils.metrics import engagement_ratio, growth_pct
from settlement.utils.time import utc_now


@dataclass(frozen=True)
class RuleHit:
    name: str
    description: str
    contribution: float


@dataclass(frozen=True)
class SpikeReading:
    detected: bool
    percentage: Optional[float]
    views_per_minute: Optional[float]
    window_size: int


class FraudDetectionEngine:
    def __init__(self, settings: Optional[Mapping[str, object]] = None, *, clock: Callable[[], datetime] = utc_now) -> None:
        cfg = dict(FRAUD_DETECTION_SETTINGS)
        if settings:
            cfg.update(settings)
        self.like_threshold = float(cfg["view_like_ratio_threshold"])  # type: ignore[arg-type]
        self.comment_threshold = float(cfg["view_comment_ratio_threshold"])  # type: ignore[arg-type]
        self.spike_threshold = float(cfg["spike_threshold_pct"])  # type: ignore[arg-type]
        self.spike_window = timedelta(seconds=float(cfg["spike_window_seconds"]))  # type: ignore[arg-type]
        self.min_views_for_engagement = int(cfg["min_views_for_engagement"])  # type: ignore[arg-type]
        self.weights: dict[str, float] = dict(cfg["weights"])  # type: ignore[arg-type]
        self.bands: dict[str, float] = dict(cfg["bands"])  # type: ignore[arg-type]
        self._clock = clock

    # ----------------------------- components ----------------------------- #
    def _threshold_contribution(self, rule: str, value: float, threshold: float, *, inclusive: bool = False) -> float:
        excess = value - threshold
        if excess < 0 or (excess == 0 and not inclusive):
            return 0.0
        return self.weights[rule] * min(1.0, 0.5 + excess / threshold)

    def measure_spike(self, ordered: Sequence[ViewMetricsSnapshot]) -> SpikeReading:
        latest = ordered[-1]
        window_start = latest.timestamp - self.spike_window
        window = [s for s in ordered if window_start <= s.timestamp <= latest.timestamp]
        if len(window) < 2:
            return SpikeReading(False, None, None, len(window))
        baseline = window[0]
        percentage = growth_pct(baseline.view_count, latest.view_count)
        minutes = (latest.timestamp - baseline.timestamp).total_seconds() / 60.0
        views_per_minute = (latest.view_count - baseline.view_count) / minutes if minutes > 0 else None
        detected = percentage is not None and percentage >= self.spike_threshold
        return SpikeReading(detected, percentage, views_per_minute, len(window))

    def action_for(self, score: float) -> FraudAction:
        if score >= self.bands["ban"]:
            return FraudAction.BAN
        if score >= self.bands["warning"]:
            return FraudAction.WARNING
        if score >= self.bands["monitor"]:
            return FraudAction.MONITOR
        return FraudAction.NONE

    @staticmethod
    def confidence_for(hits: Sequence[RuleHit]) -> Confidence:
        if len(hits) >= 2:
            return Confidence.HIGH
        if len(hits) == 1:
            return Confidence.MEDIUM
        return Confidence.LOW

    # ----------------------------- entry point ----------------------------- #
    def detect(
        self,
        promoter_id: str,
        campaign_id: str,
        ordered_snapshots: Sequence[ViewMetricsSnapshot],
    ) -> FraudAssessment:
        if not ordered_snapshots:
            return FraudAssessment(
                promoter_id=promoter_id,
                campaign_id=campaign_id,
                bot_score=0.0,
                confidence=Confidence.LOW,
                action=FraudAction.NONE,
                metrics=FraudMetrics(view_like_ratio=0.0, view_comment_ratio=0.0),
                reason="No snapshots to analyze",
                assessed_at=self._clock(),
            )

        latest = ordered_snapshots[-1]
        view_like = engagement_ratio(latest.view_count, latest.like_count)
        view_comment = engagement_ratio(latest.view_count, latest.comment_count)
        spike = self.measure_spike(ordered_snapshots)

        hits: list[RuleHit] = []
        contribution = self._threshold_contribution("high_view_like_ratio", view_like, self.like_threshold)
        if contribution:
            hits.append(RuleHit(
                "high_view_like_ratio",
                f"view:like ratio {view_like:.1f} above {self.like_threshold:g}",
                contribution,
            ))
        contribution = self._threshold_contribution("high_view_comment_ratio", view_comment, self.comment_threshold)
        if contribution:
            hits.append(RuleHit(
                "high_view_comment_ratio",
                f"view:comment ratio {view_comment:.1f} above {self.comment_threshold:g}",
                contribution,
            ))
        if spike.detected and spike.percentage is not None:
            hits.append(RuleHit(
                "view_spike",
                f"views grew {spike.percentage:.0f}% within {int(self.spike_window.total_seconds() // 60)} minutes",
                self._threshold_contribution("view_spike", spike.percentage, self.spike_threshold, inclusive=True),
            ))
        if (
            latest.view_count >= self.min_views_for_engagement
            and latest.like_count == 0
            and latest.comment_count == 0
        ):
            hits.append(RuleHit("no_engagement", f"{latest.view_count} views without any likes or comments",
                                self.weights["no_engagement"]))

        score = round(max(0.0, min(100.0, sum(h.contribution for h in hits))), 2)
        if hits:
            reason = f"Suspicious patterns: {'; '.join(h.description for h in hits)} (bot score: {score:g})"
        else:
            reason = f"Normal activity detected (bot score: {score:g})"

        return FraudAssessment(
            promoter_id=promoter_id,
            campaign_id=campaign_id,
            bot_score=score,
            confidence=self.confidence_for(hits),
            action=self.action_for(score),
            metrics=FraudMetrics(
                view_like_ratio=round(view_like, 4),
                view_comment_ratio=round(view_comment, 4),
                spike_detected=spike.detected,
                spike_percentage=round(spike.percentage, 4) if spike.percentage is not None else None,
                views_per_minute=round(spike.views_per_minute, 2) if spike.views_per_minute is not None else None,
                snapshots_analyzed=spike.window_size,
            ),
            reason=reason,
            triggered_rules=[h.name for h in hits],
            assessed_at=self._clock(),
        )


__all__ = ["FraudDetectionEngine", "RuleHit", "SpikeReading"]
