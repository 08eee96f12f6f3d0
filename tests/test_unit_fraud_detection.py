"""Bot scoring rules, bands and boundaries."""
from datetime import timedelta

import pytest

from settlement.models.db.enums import Confidence, FraudAction
from settlement.services.fraud_detection import FraudDetectionEngine


@pytest.fixture()
def engine(clock):
    return FraudDetectionEngine(clock=clock)


def test_empty_snapshot_list_is_low_confidence_no_action(engine):
    result = engine.detect("promoter_1", "campaign_1", [])
    assert result.bot_score == 0
    assert result.action == FraudAction.NONE
    assert result.confidence == Confidence.LOW
    assert result.reason == "No snapshots to analyze"


def test_ratio_exactly_at_threshold_is_not_flagged(engine, make_snapshot):
    # 1000 views / 100 likes == 10, 1000 / 10 comments == 100
    result = engine.detect("promoter_1", "campaign_1", [make_snapshot(1000, 100, 10)])
    assert result.metrics.view_like_ratio == 10
    assert result.metrics.view_comment_ratio == 100
    assert result.triggered_rules == []
    assert result.bot_score == 0
    assert result.confidence == Confidence.LOW
    assert result.reason.startswith("Normal activity detected")


def test_ratio_above_threshold_contributes_partial_weight(engine, make_snapshot):
    result = engine.detect("promoter_1", "campaign_1", [make_snapshot(1100, 100, 100)])
    assert result.triggered_rules == ["high_view_like_ratio"]
    # 30 * (0.5 + 1/10)
    assert result.bot_score == pytest.approx(18.0)
    assert result.action == FraudAction.NONE
    assert result.confidence == Confidence.MEDIUM


def test_spike_of_exactly_500_percent_is_detected(engine, make_snapshot):
    snapshots = [make_snapshot(100, 50, 50), make_snapshot(600, 100, 60, seconds=60)]
    result = engine.detect("promoter_1", "campaign_1", snapshots)
    assert result.metrics.spike_detected is True
    assert result.metrics.spike_percentage == pytest.approx(500.0)
    assert result.metrics.views_per_minute == pytest.approx(500.0)
    assert result.triggered_rules == ["view_spike"]
    assert result.bot_score == pytest.approx(22.5)
    assert result.action == FraudAction.MONITOR


def test_growth_outside_window_is_not_a_spike(engine, make_snapshot):
    window = engine.spike_window.total_seconds()
    snapshots = [make_snapshot(100, 50, 50), make_snapshot(5000, 600, 60, seconds=window + 1)]
    result = engine.detect("promoter_1", "campaign_1", snapshots)
    assert result.metrics.spike_detected is False
    assert result.metrics.spike_percentage is None
    assert result.metrics.snapshots_analyzed == 1


def test_zero_engagement_needs_minimum_views(engine, make_snapshot):
    few = engine.detect("promoter_1", "campaign_1", [make_snapshot(99)])
    assert "no_engagement" not in few.triggered_rules

    many = engine.detect("promoter_1", "campaign_1", [make_snapshot(100)])
    assert "no_engagement" in many.triggered_rules


def test_bot_like_pattern_without_spike_is_a_warning(engine, make_snapshot):
    result = engine.detect("promoter_1", "campaign_1", [make_snapshot(10_000)])
    # full like-ratio (30) + full comment-ratio (25) + no engagement (20)
    assert result.bot_score == pytest.approx(75.0)
    assert result.action == FraudAction.WARNING
    assert result.confidence == Confidence.HIGH
    assert not result.views_legitimate


def test_score_is_clamped_and_bans(engine, make_snapshot):
    snapshots = [make_snapshot(1000), make_snapshot(10_000, seconds=60)]
    result = engine.detect("promoter_1", "campaign_1", snapshots)
    assert result.bot_score == 100
    assert result.action == FraudAction.BAN
    assert set(result.triggered_rules) == {
        "high_view_like_ratio", "high_view_comment_ratio", "view_spike", "no_engagement",
    }
    assert "bot score: 100" in result.reason


@pytest.mark.parametrize("score, action", [
    (0, FraudAction.NONE),
    (19.99, FraudAction.NONE),
    (20, FraudAction.MONITOR),
    (49.99, FraudAction.MONITOR),
    (50, FraudAction.WARNING),
    (89.99, FraudAction.WARNING),
    (90, FraudAction.BAN),
    (100, FraudAction.BAN),
])
def test_action_bands_are_lower_inclusive(engine, score, action):
    assert engine.action_for(score) == action


def test_monitor_keeps_views_legitimate(engine, make_snapshot):
    snapshots = [make_snapshot(100, 50, 50), make_snapshot(600, 100, 60, seconds=60)]
    result = engine.detect("promoter_1", "campaign_1", snapshots)
    assert result.action == FraudAction.MONITOR
    assert result.views_legitimate


def test_settings_override_thresholds(clock, make_snapshot):
    strict = FraudDetectionEngine({"view_like_ratio_threshold": 5.0}, clock=clock)
    result = strict.detect("promoter_1", "campaign_1", [make_snapshot(600, 100, 10)])
    assert "high_view_like_ratio" in result.triggered_rules
    assert result.assessed_at == clock.now
    assert strict.spike_window == timedelta(minutes=5)
