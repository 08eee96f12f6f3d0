from settlement.config import VALIDATION_SETTINGS
from settlement.models.db.enums import Platform
from settlement.services.normalization import NormalizationPipeline, normalize
from settlement.services.snapshot_validation import validate_candidate

from conftest import BASE_TIME


def _candidate(**overrides):
    base = {
        "platform": "TikTok ",
        "content_id": " vid_1 ",
        "promoter_id": "promoter_1",
        "campaign_id": "campaign_1",
        "view_count": 1000,
        "like_count": 50,
        "comment_count": 5,
        "share_count": 2,
    }
    base.update(overrides)
    return base


def test_counts_are_clamped_floored_and_capped():
    ceiling = int(VALIDATION_SETTINGS["max_metric_value"])
    snap = normalize(
        _candidate(view_count=1234.9, like_count=-3, comment_count=None, share_count=ceiling * 2),
        BASE_TIME,
    )
    assert snap.view_count == 1234
    assert snap.like_count == 0
    assert snap.comment_count == 0
    assert snap.share_count == ceiling
    assert snap.platform == Platform.TIKTOK
    assert snap.content_id == "vid_1"
    assert snap.timestamp == BASE_TIME


def test_engagement_rate_is_derived_and_zero_views_safe():
    snap = normalize(_candidate(), BASE_TIME)
    assert snap.engagement_rate == round(57 / 1000, 6)

    empty = normalize(_candidate(view_count=0, like_count=0, comment_count=0, share_count=0), BASE_TIME)
    assert empty.engagement_rate == 0.0


def test_pipeline_append_returns_new_pipeline():
    def double_views(values):
        out = dict(values)
        out["view_count"] = out["view_count"] * 2
        return out

    default = NormalizationPipeline()
    extended = default.append("double_views", double_views)
    assert extended.rule_names[-1] == "double_views"
    assert "double_views" not in default.rule_names
    assert extended.to_snapshot(_candidate(), BASE_TIME).view_count == 2000
    assert default.to_snapshot(_candidate(), BASE_TIME).view_count == 1000


def test_rules_do_not_mutate_input():
    candidate = _candidate(view_count=10.7)
    NormalizationPipeline().run(candidate)
    assert candidate["view_count"] == 10.7


def test_missing_identifiers_and_platform_are_errors():
    report = validate_candidate(_candidate(promoter_id="  ", platform="youtube"))
    keys = {issue["key"] for issue in report.errors}
    assert keys == {"missing_promoter_id", "unsupported_platform"}
    assert not report.is_valid


def test_non_numeric_counts_are_errors():
    report = validate_candidate(_candidate(view_count="lots"))
    assert [issue["key"] for issue in report.errors] == ["non_numeric_view_count"]


def test_suspicious_rates_are_warnings_only():
    report = validate_candidate(_candidate(view_count=100, like_count=150, comment_count=20))
    assert report.is_valid
    keys = {issue["key"] for issue in report.warnings}
    assert keys == {"likes_exceed_views", "engagement_rate_over_limit", "comment_rate_over_limit"}
    assert "like count exceeds view count" in report.summary()


def test_clean_candidate_has_no_issues():
    report = validate_candidate(_candidate())
    assert report.errors == []
    assert report.warnings == []
