from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from settlement.exceptions import InvalidStatusTransition, ValidationFailure
from settlement.models.db.enums import PayoutStatus
from settlement.services.payout_engine import PayoutSettlementEngine
from settlement.utils.metrics import format_rupiah


@pytest.fixture()
def engine(lock, clock):
    return PayoutSettlementEngine(lock, clock=clock)


def test_compute_payout_splits_fee_and_net(engine):
    calc = engine.compute_payout("promoter_1", "campaign_1", Decimal("1"), 100_000, 2_000)
    assert calc.total_views == 102_000
    assert calc.gross_amount == Decimal("100000")
    assert calc.platform_fee == Decimal("5000.00")
    assert calc.net_amount == Decimal("95000.00")
    assert calc.status == PayoutStatus.PENDING


def test_fee_rounds_half_up_and_net_is_exact_remainder(engine):
    calc = engine.compute_payout("promoter_1", "campaign_1", "0.5", 1001, 0)
    assert calc.gross_amount == Decimal("500.5")
    assert calc.platform_fee == Decimal("25.03")
    assert calc.net_amount == Decimal("475.47")
    assert calc.net_amount + calc.platform_fee == calc.gross_amount


def test_negative_views_are_rejected(engine):
    with pytest.raises(ValidationFailure):
        engine.compute_payout("promoter_1", "campaign_1", "1", -1, 0)


def test_below_minimum_is_a_warning_not_an_error(engine):
    calc = engine.compute_payout("promoter_1", "campaign_1", "1", 500, 0)
    validation = engine.validate_payout(calc)
    assert validation.is_valid
    assert validation.below_minimum
    assert "below minimum payout Rp1.000" in validation.warnings[0]


def test_high_bot_ratio_and_empty_period_warn(engine):
    botty = engine.validate_payout(engine.compute_payout("promoter_1", "campaign_1", "1", 10_000, 20_000))
    assert any("bot ratio 67%" in w for w in botty.warnings)

    empty = engine.validate_payout(engine.compute_payout("promoter_1", "campaign_1", "1", 0, 0))
    assert "no views in settlement period" in empty.warnings
    assert empty.below_minimum


def test_non_positive_rate_is_an_error(engine):
    validation = engine.validate_payout(engine.compute_payout("promoter_1", "campaign_1", "0", 10_000, 0))
    assert not validation.is_valid
    assert validation.errors == ["rate per view must be positive (got 0)"]


def test_calculation_transitions_forward_only(engine):
    calc = engine.compute_payout("promoter_1", "campaign_1", "1", 5_000, 0)
    processing = calc.transition(PayoutStatus.PROCESSING)
    done = processing.transition(PayoutStatus.COMPLETED)
    assert done.status == PayoutStatus.COMPLETED
    assert calc.status == PayoutStatus.PENDING
    with pytest.raises(InvalidStatusTransition):
        calc.transition(PayoutStatus.COMPLETED)
    with pytest.raises(InvalidStatusTransition):
        done.transition(PayoutStatus.FAILED)


def test_settlement_period_is_previous_local_day(engine):
    period = engine.settlement_period(date(2025, 1, 15))
    assert period.start.astimezone(timezone.utc) == datetime(2025, 1, 13, 17, 0, tzinfo=timezone.utc)
    assert period.end.date() == date(2025, 1, 14)
    assert period.end.microsecond == 999_999
    assert period.contains(datetime(2025, 1, 14, 16, 59, 59, tzinfo=timezone.utc))
    assert not period.contains(datetime(2025, 1, 14, 17, 0, tzinfo=timezone.utc))


@pytest.mark.parametrize("amount, text", [
    (Decimal("1234567"), "Rp1.234.567"),
    (Decimal("1234.5"), "Rp1.234,50"),
    (Decimal("0"), "Rp0"),
    (Decimal("-950"), "-Rp950"),
])
def test_format_rupiah(amount, text):
    assert format_rupiah(amount) == text
