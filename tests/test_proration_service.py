"""
Tests for ProrationService
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

import pytest

from billing.core.exceptions import ProrationValidationError
from billing.services.proration_service import ProrationService, round_currency

PERIOD_START = datetime(2025, 1, 1)
PERIOD_END = datetime(2025, 1, 31)
CHANGE_DATE = datetime(2025, 1, 15)


@pytest.fixture
def proration():
    return ProrationService()


class TestCalculateProration:
    """Prorated plan change within the current period"""

    def test_upgrade_mid_period(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, CHANGE_DATE, "monthly")

        assert result.total_days_in_period == 30
        assert result.remaining_days == 16
        assert result.credit_days == result.charge_days == 16
        assert result.credit_amount == Decimal("16.00")
        assert result.charge_amount == Decimal("26.67")
        assert result.net_amount == Decimal("10.67")
        assert result.next_billing_date == PERIOD_END
        assert result.effective_date == CHANGE_DATE

    def test_downgrade_mid_period(self, proration):
        result = proration.calculate_proration(50, 30, PERIOD_START, PERIOD_END, CHANGE_DATE, "monthly")

        assert result.credit_amount == Decimal("26.67")
        assert result.charge_amount == Decimal("16.00")
        assert result.net_amount == Decimal("-10.67")

    def test_daily_rates_are_rounded(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, CHANGE_DATE)

        assert result.old_plan_daily_rate == Decimal("1.00")
        assert result.new_plan_daily_rate == Decimal("1.67")

    def test_change_on_period_end_is_free(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, PERIOD_END)

        assert result.remaining_days == 0
        assert result.credit_amount == Decimal("0.00")
        assert result.charge_amount == Decimal("0.00")
        assert result.net_amount == Decimal("0.00")

    def test_change_on_period_start_swaps_whole_period(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, PERIOD_START)

        assert result.remaining_days == 30
        assert result.credit_amount == Decimal("30.00")
        assert result.charge_amount == Decimal("50.00")
        assert result.net_amount == Decimal("20.00")

    def test_partial_day_counts_as_whole_day(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, datetime(2025, 1, 15, 12, 0))

        assert result.remaining_days == 16

    @pytest.mark.parametrize("change_date", [
        datetime(2024, 12, 31, 23, 59),
        datetime(2025, 1, 31, 0, 0, 1),
        datetime(2025, 3, 1),
    ])
    def test_change_outside_period_is_rejected(self, proration, change_date):
        with pytest.raises(ProrationValidationError) as exc_info:
            proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, change_date)

        assert exc_info.value.status_code == 422
        assert "within current billing period" in exc_info.value.message

    def test_validation_error_is_a_value_error(self, proration):
        with pytest.raises(ValueError):
            proration.calculate_proration(0, 0, PERIOD_START, PERIOD_END, datetime(2026, 1, 1))

    def test_net_is_difference_of_rounded_amounts(self, proration):
        """net == round2(charge) - round2(credit) and stays within a cent of the exact value"""
        total_days = 30
        for old_amount, new_amount in [(Decimal("9.99"), Decimal("24.99")), (Decimal("49"), Decimal("0")),
                                       (Decimal("0"), Decimal("17.5")), (Decimal("33.33"), Decimal("33.34"))]:
            for remaining in range(0, total_days + 1):
                change_date = datetime(2025, 1, 31 - remaining)
                result = proration.calculate_proration(old_amount, new_amount, PERIOD_START, PERIOD_END, change_date)

                expected_charge = (new_amount / total_days * remaining).quantize(Decimal("0.01"), ROUND_HALF_UP)
                expected_credit = (old_amount / total_days * remaining).quantize(Decimal("0.01"), ROUND_HALF_UP)
                exact_net = (new_amount - old_amount) / total_days * remaining

                assert result.remaining_days == remaining
                assert result.net_amount == expected_charge - expected_credit
                assert abs(result.net_amount - exact_net) <= Decimal("0.01")

    def test_zero_length_period_has_zero_rates(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_START, PERIOD_START)

        assert result.total_days_in_period == 0
        assert result.old_plan_daily_rate == Decimal("0")
        assert result.net_amount == Decimal("0")


class TestImmediateChangeProration:
    """Plan change that starts a new period right away"""

    def test_upgrade_charges_full_new_price(self, proration):
        result = proration.calculate_immediate_change_proration(
            30, 50, PERIOD_START, PERIOD_END, CHANGE_DATE, "monthly"
        )

        assert result.credit_amount == Decimal("16.00")
        assert result.charge_amount == Decimal("50.00")
        assert result.net_amount == Decimal("34.00")
        assert result.next_billing_date == datetime(2025, 2, 15)
        assert result.charge_days == 30

    def test_yearly_cycle_moves_billing_date_a_year(self, proration):
        result = proration.calculate_immediate_change_proration(
            30, 300, PERIOD_START, PERIOD_END, CHANGE_DATE, "yearly"
        )

        assert result.next_billing_date == datetime(2026, 1, 15)
        assert result.charge_days == 365
        assert result.new_plan_daily_rate == Decimal("0.82")

    def test_downgrade_can_leave_a_credit(self, proration):
        result = proration.calculate_immediate_change_proration(
            300, 10, datetime(2025, 1, 1), datetime(2026, 1, 1), datetime(2025, 1, 2), "monthly"
        )

        assert result.credit_amount == Decimal("299.18")
        assert result.net_amount == Decimal("-289.18")


class TestCancellationRefund:

    def test_refund_for_unused_days(self, proration):
        result = proration.calculate_cancellation_refund(30, PERIOD_START, PERIOD_END, datetime(2025, 1, 21))

        assert result.refund_days == 10
        assert result.total_days == 30
        assert result.daily_rate == Decimal("1.00")
        assert result.refund_amount == Decimal("10.00")

    def test_no_refund_after_period_end(self, proration):
        result = proration.calculate_cancellation_refund(30, PERIOD_START, PERIOD_END, datetime(2025, 2, 5))

        assert result.refund_days == 0
        assert result.refund_amount == Decimal("0.00")


class TestChangeTypeAndThreshold:

    @pytest.mark.parametrize("old_amount, new_amount, expected", [
        (30, 50, "upgrade"),
        (50, 30, "downgrade"),
        (30, 30, "sidegrade"),
        ("19.99", "19.990", "sidegrade"),
    ])
    def test_get_change_type(self, old_amount, new_amount, expected):
        assert ProrationService.get_change_type(old_amount, new_amount) == expected

    @pytest.mark.parametrize("net_amount, expected", [
        (Decimal("10.67"), True),
        (Decimal("-10.67"), True),
        (Decimal("1.00"), True),
        (Decimal("-1.00"), True),
        (Decimal("0.99"), False),
        (Decimal("-0.50"), False),
        (Decimal("0"), False),
    ])
    def test_should_apply_proration_default_threshold(self, proration, net_amount, expected):
        assert proration.should_apply_proration(net_amount) is expected

    def test_should_apply_proration_custom_threshold(self, proration):
        assert proration.should_apply_proration(Decimal("4.99"), threshold=5) is False
        assert ProrationService(threshold="0.01").should_apply_proration(Decimal("0.01")) is True


class TestDescriptions:

    def test_upgrade_description(self, proration):
        result = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, CHANGE_DATE)

        description = proration.generate_proration_description(result, "upgrade")

        assert "Credit for unused 16 days of previous plan: $16.00" in description
        assert "Charge for 16 days of new plan: $26.67" in description
        assert "Total due today: $10.67" in description

    def test_downgrade_description(self, proration):
        result = proration.calculate_proration(50, 30, PERIOD_START, PERIOD_END, CHANGE_DATE)

        description = proration.generate_proration_description(result, "downgrade")

        assert "Credit applied: $10.67" in description

    def test_no_charge_description(self, proration):
        result = proration.calculate_proration(30, 30, PERIOD_START, PERIOD_END, CHANGE_DATE)

        assert "No additional charge" in proration.generate_proration_description(result, "sidegrade")

    def test_policy_text(self, proration):
        policy = proration.get_proration_policy()

        assert policy.startswith("Proration Policy:")
        assert "Immediate changes" in policy

    def test_payload_is_camel_case_and_json_safe(self, proration):
        payload = proration.calculate_proration(30, 50, PERIOD_START, PERIOD_END, CHANGE_DATE).to_payload()

        assert payload["netAmount"] == 10.67
        assert payload["remainingDays"] == 16
        assert payload["nextBillingDate"] == "2025-01-31T00:00:00"


def test_round_currency_rounds_half_up():
    assert round_currency("2.675") == Decimal("2.68")
    assert round_currency(0.125) == Decimal("0.13")
    assert round_currency(Decimal("-2.675")) == Decimal("-2.68")
