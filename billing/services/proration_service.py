"""
Proration calculations for mid-cycle plan changes and cancellations.

All money is handled as Decimal. Daily rates are derived from the whole
period length in days, and every currency figure is rounded to cents
(half-up) before it is returned. The net amount is the difference of the
rounded charge and credit, so the three figures always reconcile exactly.
"""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from pydantic import BaseModel

from billing.core.exceptions import ProrationValidationError
from billing.core.timeutils import add_billing_cycle, days_between
from billing.models.subscription import BillingCycle

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
APPROX_DAYS_PER_CYCLE = {BillingCycle.MONTHLY: 30, BillingCycle.YEARLY: 365}

Amount = Union[Decimal, int, float, str]


def to_decimal(value: Amount) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 19.99 from dragging binary noise along
    return Decimal(str(value))


def round_currency(value: Amount) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class ProrationResult(BaseModel):
    credit_amount: Decimal
    credit_days: int
    charge_amount: Decimal
    charge_days: int
    net_amount: Decimal  # positive: customer owes, negative: customer is credited
    old_plan_daily_rate: Decimal
    new_plan_daily_rate: Decimal
    remaining_days: int
    total_days_in_period: int
    effective_date: datetime
    next_billing_date: datetime

    def to_payload(self) -> dict:
        """camelCase, JSON-safe snapshot for metadata columns and events"""
        return {
            "creditAmount": float(self.credit_amount),
            "creditDays": self.credit_days,
            "chargeAmount": float(self.charge_amount),
            "chargeDays": self.charge_days,
            "netAmount": float(self.net_amount),
            "oldPlanDailyRate": float(self.old_plan_daily_rate),
            "newPlanDailyRate": float(self.new_plan_daily_rate),
            "remainingDays": self.remaining_days,
            "totalDaysInPeriod": self.total_days_in_period,
            "effectiveDate": self.effective_date.isoformat(),
            "nextBillingDate": self.next_billing_date.isoformat(),
        }


class RefundResult(BaseModel):
    refund_amount: Decimal
    refund_days: int
    total_days: int
    daily_rate: Decimal


class ProrationService:
    """Stateless calculator; safe to share between requests"""

    def __init__(self, threshold: Amount = Decimal("1.0")):
        self.threshold = to_decimal(threshold)

    def calculate_proration(
        self,
        old_amount: Amount,
        new_amount: Amount,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
        billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    ) -> ProrationResult:
        """
        Prorate a plan change that keeps the current billing period.

        The old plan's unused days are credited and the new plan is charged
        for the same days. Raises ProrationValidationError when change_date
        is outside [period_start, period_end].
        """
        if change_date < period_start or change_date > period_end:
            raise ProrationValidationError(
                "Change date must be within current billing period",
                context={
                    "change_date": change_date.isoformat(),
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )

        total_days = days_between(period_start, period_end)
        remaining_days = days_between(change_date, period_end)

        old_daily_rate = self._daily_rate(old_amount, total_days)
        new_daily_rate = self._daily_rate(new_amount, total_days)

        credit_amount = round_currency(old_daily_rate * remaining_days)
        charge_amount = round_currency(new_daily_rate * remaining_days)

        return ProrationResult(
            credit_amount=credit_amount,
            credit_days=remaining_days,
            charge_amount=charge_amount,
            charge_days=remaining_days,
            net_amount=charge_amount - credit_amount,
            old_plan_daily_rate=round_currency(old_daily_rate),
            new_plan_daily_rate=round_currency(new_daily_rate),
            remaining_days=remaining_days,
            total_days_in_period=total_days,
            effective_date=change_date,
            next_billing_date=period_end,
        )

    def calculate_immediate_change_proration(
        self,
        old_amount: Amount,
        new_amount: Amount,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
        billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    ) -> ProrationResult:
        """
        Prorate a plan change that starts a fresh billing period at change_date.

        The old plan's unused days are credited; the new plan is charged in
        full and the next billing date moves one cycle past change_date.
        """
        cycle = BillingCycle(billing_cycle)
        total_days = days_between(period_start, period_end)
        remaining_days = days_between(change_date, period_end)

        old_daily_rate = self._daily_rate(old_amount, total_days)
        credit_amount = round_currency(old_daily_rate * remaining_days)
        charge_amount = round_currency(new_amount)
        approx_days = APPROX_DAYS_PER_CYCLE[cycle]

        return ProrationResult(
            credit_amount=credit_amount,
            credit_days=remaining_days,
            charge_amount=charge_amount,
            charge_days=approx_days,
            net_amount=charge_amount - credit_amount,
            old_plan_daily_rate=round_currency(old_daily_rate),
            new_plan_daily_rate=round_currency(to_decimal(new_amount) / approx_days),
            remaining_days=remaining_days,
            total_days_in_period=total_days,
            effective_date=change_date,
            next_billing_date=add_billing_cycle(change_date, cycle),
        )

    def calculate_cancellation_refund(
        self,
        amount: Amount,
        period_start: datetime,
        period_end: datetime,
        cancellation_date: datetime,
    ) -> RefundResult:
        """Unused portion of the current period, at the same daily rate"""
        total_days = days_between(period_start, period_end)
        refund_days = days_between(cancellation_date, period_end)
        daily_rate = self._daily_rate(amount, total_days)

        return RefundResult(
            refund_amount=round_currency(daily_rate * refund_days),
            refund_days=refund_days,
            total_days=total_days,
            daily_rate=round_currency(daily_rate),
        )

    @staticmethod
    def get_change_type(old_amount: Amount, new_amount: Amount) -> str:
        old_value, new_value = to_decimal(old_amount), to_decimal(new_amount)
        if new_value > old_value:
            return "upgrade"
        if new_value < old_value:
            return "downgrade"
        return "sidegrade"

    def should_apply_proration(self, net_amount: Amount, threshold: Amount = None) -> bool:
        """Suppress reconciliation entries too small to be worth billing"""
        limit = self.threshold if threshold is None else to_decimal(threshold)
        return abs(to_decimal(net_amount)) >= limit

    @staticmethod
    def generate_proration_description(result: ProrationResult, change_type: str) -> str:
        parts = []

        if result.credit_amount > 0:
            parts.append(
                f"Credit for unused {result.credit_days} days of previous plan: ${result.credit_amount:.2f}"
            )

        parts.append(f"Charge for {result.charge_days} days of new plan: ${result.charge_amount:.2f}")

        if result.net_amount > 0:
            parts.append(f"\nTotal due today: ${result.net_amount:.2f}")
        elif result.net_amount < 0:
            parts.append(f"\nCredit applied: ${abs(result.net_amount):.2f}")
        else:
            parts.append("\nNo additional charge")

        return "\n".join(parts)

    @staticmethod
    def get_proration_policy() -> str:
        return (
            "Proration Policy:\n"
            "- Plan upgrades: You'll be charged the prorated difference for the remaining period\n"
            "- Plan downgrades: Credit will be applied to your account for unused time\n"
            "- Immediate changes: New plan starts immediately with credit for unused time\n"
            "- Period-end changes: New plan starts at the end of current billing period\n"
            "- Cancellations: Unused time may be refunded based on policy"
        )

    @staticmethod
    def _daily_rate(amount: Amount, total_days: int) -> Decimal:
        if total_days <= 0:
            return Decimal("0")
        return to_decimal(amount) / total_days
