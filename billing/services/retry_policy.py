"""
Payment retry policy: exponential backoff, failure classification and
grace-period arithmetic.

Default schedule (delay after the previous attempt):
    1h, 2h, 4h, 8h, 16h, 32h, then capped at 3 days
Automatic retries stop after max_attempts or once the grace period
(15 days from the first failure) has elapsed, whichever comes first.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel

from billing.core.config import settings
from billing.core.timeutils import days_since, utcnow

logger = logging.getLogger(__name__)

PERMANENT_FAILURE_MARKERS = ("card_expired", "invalid_card", "card_declined", "invalid_account")
TEMPORARY_FAILURE_MARKERS = ("insufficient_funds", "temporary_failure", "processing_error", "timeout", "gateway_error")


@dataclass(frozen=True)
class RetryPolicyConfig:
    max_attempts: int = 7
    initial_delay_seconds: float = 60 * 60
    max_delay_seconds: float = 3 * 24 * 60 * 60
    backoff_multiplier: float = 2
    grace_period_days: int = 15

    @classmethod
    def from_settings(cls) -> "RetryPolicyConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            grace_period_days=settings.retry_grace_period_days,
        )


class FailureAnalysis(BaseModel):
    type: str  # permanent, temporary or unknown
    retryable: bool
    message: str


class RetryStatusReport(BaseModel):
    subscription_id: str
    invoice_id: str
    attempt: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    failure_reason: str
    can_retry: bool
    is_in_grace_period: bool
    days_until_expiration: int


class RetryPolicy:
    def __init__(self, config: RetryPolicyConfig = None):
        self.config = config or RetryPolicyConfig.from_settings()
        self.logger = logging.getLogger(__name__)

    def calculate_retry_delay(self, attempt_number: int) -> float:
        """Backoff delay in seconds before the given (1-based) attempt"""
        if attempt_number < 1:
            raise ValueError("Attempt number must be >= 1")

        delay = self.config.initial_delay_seconds * self.config.backoff_multiplier ** (attempt_number - 1)
        return min(delay, self.config.max_delay_seconds)

    def calculate_retry_delay_ms(self, attempt_number: int) -> int:
        return int(self.calculate_retry_delay(attempt_number) * 1000)

    def calculate_next_retry_date(self, attempt_number: int, from_date: datetime = None) -> datetime:
        from_date = from_date or utcnow()
        return from_date + timedelta(seconds=self.calculate_retry_delay(attempt_number))

    def get_retry_schedule(self, first_failure_at: datetime = None) -> List[datetime]:
        """Absolute date of every attempt when each one fails in turn"""
        current = first_failure_at or utcnow()
        schedule = []
        for attempt in range(1, self.config.max_attempts + 1):
            current = self.calculate_next_retry_date(attempt, current)
            schedule.append(current)
        return schedule

    def can_retry(self, attempt: int, first_failure_at: datetime, now: datetime = None) -> bool:
        if attempt >= self.config.max_attempts:
            return False
        return self.is_in_grace_period(first_failure_at, now)

    def is_in_grace_period(self, first_failure_at: datetime, now: datetime = None) -> bool:
        return days_since(first_failure_at, now) < self.config.grace_period_days

    def get_days_until_expiration(self, first_failure_at: datetime, now: datetime = None) -> int:
        remaining = self.config.grace_period_days - days_since(first_failure_at, now)
        return max(0, math.ceil(remaining))

    def analyze_failure(self, failure_reason: str) -> FailureAnalysis:
        """
        Best-effort classification of a gateway failure reason.

        Card and account problems need the customer to act and are never
        retried automatically. Anything unrecognised is treated as retryable.
        """
        reason = (failure_reason or "").lower()

        if any(marker in reason for marker in PERMANENT_FAILURE_MARKERS):
            return FailureAnalysis(
                type="permanent",
                retryable=False,
                message="Payment method invalid - customer must update payment method",
            )

        if any(marker in reason for marker in TEMPORARY_FAILURE_MARKERS):
            return FailureAnalysis(
                type="temporary",
                retryable=True,
                message="Temporary payment failure - will retry automatically",
            )

        return FailureAnalysis(type="unknown", retryable=True, message="Payment failed - will retry automatically")

    def get_retry_status(
        self,
        subscription_id: str,
        invoice_id: str,
        attempt: int,
        first_failure_at: datetime,
        failure_reason: str,
        now: datetime = None,
    ) -> RetryStatusReport:
        can_retry = self.can_retry(attempt, first_failure_at, now)

        last_retry_at = None
        if attempt > 0:
            schedule = self.get_retry_schedule(first_failure_at)
            if attempt <= len(schedule):
                last_retry_at = schedule[attempt - 1]

        next_retry_at = None
        if can_retry:
            next_retry_at = self.calculate_next_retry_date(attempt + 1, last_retry_at or first_failure_at)

        return RetryStatusReport(
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            attempt=attempt,
            max_attempts=self.config.max_attempts,
            next_retry_at=next_retry_at,
            last_retry_at=last_retry_at,
            failure_reason=failure_reason,
            can_retry=can_retry,
            is_in_grace_period=self.is_in_grace_period(first_failure_at, now),
            days_until_expiration=self.get_days_until_expiration(first_failure_at, now),
        )

    def get_retry_description(self, attempt: int) -> str:
        if attempt >= self.config.max_attempts:
            return "All retry attempts exhausted. Please update your payment method."

        next_delay = format_duration(self.calculate_retry_delay(attempt + 1))
        return (
            f"We'll automatically retry your payment in {next_delay}. "
            f"Attempt {attempt + 1} of {self.config.max_attempts}."
        )

    def generate_customer_message(self, status: RetryStatusReport) -> str:
        if not status.can_retry:
            if status.attempt >= status.max_attempts:
                return (
                    f"Your subscription payment has failed {status.max_attempts} times. "
                    "Please update your payment method to continue your service."
                )
            return "Your subscription payment has failed and cannot be retried. Please update your payment method."

        parts = [f"Your payment failed: {status.failure_reason}"]
        if status.next_retry_at:
            parts.append(
                f"We'll automatically retry on {status.next_retry_at:%Y-%m-%d} at {status.next_retry_at:%H:%M} UTC."
            )
        parts.append(f"Attempt {status.attempt} of {status.max_attempts}.")
        if status.days_until_expiration > 0:
            parts.append(
                f"Your service will continue for {status.days_until_expiration} more days "
                "while we attempt to process payment."
            )
        return " ".join(parts)

    def get_retry_policy(self) -> str:
        schedule_lines = "\n  ".join(
            f"Attempt {attempt}: {format_duration(self.calculate_retry_delay(attempt))} after previous attempt"
            for attempt in range(1, self.config.max_attempts + 1)
        )
        total_window = sum(self.calculate_retry_delay(attempt) for attempt in range(1, self.config.max_attempts + 1))

        return (
            "Payment Retry Policy:\n"
            f"- Maximum {self.config.max_attempts} automatic retry attempts\n"
            "- Exponential backoff strategy\n"
            f"- {self.config.grace_period_days} day grace period before expiration\n"
            "\n"
            "Retry Schedule:\n"
            f"  {schedule_lines}\n"
            "\n"
            f"Total time window: ~{format_duration(total_window)}"
        )


def format_duration(seconds: float) -> str:
    """Largest whole unit, e.g. 7200 -> '2 hours'"""
    seconds = int(seconds)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return f"{seconds} second{'s' if seconds > 1 else ''}"
