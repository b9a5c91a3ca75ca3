import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.exceptions import InvalidStateError, NotFoundError
from billing.core.timeutils import utcnow
from billing.models.payment_retry import PaymentRetry, RetryStatus
from billing.repositories.payment_retry_repository import PaymentRetryRepository
from billing.services.analytics_service import AnalyticsService
from billing.services.retry_policy import RetryPolicy, RetryStatusReport

logger = logging.getLogger(__name__)


class RetryStatistics(BaseModel):
    total: int
    pending: int
    retrying: int
    succeeded: int
    exhausted: int
    cancelled: int
    success_rate: float  # percent of all records that ended in success


class PaymentRetryManager:
    """
    Owns the lifecycle of PaymentRetry records.

    pending -> retrying -> succeeded | pending (rescheduled) | exhausted
    Any non-terminal record can be cancelled. Terminal records are never
    mutated again.
    """

    def __init__(self, db: Session, policy: RetryPolicy = None, repository: PaymentRetryRepository = None):
        self.db = db
        self.retries = repository or PaymentRetryRepository(db)
        self.policy = policy or RetryPolicy()
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def schedule_retry(self, payment_id: str, invoice_id: str, subscription_id: str, failure_reason: str) -> PaymentRetry:
        """
        Open a retry campaign for a failed payment.

        Idempotent on payment_id: an existing record is returned unchanged.
        Non-retryable failures are recorded with no next_retry_at, so the
        processor never picks them up.
        """
        self.logger.info(f"schedule_retry: Entry - payment: {payment_id}, invoice: {invoice_id}, reason: {failure_reason}")

        try:
            existing = self.retries.find_by_payment_id(payment_id)
            if existing:
                self.logger.warning(f"schedule_retry: Retry already exists for payment {payment_id}")
                return existing

            analysis = self.policy.analyze_failure(failure_reason)
            first_failure_at = utcnow()
            next_retry_at = self.policy.calculate_next_retry_date(1, first_failure_at) if analysis.retryable else None

            retry = PaymentRetry(
                id=str(uuid.uuid4()),
                payment_id=payment_id,
                invoice_id=invoice_id,
                subscription_id=subscription_id,
                attempt_number=0,
                max_attempts=self.policy.config.max_attempts,
                status=RetryStatus.PENDING,
                first_failure_at=first_failure_at,
                next_retry_at=next_retry_at,
                failure_reason=failure_reason,
                retry_history=[],
                meta={
                    'failureType': analysis.type,
                    'retryable': analysis.retryable,
                    'customerNotified': False,
                    'notificationsSent': 0,
                },
            )

            try:
                self.retries.save(retry)
                self.db.commit()
            except IntegrityError:
                # Another worker opened the campaign between our lookup and insert
                self.db.rollback()
                existing = self.retries.find_by_payment_id(payment_id)
                if existing is None:
                    raise
                self.logger.warning(f"schedule_retry: Lost insert race for payment {payment_id}, returning existing")
                return existing

            self.db.refresh(retry)
            self.analytics.log_success(
                action='schedule_retry',
                subject_id=payment_id,
                parameters={'failure_type': analysis.type, 'retryable': analysis.retryable}
            )
            self.logger.info(
                f"schedule_retry: Success - payment: {payment_id}, type: {analysis.type}, "
                f"next attempt: {next_retry_at.isoformat() if next_retry_at else 'N/A'}"
            )
            return retry
        except Exception as e:
            self._fail('schedule_retry', payment_id, e)
            raise

    def record_attempt(self, retry_id: str, success: bool, error: str = None, commit: bool = True) -> PaymentRetry:
        """
        Apply the outcome of one payment attempt.

        A failed attempt that can still be retried is rescheduled at
        attempt time + delay(next attempt), so the gap is measured from this
        attempt rather than from first_failure_at.

        With commit=False the change is only flushed, so the caller can stage
        outcome events in the same transaction before committing.
        """
        self.logger.info(f"record_attempt: Entry - retry: {retry_id}, success: {success}")

        retry = self.retries.find_by_id(retry_id)
        if not retry:
            raise NotFoundError(f"Retry record {retry_id} not found", context={"retry_id": retry_id})
        if retry.is_terminal():
            raise InvalidStateError(
                f"Retry record {retry_id} is already {retry.status.value}",
                context={"retry_id": retry_id, "status": retry.status.value},
            )

        attempt_number = retry.attempt_number + 1
        now = utcnow()

        retry.retry_history = [*(retry.retry_history or []), {
            'attemptNumber': attempt_number,
            'attemptedAt': now.isoformat(),
            'success': success,
            'error': error,
            'delayMs': self.policy.calculate_retry_delay_ms(attempt_number),
        }]
        retry.attempt_number = attempt_number
        retry.last_retry_at = now
        retry.last_error = error

        if success:
            retry.status = RetryStatus.SUCCEEDED
            retry.succeeded_at = now
            retry.next_retry_at = None
            self.logger.info(
                f"record_attempt: Success - payment {retry.payment_id} recovered "
                f"(attempt {attempt_number}/{retry.max_attempts})"
            )
        elif attempt_number < retry.max_attempts and self.policy.can_retry(attempt_number, retry.first_failure_at, now):
            retry.status = RetryStatus.PENDING
            retry.next_retry_at = self.policy.calculate_next_retry_date(attempt_number + 1, now)
            self.logger.warning(
                f"record_attempt: Attempt failed for payment {retry.payment_id} "
                f"(attempt {attempt_number}/{retry.max_attempts}) - next retry: {retry.next_retry_at.isoformat()}"
            )
        else:
            retry.status = RetryStatus.EXHAUSTED
            retry.next_retry_at = None
            self.logger.error(
                f"record_attempt: Retries exhausted for payment {retry.payment_id} after {attempt_number} attempts"
            )

        self.retries.save(retry)
        if commit:
            self.db.commit()
            self.db.refresh(retry)

        self.analytics.log_success(
            action='payment_retry_attempt',
            subject_id=retry.payment_id,
            parameters={'attempt': attempt_number, 'success': success, 'status': retry.status.value}
        )
        return retry

    def get_due_retries(self, now: datetime = None) -> list[PaymentRetry]:
        retries = self.retries.find_due(now or utcnow())
        self.logger.info(f"get_due_retries: Found {len(retries)} retries due for processing")
        return retries

    def mark_processing(self, retry_id: str) -> bool:
        """Claim a pending retry for this worker; False when someone else got it first"""
        claimed = self.retries.claim(retry_id, utcnow())
        self.db.commit()
        if not claimed:
            self.logger.info(f"mark_processing: Retry {retry_id} already claimed or no longer pending")
        return claimed

    def release(self, retry_id: str) -> bool:
        released = self.retries.release(retry_id, utcnow())
        self.db.commit()
        return released

    def release_stale_claims(self, older_than_seconds: int = None) -> int:
        """Put back claims held longer than the batch lock timeout, e.g. after a worker crash"""
        seconds = older_than_seconds if older_than_seconds is not None else settings.retry_lock_timeout_seconds
        now = utcnow()
        released = self.retries.release_stale(now - timedelta(seconds=seconds), now)
        self.db.commit()
        if released:
            self.logger.warning(f"release_stale_claims: Released {released} claims older than {seconds}s")
        return released

    def cancel_retry(self, payment_id: str) -> Optional[PaymentRetry]:
        self.logger.info(f"cancel_retry: Entry - payment: {payment_id}")

        retry = self.retries.find_by_payment_id(payment_id)
        if not retry:
            return None
        if retry.is_terminal():
            self.logger.info(f"cancel_retry: Retry for payment {payment_id} already {retry.status.value}")
            return retry

        retry.status = RetryStatus.CANCELLED
        retry.next_retry_at = None
        self.retries.save(retry)
        self.db.commit()
        self.db.refresh(retry)

        self.logger.info(f"cancel_retry: Success - payment: {payment_id}")
        return retry

    def get_retry(self, payment_id: str) -> PaymentRetry:
        retry = self.retries.find_by_payment_id(payment_id)
        if not retry:
            raise NotFoundError(f"No retry record for payment {payment_id}", context={"payment_id": payment_id})
        return retry

    def get_retry_status(self, payment_id: str) -> Optional[RetryStatusReport]:
        retry = self.retries.find_by_payment_id(payment_id)
        if not retry:
            return None

        report = self.policy.get_retry_status(
            retry.subscription_id,
            retry.invoice_id,
            retry.attempt_number,
            retry.first_failure_at,
            retry.failure_reason,
        )
        # Persisted timestamps win over the projected schedule
        return report.model_copy(update={
            'last_retry_at': retry.last_retry_at,
            'next_retry_at': retry.next_retry_at,
            'can_retry': report.can_retry and retry.status == RetryStatus.PENDING and retry.next_retry_at is not None,
        })

    def get_subscription_retries(self, subscription_id: str) -> list[PaymentRetry]:
        return self.retries.list_by_subscription(subscription_id)

    def get_statistics(self) -> RetryStatistics:
        counts = self.retries.count_by_status()
        total = sum(counts.values())
        succeeded = counts.get(RetryStatus.SUCCEEDED, 0)

        return RetryStatistics(
            total=total,
            pending=counts.get(RetryStatus.PENDING, 0),
            retrying=counts.get(RetryStatus.RETRYING, 0),
            succeeded=succeeded,
            exhausted=counts.get(RetryStatus.EXHAUSTED, 0),
            cancelled=counts.get(RetryStatus.CANCELLED, 0),
            success_rate=round(succeeded / total * 100, 2) if total else 0.0,
        )

    def cleanup_old_retries(self, older_than_days: int = 90) -> int:
        """Delete terminal records created more than older_than_days ago"""
        self.logger.info(f"cleanup_old_retries: Entry - older than {older_than_days} days")

        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = self.retries.delete_terminal_older_than(cutoff)
        self.db.commit()

        self.logger.info(f"cleanup_old_retries: Success - deleted {deleted} records")
        return deleted

    def _fail(self, action: str, subject_id: str, error: Exception):
        self.db.rollback()
        self.analytics.log_failure(action=action, error=str(error), subject_id=subject_id)
        self.logger.error(f"{action}: Failure - {error}")
