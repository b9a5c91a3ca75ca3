import logging
import time
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from billing.clients.payment_client import PaymentClient
from billing.core.cache import get_cache
from billing.core.config import settings
from billing.core.exceptions import BillingError
from billing.core.redis_cache import RedisCache
from billing.events.publisher import EventPublisher
from billing.events.types import PAYMENT_SOURCE, DomainEvent, EventTopics, make_event
from billing.models.payment_retry import PaymentRetry, RetryStatus
from billing.repositories.outbox_repository import OutboxRepository
from billing.services.payment_retry_manager import PaymentRetryManager, RetryStatistics

logger = logging.getLogger(__name__)

BATCH_LOCK_KEY = "billing:payment-retry:batch"


class RetryBatchResult(BaseModel):
    processed: int = 0  # records this run attempted a payment for
    succeeded: int = 0
    failed: int = 0  # failed attempts, including the ones that exhausted the record
    exhausted: int = 0
    errors: int = 0  # records that blew up before an outcome was recorded
    skipped: int = 0  # records another worker claimed first
    duration_ms: int = 0


class PaymentRetryProcessor:
    """
    Batch driver for due payment retries.

    Only one batch runs per process at a time; the guard is shared by every
    instance. Across processes a Redis lock keeps batches from overlapping
    when Redis is reachable, and each record is still claimed with a
    conditional pending -> retrying update so no record is attempted twice
    even without the lock.
    """

    _is_processing = False

    def __init__(
        self,
        db: Session,
        manager: PaymentRetryManager = None,
        payment_client: PaymentClient = None,
        publisher: EventPublisher = None,
        cache: RedisCache = None,
    ):
        self.db = db
        self.manager = manager or PaymentRetryManager(db)
        self.payment_client = payment_client or PaymentClient()
        self.publisher = publisher or EventPublisher(db)
        self.outbox = OutboxRepository(db)
        self._cache = cache
        self.logger = logging.getLogger(__name__)

    @classmethod
    def is_processing(cls) -> bool:
        return cls._is_processing

    async def process_retries(self) -> RetryBatchResult:
        result = RetryBatchResult()

        if self._is_processing:
            self.logger.warning("process_retries: Already in progress, skipping")
            return result

        type(self)._is_processing = True
        started = time.monotonic()
        cache = self._cache or get_cache()
        lock_held = False

        try:
            if cache.ping():
                lock_held = cache.acquire_lock(BATCH_LOCK_KEY, timeout_seconds=settings.retry_lock_timeout_seconds)
                if not lock_held:
                    self.logger.warning("process_retries: Another worker holds the batch lock, skipping")
                    return result

            self.logger.info("process_retries: Entry")
            self.manager.release_stale_claims()
            due = self.manager.get_due_retries()

            for retry in due:
                retry_id = retry.id
                try:
                    outcome = await self._process_retry(retry)
                except Exception as e:
                    # One bad record must not take the rest of the batch down
                    result.errors += 1
                    self.logger.error(f"process_retries: Failure - retry: {retry_id}, error: {e}")
                    self.db.rollback()
                    self.manager.release(retry_id)
                    continue

                if outcome is None:
                    result.skipped += 1
                    continue

                result.processed += 1
                if outcome.status == RetryStatus.SUCCEEDED:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    if outcome.status == RetryStatus.EXHAUSTED:
                        result.exhausted += 1

            result.duration_ms = int((time.monotonic() - started) * 1000)
            self.logger.info(
                f"process_retries: Success - due: {len(due)}, processed: {result.processed}, "
                f"succeeded: {result.succeeded}, failed: {result.failed}, exhausted: {result.exhausted}, "
                f"errors: {result.errors}, skipped: {result.skipped}, took {result.duration_ms}ms"
            )
            return result
        finally:
            if lock_held:
                cache.release_lock(BATCH_LOCK_KEY)
            type(self)._is_processing = False

    async def _process_retry(self, retry: PaymentRetry) -> Optional[PaymentRetry]:
        """Attempt one record; None when the claim was lost"""
        if not self.manager.mark_processing(retry.id):
            return None

        attempt_number = retry.attempt_number + 1
        self.logger.info(
            f"_process_retry: Entry - subscription: {retry.subscription_id}, invoice: {retry.invoice_id} "
            f"(attempt {attempt_number}/{retry.max_attempts})"
        )

        error = None
        try:
            await self.payment_client.reinitiate_payment(retry.invoice_id, attempt_number)
        except BillingError as e:
            error = e.message
            self.logger.warning(f"_process_retry: Attempt failed for subscription {retry.subscription_id} - {error}")

        updated = self.manager.record_attempt(retry.id, success=error is None, error=error, commit=False)

        events = self._outcome_events(updated)
        if events:
            self.outbox.add_events(events)
        self.db.commit()
        self.db.refresh(updated)

        if events:
            await self.publisher.publish(events)
        return updated

    @staticmethod
    def _outcome_events(retry: PaymentRetry) -> list[DomainEvent]:
        payload = {
            'paymentId': retry.payment_id,
            'invoiceId': retry.invoice_id,
            'subscriptionId': retry.subscription_id,
            'attempts': retry.attempt_number,
            'maxAttempts': retry.max_attempts,
            'firstFailureAt': retry.first_failure_at,
        }
        if retry.status == RetryStatus.SUCCEEDED:
            return [make_event(
                EventTopics.PAYMENT_RETRY_SUCCEEDED,
                {**payload, 'succeededAt': retry.succeeded_at},
                source=PAYMENT_SOURCE,
            )]
        if retry.status == RetryStatus.EXHAUSTED:
            return [make_event(
                EventTopics.PAYMENT_RETRY_EXHAUSTED,
                {**payload, 'failureReason': retry.failure_reason, 'lastError': retry.last_error},
                source=PAYMENT_SOURCE,
            )]
        return []

    def cleanup_old_retries(self, older_than_days: int = None) -> int:
        days = older_than_days if older_than_days is not None else settings.retry_retention_days
        try:
            return self.manager.cleanup_old_retries(days)
        except Exception as e:
            self.logger.error(f"cleanup_old_retries: Failure - {e}")
            self.db.rollback()
            raise

    def log_statistics(self) -> RetryStatistics:
        stats = self.manager.get_statistics()
        self.logger.info(
            f"Payment retry statistics - total: {stats.total}, pending: {stats.pending}, "
            f"retrying: {stats.retrying}, succeeded: {stats.succeeded}, exhausted: {stats.exhausted}, "
            f"cancelled: {stats.cancelled}, success rate: {stats.success_rate:.2f}%"
        )
        return stats
