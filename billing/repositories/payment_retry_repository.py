from datetime import datetime
from typing import Optional

from sqlalchemy import func

from billing.models.payment_retry import PaymentRetry, RetryStatus, TERMINAL_RETRY_STATUSES
from billing.repositories.base import SqlAlchemyRepository


class PaymentRetryRepository(SqlAlchemyRepository[PaymentRetry]):
    model = PaymentRetry

    def find_by_payment_id(self, payment_id: str) -> Optional[PaymentRetry]:
        return self.db.query(PaymentRetry).filter(PaymentRetry.payment_id == payment_id).first()

    def find_due(self, now: datetime) -> list[PaymentRetry]:
        """Pending retries whose next attempt is due, oldest first"""
        return self.db.query(PaymentRetry).filter(
            PaymentRetry.status == RetryStatus.PENDING,
            PaymentRetry.next_retry_at <= now
        ).order_by(PaymentRetry.next_retry_at.asc()).all()

    def list_by_subscription(self, subscription_id: str) -> list[PaymentRetry]:
        return self.db.query(PaymentRetry).filter(
            PaymentRetry.subscription_id == subscription_id
        ).order_by(PaymentRetry.created_at.desc()).all()

    def claim(self, retry_id: str, now: datetime) -> bool:
        """
        Conditionally move a retry from pending to retrying.

        The WHERE clause on status makes this a compare-and-swap at the row
        level, so only one worker across replicas wins a given record.
        next_retry_at is cleared while the claim is held; updated_at marks
        when the claim was taken.
        """
        updated = self.db.query(PaymentRetry).filter(
            PaymentRetry.id == retry_id,
            PaymentRetry.status == RetryStatus.PENDING
        ).update(
            {"status": RetryStatus.RETRYING, "next_retry_at": None, "updated_at": now},
            synchronize_session="fetch"
        )
        return updated == 1

    def count_by_status(self) -> dict[RetryStatus, int]:
        rows = self.db.query(PaymentRetry.status, func.count(PaymentRetry.id)).group_by(PaymentRetry.status).all()
        return {status: count for status, count in rows}

    def delete_terminal_older_than(self, cutoff: datetime) -> int:
        return self.db.query(PaymentRetry).filter(
            PaymentRetry.created_at < cutoff,
            PaymentRetry.status.in_(TERMINAL_RETRY_STATUSES)
        ).delete(synchronize_session=False)

    def release(self, retry_id: str, now: datetime) -> bool:
        """Hand a claimed retry back to the pending pool, due immediately"""
        updated = self.db.query(PaymentRetry).filter(
            PaymentRetry.id == retry_id,
            PaymentRetry.status == RetryStatus.RETRYING
        ).update(
            {"status": RetryStatus.PENDING, "next_retry_at": now, "updated_at": now},
            synchronize_session="fetch"
        )
        return updated == 1

    def release_stale(self, claimed_before: datetime, now: datetime) -> int:
        """Return claims abandoned by a dead worker to the pending pool"""
        return self.db.query(PaymentRetry).filter(
            PaymentRetry.status == RetryStatus.RETRYING,
            PaymentRetry.updated_at < claimed_before
        ).update(
            {"status": RetryStatus.PENDING, "next_retry_at": now, "updated_at": now},
            synchronize_session="fetch"
        )
