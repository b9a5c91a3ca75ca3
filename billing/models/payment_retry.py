from sqlalchemy import Column, String, Integer, DateTime, Enum, Text, JSON, Index
from billing.core.database import Base
from billing.core.timeutils import utcnow
import enum


class RetryStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


TERMINAL_RETRY_STATUSES = (RetryStatus.SUCCEEDED, RetryStatus.EXHAUSTED, RetryStatus.CANCELLED)


class PaymentRetry(Base):
    __tablename__ = "payment_retries"
    __table_args__ = (
        Index("ix_payment_retries_due", "status", "next_retry_at"),
    )

    id = Column(String, primary_key=True, index=True)
    payment_id = Column(String, nullable=False, unique=True, index=True)
    invoice_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=7)
    status = Column(Enum(RetryStatus), nullable=False, default=RetryStatus.PENDING)
    first_failure_at = Column(DateTime, nullable=False)
    last_retry_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)  # set only while pending
    succeeded_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=False)
    last_error = Column(Text, nullable=True)
    retry_history = Column(JSON, nullable=False, default=list)  # [{attemptNumber, attemptedAt, success, error, delayMs}]
    meta = Column("metadata", JSON, nullable=True)  # {failureType, retryable, customerNotified, notificationsSent}
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RETRY_STATUSES
