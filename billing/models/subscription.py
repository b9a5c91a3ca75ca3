from sqlalchemy import Column, String, DateTime, Enum, Boolean, Numeric, JSON, Index
from sqlalchemy.orm import relationship
from billing.core.database import Base
from billing.core.timeutils import utcnow
import enum
import math


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_customer_status", "customer_id", "status"),
        Index("ix_subscriptions_renewal", "current_period_end", "status", "cancel_at_period_end"),
        Index("ix_subscriptions_trial_end", "status", "trial_end"),
    )

    id = Column(String, primary_key=True, index=True)
    customer_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    plan_name = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    billing_cycle = Column(Enum(BillingCycle), nullable=False)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING)

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)

    is_trial_used = Column(Boolean, default=False, nullable=False)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)

    # 'metadata' is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)  # holds lastProration after a plan change

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    history = relationship(
        "SubscriptionHistory",
        back_populates="subscription",
        order_by="SubscriptionHistory.created_at",
    )

    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def is_on_trial(self) -> bool:
        return self.status == SubscriptionStatus.TRIAL

    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def is_expired(self) -> bool:
        return self.status == SubscriptionStatus.EXPIRED

    def should_bill(self) -> bool:
        """Active or past-due subscriptions keep billing unless set to end with the period"""
        return (
            self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
            and not self.cancel_at_period_end
        )

    def days_until_renewal(self, now=None) -> int:
        now = now or utcnow()
        return math.ceil((self.current_period_end - now).total_seconds() / 86400)
