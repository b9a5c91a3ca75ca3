from datetime import datetime
from typing import Optional

from sqlalchemy import func

from billing.models.subscription import Subscription, SubscriptionStatus
from billing.models.subscription_history import SubscriptionHistory
from billing.repositories.base import SqlAlchemyRepository


class SubscriptionRepository(SqlAlchemyRepository[Subscription]):
    model = Subscription

    def find_open_for_customer(self, customer_id: str) -> Optional[Subscription]:
        """ACTIVE subscription for the customer if any, otherwise a PENDING one"""
        candidates = self.db.query(Subscription).filter(
            Subscription.customer_id == customer_id,
            Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING])
        ).order_by(Subscription.created_at.desc()).all()

        for subscription in candidates:
            if subscription.status == SubscriptionStatus.ACTIVE:
                return subscription
        return candidates[0] if candidates else None

    def list_by_customer(self, customer_id: str) -> list[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.customer_id == customer_id
        ).order_by(Subscription.created_at.desc()).all()

    def list_all(self) -> list[Subscription]:
        return self.db.query(Subscription).order_by(Subscription.created_at.desc()).all()

    def find_expired_trials(self, now: datetime) -> list[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.TRIAL,
            Subscription.trial_end <= now
        ).all()

    def find_due_for_renewal(self, cutoff: datetime) -> list[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.cancel_at_period_end == False,  # noqa: E712
            Subscription.current_period_end <= cutoff
        ).order_by(Subscription.current_period_end).all()

    def count_by_status(self) -> dict[SubscriptionStatus, int]:
        rows = self.db.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status).all()
        return {status: count for status, count in rows}


class SubscriptionHistoryRepository(SqlAlchemyRepository[SubscriptionHistory]):
    model = SubscriptionHistory

    def list_for_subscription(self, subscription_id: str) -> list[SubscriptionHistory]:
        return self.db.query(SubscriptionHistory).filter(
            SubscriptionHistory.subscription_id == subscription_id
        ).order_by(SubscriptionHistory.created_at).all()
