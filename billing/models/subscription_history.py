from sqlalchemy import Column, String, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from billing.core.database import Base
from billing.core.timeutils import utcnow


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id = Column(String, primary_key=True, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # 'created', 'cancelled', 'renewed', 'plan_changed', 'status_changed', 'trial_ended'
    previous_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    previous_plan_id = Column(String, nullable=True)
    new_plan_id = Column(String, nullable=True)
    details = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="history")
