import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field

from billing.core.timeutils import utcnow

SUBSCRIPTION_SOURCE = "subscription-svc"
PAYMENT_SOURCE = "payment-svc"
EVENT_SCHEMA_VERSION = "1.0"


class EventTopics(str, Enum):
    """Event topics produced and consumed by the billing core"""

    # Emitted
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_TRIAL_STARTED = "subscription.trial.started"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan.changed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial.ended"
    INVOICE_CREATED = "invoice.created"
    BILLING_CREDIT_APPLIED = "billing.credit.applied"
    PAYMENT_RETRY_SUCCEEDED = "payment.retry.succeeded"
    PAYMENT_RETRY_EXHAUSTED = "payment.retry.exhausted"

    # Consumed
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_PAYMENT_SUCCESS = "subscription.payment.success"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment.failed"


class DomainEvent(BaseModel):
    """Envelope for an outbound event; data carries the operation-specific payload"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = SUBSCRIPTION_SOURCE
    version: str = EVENT_SCHEMA_VERSION
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        """Wire format (camelCase envelope, JSON-safe values)"""
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "version": self.version,
            "data": to_jsonable(self.data),
        }


def make_event(topic: EventTopics, data: Dict[str, Any], source: str = SUBSCRIPTION_SOURCE) -> DomainEvent:
    return DomainEvent(event_type=topic.value, source=source, data=data)


def to_jsonable(value: Any) -> Any:
    """Convert datetimes, decimals and enums inside a payload to JSON-safe values"""
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value
