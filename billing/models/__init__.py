from billing.models.subscription import Subscription, SubscriptionStatus, BillingCycle
from billing.models.subscription_history import SubscriptionHistory
from billing.models.payment_retry import PaymentRetry, RetryStatus, TERMINAL_RETRY_STATUSES
from billing.models.outbox_event import OutboxEvent

__all__ = ["Subscription", "SubscriptionStatus", "BillingCycle", "SubscriptionHistory", "PaymentRetry", "RetryStatus", "TERMINAL_RETRY_STATUSES", "OutboxEvent"]
