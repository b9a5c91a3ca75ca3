import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from billing.core.exceptions import BillingError
from billing.events.publisher import EventPublisher
from billing.events.types import EventTopics
from billing.models.subscription import SubscriptionStatus
from billing.services.payment_retry_manager import PaymentRetryManager
from billing.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class SubscriptionEventListener:
    """
    Reacts to payment events from other services.

    Messages may arrive as the full envelope ({eventType, data, ...}) or as
    the bare data payload. Handlers never raise to the transport: lifecycle
    conflicts are logged as warnings, anything else as errors.
    """

    def __init__(
        self,
        db: Session,
        subscriptions: SubscriptionService = None,
        retries: PaymentRetryManager = None,
        publisher: EventPublisher = None,
    ):
        self.subscriptions = subscriptions or SubscriptionService(db)
        self.retries = retries or PaymentRetryManager(db)
        self.publisher = publisher or EventPublisher(db)
        self.logger = logging.getLogger(__name__)
        self._handlers: Dict[str, Handler] = {
            EventTopics.PAYMENT_SUCCESS.value: self.handle_payment_success,
            EventTopics.SUBSCRIPTION_PAYMENT_SUCCESS.value: self.handle_payment_success,
            EventTopics.PAYMENT_FAILED.value: self.handle_payment_failed,
            EventTopics.SUBSCRIPTION_PAYMENT_FAILED.value: self.handle_payment_failed,
            EventTopics.INVOICE_CREATED.value: self.handle_invoice_created,
        }

    @property
    def topics(self) -> list[str]:
        return list(self._handlers)

    async def handle(self, topic: str, message: Dict[str, Any]) -> bool:
        """Dispatch one message; False when the topic is unknown or the handler failed"""
        handler = self._handlers.get(topic)
        if handler is None:
            self.logger.warning(f"handle: No handler for topic {topic}")
            return False

        data = message.get("data", message) if isinstance(message, dict) else {}
        self.logger.info(f"handle: Entry - topic: {topic}, event: {message.get('eventId', 'N/A')}")
        try:
            await handler(data)
        except Exception as e:
            self.logger.error(f"handle: Failure - topic: {topic}, error: {e}")
            return False

        self.logger.info(f"handle: Success - topic: {topic}")
        return True

    async def handle_payment_success(self, data: Dict[str, Any]):
        subscription_id = _as_id(data.get("subscriptionId"))
        payment_id = _as_id(data.get("paymentId"))
        self.logger.info(
            f"handle_payment_success: invoice: {data.get('invoiceId')}, "
            f"subscription: {subscription_id}, payment: {payment_id}"
        )

        if payment_id:
            self.retries.cancel_retry(payment_id)

        if not subscription_id:
            return

        try:
            subscription = self.subscriptions.get(subscription_id)
            if subscription.status == SubscriptionStatus.PENDING:
                result = self.subscriptions.activate(subscription_id)
            elif subscription.status == SubscriptionStatus.TRIAL:
                result = self.subscriptions.convert_trial_to_active(subscription_id)
            else:
                self.logger.info(
                    f"handle_payment_success: Subscription {subscription_id} is {subscription.status.value}, nothing to do"
                )
                return
        except BillingError as e:
            # Payment was still received; the subscription just could not move
            self.logger.warning(f"handle_payment_success: Could not activate subscription {subscription_id} - {e.message}")
            return

        await self.publisher.publish(result.events)

    async def handle_payment_failed(self, data: Dict[str, Any]):
        subscription_id = _as_id(data.get("subscriptionId"))
        payment_id = _as_id(data.get("paymentId"))
        invoice_id = _as_id(data.get("invoiceId"))
        reason = data.get("reason") or "unknown"
        self.logger.info(
            f"handle_payment_failed: invoice: {invoice_id}, subscription: {subscription_id}, reason: {reason}"
        )

        if not subscription_id:
            return

        try:
            subscription = self.subscriptions.get(subscription_id)
            if subscription.is_active():
                result = self.subscriptions.update_status(
                    subscription_id, SubscriptionStatus.PAST_DUE, f"Payment failed: {reason}"
                )
                await self.publisher.publish(result.events)
        except BillingError as e:
            self.logger.warning(f"handle_payment_failed: Could not mark subscription {subscription_id} past due - {e.message}")

        if payment_id and invoice_id:
            self.retries.schedule_retry(payment_id, invoice_id, subscription_id, reason)

    async def handle_invoice_created(self, data: Dict[str, Any]):
        self.logger.info(
            f"handle_invoice_created: invoice: {data.get('invoiceId')}, "
            f"number: {data.get('invoiceNumber')}, customer: {data.get('customerId')}"
        )


def _as_id(value: Any) -> Optional[str]:
    return str(value) if value is not None and value != "" else None
