from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from billing.core.database import get_db
from billing.core.exceptions import BillingError
from billing.events.publisher import EventPublisher
from billing.notifier.event_listener import SubscriptionEventListener
from billing.services.payment_retry_manager import PaymentRetryManager
from billing.services.payment_retry_processor import PaymentRetryProcessor
from billing.services.subscription_service import SubscriptionService


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    return SubscriptionService(db)


def get_event_publisher(db: Session = Depends(get_db)) -> EventPublisher:
    return EventPublisher(db)


def get_retry_manager(db: Session = Depends(get_db)) -> PaymentRetryManager:
    return PaymentRetryManager(db)


def get_retry_processor(db: Session = Depends(get_db)) -> PaymentRetryProcessor:
    return PaymentRetryProcessor(db)


def get_event_listener(db: Session = Depends(get_db)) -> SubscriptionEventListener:
    return SubscriptionEventListener(db)


def http_error(error: BillingError) -> HTTPException:
    """Translate a billing error into the HTTP response it maps to"""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
