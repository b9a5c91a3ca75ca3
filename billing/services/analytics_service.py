import logging

from billing.core.config import settings
from billing.core.firebase import get_firestore_client
from billing.core.timeutils import utcnow

logger = logging.getLogger(__name__)


class AnalyticsService:
    def __init__(self):
        self.enabled = settings.analytics_enabled
        # Firestore is only touched when analytics is switched on
        self.db = get_firestore_client() if self.enabled else None
        self.events_collection = 'billing_events'
        self.errors_collection = 'billing_errors'
        self.logger = logging.getLogger(__name__)

    def log_event(
        self,
        event_name: str,
        subject_id: str = None,
        parameters: dict = None,
    ):
        """
        Record a billing analytics event in Firestore.
        subject_id is the subscription or payment the event is about.
        """
        logger.info(f"log_event: Entry - {event_name}, subject: {subject_id}")

        if not self.enabled:
            return

        try:
            event_data = {
                'event_name': event_name,
                'subject_id': subject_id,
                'parameters': parameters or {},
                'timestamp': utcnow()
            }
            self.db.collection(self.events_collection).add(event_data)
            logger.info(f"log_event: Success - {event_name}")

        except Exception as e:
            # Analytics failures must not break billing operations
            logger.error(f"log_event: Failure - {e}")

    def log_error(
        self,
        error: str,
        action: str,
        subject_id: str = None,
        parameters: dict = None,
    ):
        """Record an operation error for monitoring"""
        logger.info(f"log_error: Entry - {action}, error: {error}")

        if not self.enabled:
            return

        try:
            error_data = {
                'action': action,
                'subject_id': subject_id,
                'error_message': error,
                'parameters': parameters or {},
                'timestamp': utcnow()
            }
            self.db.collection(self.errors_collection).add(error_data)
            logger.info(f"log_error: Success - {action}")

        except Exception as e:
            logger.error(f"log_error: Failure - {e}")

    def log_success(
        self,
        action: str,
        subject_id: str = None,
        parameters: dict = None
    ):
        self.log_event(
            event_name=f'{action}_success',
            subject_id=subject_id,
            parameters={
                'status': 'success',
                **(parameters or {})
            }
        )

    def log_failure(
        self,
        action: str,
        error: str,
        subject_id: str = None,
        parameters: dict = None
    ):
        """
        Record a failed operation both as an analytics event (failure rate)
        and in the error collection (debugging).
        """
        self.log_event(
            event_name=f'{action}_failure',
            subject_id=subject_id,
            parameters={
                'status': 'failure',
                'error': error,
                **(parameters or {})
            }
        )
        self.log_error(error=error, action=action, subject_id=subject_id, parameters=parameters)
