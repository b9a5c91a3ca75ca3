from datetime import datetime

from billing.models.outbox_event import OutboxEvent
from billing.repositories.base import SqlAlchemyRepository


class OutboxRepository(SqlAlchemyRepository[OutboxEvent]):
    model = OutboxEvent

    def add_events(self, events) -> None:
        """Stage domain events in the current transaction"""
        for event in events:
            self.db.add(OutboxEvent(
                id=event.event_id,
                event_type=event.event_type,
                source=event.source,
                payload=event.to_message(),
                created_at=event.timestamp,
            ))

    def list_unpublished(self, limit: int = 100) -> list[OutboxEvent]:
        return self.db.query(OutboxEvent).filter(
            OutboxEvent.published_at.is_(None)
        ).order_by(OutboxEvent.created_at).limit(limit).all()

    def mark_published(self, event_id: str, published_at: datetime) -> int:
        return self.db.query(OutboxEvent).filter(OutboxEvent.id == event_id).update({
            "published_at": published_at,
            "publish_attempts": OutboxEvent.publish_attempts + 1,
            "last_error": None,
        }, synchronize_session=False)

    def mark_failed(self, event_id: str, error: str) -> int:
        return self.db.query(OutboxEvent).filter(OutboxEvent.id == event_id).update({
            "publish_attempts": OutboxEvent.publish_attempts + 1,
            "last_error": error,
        }, synchronize_session=False)
