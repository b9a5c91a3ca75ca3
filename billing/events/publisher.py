import logging
from typing import Any, Dict, Iterable, Optional

import httpx
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.timeutils import utcnow
from billing.events.types import DomainEvent
from billing.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


class EventPublisher:
    """
    Relays committed domain events to the event bus.

    Events are staged in the outbox table by the operation that produced them,
    in the same transaction as the state change. This class only ever sees
    events whose transaction committed; a failed send leaves the outbox row
    unpublished so relay_pending() can pick it up later (at-least-once).
    """

    def __init__(self, db: Session, bus_url: Optional[str] = None):
        self.db = db
        self.outbox = OutboxRepository(db)
        self.bus_url = bus_url if bus_url is not None else settings.event_bus_url
        self.logger = logging.getLogger(__name__)

    async def publish(self, events: Iterable[DomainEvent]) -> int:
        """Send freshly committed events, returning how many were delivered"""
        messages = [(event.event_id, event.to_message()) for event in events]
        return await self._deliver(messages)

    async def relay_pending(self, limit: int = 100) -> int:
        """Re-send outbox rows that were never marked published"""
        self.logger.info(f"relay_pending: Entry - limit: {limit}")
        pending = self.outbox.list_unpublished(limit)
        delivered = await self._deliver([(row.id, row.payload) for row in pending])
        self.logger.info(f"relay_pending: Success - pending: {len(pending)}, delivered: {delivered}")
        return delivered

    async def _deliver(self, messages: list[tuple[str, Dict[str, Any]]]) -> int:
        if not messages:
            return 0

        delivered = 0
        for event_id, message in messages:
            try:
                await self._send(message)
                self.outbox.mark_published(event_id, utcnow())
                delivered += 1
            except httpx.HTTPError as e:
                self.logger.error(f"publish: Failure - event: {event_id}, type: {message.get('eventType')}, error: {e}")
                self.outbox.mark_failed(event_id, str(e))
        self.db.commit()
        return delivered

    async def _send(self, message: Dict[str, Any]):
        if not self.bus_url:
            self.logger.info(f"publish: {message['eventType']} {message['eventId']} - {message['data']}")
            return

        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            response = await client.post(
                f"{self.bus_url.rstrip('/')}/events/{message['eventType']}",
                json=message,
            )
            response.raise_for_status()
