from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index
from billing.core.database import Base
from billing.core.timeutils import utcnow


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    __table_args__ = (
        Index("ix_outbox_events_unpublished", "published_at", "created_at"),
    )

    id = Column(String, primary_key=True, index=True)  # same as the event id
    event_type = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    published_at = Column(DateTime, nullable=True)
    publish_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
