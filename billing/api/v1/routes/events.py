import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from billing.api.v1.deps import get_event_listener
from billing.notifier.event_listener import SubscriptionEventListener

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{topic}")
async def receive_event(
    topic: str,
    message: Dict[str, Any] = Body(...),
    listener: SubscriptionEventListener = Depends(get_event_listener),
):
    """
    Inbound event webhook for the event bus.

    Always answers 200 for known topics so the bus does not redeliver
    messages the listener already logged as unprocessable.
    """
    if topic not in listener.topics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No handler for topic {topic}"
        )

    handled = await listener.handle(topic, message)
    return {"topic": topic, "handled": handled}
