"""
Lightweight event bus via Redis - carries dispatch engine events to the finalizer.

The dispatch engine calls publish_event() when a delivery batch for a
campaign completes. The broadcast-complete listener calls drain_events()
on each cycle to pick up pending events.

Key events:
- delivery_batch_complete: {"campaign_id": int} -> event-triggered finalization
"""
import json
import logging
from typing import Any, Optional

from sendonce.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

CHANNEL = "sendonce:events"
# Events are also stored in a Redis list for listeners that missed the pub/sub
EVENT_LIST_KEY = "sendonce:events:pending"
EVENT_LIST_MAX = 1000  # Maximum pending events to keep

DELIVERY_BATCH_COMPLETE = "delivery_batch_complete"


async def publish_event(event_type: str, data: Optional[dict[str, Any]] = None) -> None:
    """
    Publish an event.

    Uses both pub/sub (real-time) and a bounded Redis list (catch-up).
    """
    event = {
        "type": event_type,
        "data": data or {},
    }
    payload = json.dumps(event)

    try:
        redis = await get_redis()
        await redis.publish(CHANNEL, payload)
        await redis.lpush(EVENT_LIST_KEY, payload)
        await redis.ltrim(EVENT_LIST_KEY, 0, EVENT_LIST_MAX - 1)

        logger.debug("Event published: %s", event_type)
    except Exception:
        logger.warning("Failed to publish event: %s", event_type)


async def drain_events(max_events: int = 50) -> list[dict[str, Any]]:
    """
    Drain pending events from the list, oldest first. Non-blocking.
    Malformed payloads are dropped.
    """
    events: list[dict[str, Any]] = []

    try:
        redis = await get_redis()
        for _ in range(max_events):
            raw = await redis.rpop(EVENT_LIST_KEY)
            if raw is None:
                break
            try:
                payload = raw if isinstance(raw, str) else raw.decode()
                events.append(json.loads(payload))
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("Dropping malformed event payload")
                continue
    except Exception:
        logger.warning("Failed to drain events from bus")

    return events
