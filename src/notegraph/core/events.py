"""
SyncEvents - Synchronous Publish-Subscribe for Sync Engine Events
=================================================================

Mutations are broadcast before any I/O happens, so delivery here is
synchronous: publish() returns after every matching handler ran. Handler
errors are isolated and counted, never propagated to the publisher.

Event Type Hierarchy:
    note.*          note.created / note.updated / note.deleted
    folder.*        folder.created / folder.updated / folder.deleted
    entity.*        entity.upserted / entity.deleted
    edge.*          edge.created / edge.deleted
    sync.*          sync.hydrated / sync.flushed / sync.rollback
    projection.*    projection.recomputed

Example:
    ```python
    events = SyncEvents()
    sub_id = events.subscribe("note.*", lambda e: print(e.type, e.data["id"]))
    events.publish("note.created", {"id": "n1"})
    events.unsubscribe(sub_id)
    ```
"""

import uuid
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Callable, Dict, Optional

from loguru import logger

from notegraph.core._utils import now_ms


# =============================================================================
# Event Data Structure
# =============================================================================

@dataclass
class Event:
    """
    A single sync event.

    Attributes:
        id: Unique event identifier
        type: Event type (e.g., "note.created")
        data: Event payload
        published_at: Epoch milliseconds
    """
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    type: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    published_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "published_at": self.published_at,
        }


EventHandler = Callable[[Event], None]
EventFilter = Callable[[Event], bool]


@dataclass
class Subscription:
    id: str
    event_pattern: str
    handler: EventHandler
    filter: Optional[EventFilter] = None
    delivery_count: int = 0
    error_count: int = 0


# =============================================================================
# SyncEvents
# =============================================================================

class SyncEvents:
    """Pattern-based synchronous event emitter with per-handler isolation."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._metrics = {
            "events_published": 0,
            "events_delivered": 0,
            "delivery_errors": 0,
        }

    def subscribe(
        self,
        event_pattern: str,
        handler: EventHandler,
        event_filter: Optional[EventFilter] = None,
    ) -> str:
        """
        Subscribe to events matching a pattern.

        Args:
            event_pattern: Event type or fnmatch pattern ("edge.*", "*")
            handler: Called with the Event
            event_filter: Optional predicate applied before the handler

        Returns:
            Subscription ID for unsubscribe()
        """
        subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[subscription_id] = Subscription(
            id=subscription_id,
            event_pattern=event_pattern,
            handler=handler,
            filter=event_filter,
        )
        logger.debug(f"[SyncEvents] Subscribed {subscription_id} to '{event_pattern}'")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, data=data or {})
        self._metrics["events_published"] += 1
        for sub in list(self._subscriptions.values()):
            if not fnmatch(event.type, sub.event_pattern):
                continue
            if sub.filter is not None and not sub.filter(event):
                continue
            try:
                sub.handler(event)
            except Exception as exc:
                sub.error_count += 1
                self._metrics["delivery_errors"] += 1
                logger.opt(exception=exc).error(
                    f"[SyncEvents] Handler {sub.id} failed on '{event.type}': {exc}"
                )
            else:
                sub.delivery_count += 1
                self._metrics["events_delivered"] += 1
        return event

    def get_metrics(self) -> Dict[str, Any]:
        return {**self._metrics, "subscriptions": len(self._subscriptions)}
