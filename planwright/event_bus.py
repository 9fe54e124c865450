"""
PLANWRIGHT Event Bus — run lifecycle notifications.

The controller emits run_started, state_changed, plan_ready,
step_completed and run_finished. Subscribers can listen to everything
or to a set of event types. Delivery is synchronous and in subscription
order; a subscriber that raises is logged and skipped.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

Subscriber = Callable[["PlanEvent"], None]


class PlanEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """Synchronous pub/sub. One bus per Controller; there is no global instance."""

    def __init__(self):
        self._subscribers: List[Tuple[Subscriber, Optional[frozenset[str]]]] = []

    def subscribe(self, callback: Subscriber, event_types: Iterable[str] | None = None) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        entry = (callback, frozenset(event_types) if event_types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event_type: str, source: str, payload: Dict[str, Any] | None = None) -> PlanEvent:
        event = PlanEvent(event_type=event_type, source=source, payload=payload or {})

        for callback, wanted in list(self._subscribers):
            if wanted is not None and event_type not in wanted:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")
        return event
