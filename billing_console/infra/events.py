from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from billing_console.domain.models import EventEnvelope, EventRecord
from billing_console.infra.db import get_engine

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]

INVOICE_RUN_STARTED = "invoice_run.started"
INVOICE_RUN_COMPLETED = "invoice_run.completed"
INVOICE_RUN_FAILED = "invoice_run.failed"
INVOICE_CREATED = "invoice.created"
INVOICE_LOCKED = "invoice.locked"
SPECIAL_RULES_APPLIED = "special_rules.applied"
CREDITS_APPLIED = "credits.applied"
INGESTION_BATCH_CREATED = "ingestion.batch_created"
ANALYTICS_GENERATED = "analytics.generated"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(get_engine())
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
            session.add(record)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None = None,
        actor_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            correlation_id=correlation_id,
            actor_id=actor_id,
            payload=payload,
        )
        self.publish(event)
        return event

    def emit(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None = None,
        actor_id: str | None = None,
    ) -> EventEnvelope | None:
        """Publish, logging any failure instead of raising it."""
        try:
            return self.publish_dict(
                event_type,
                payload,
                correlation_id=correlation_id,
                actor_id=actor_id,
            )
        except Exception:
            logger.exception("failed to publish %s event (correlation_id=%s)", event_type, correlation_id)
            return None


event_bus = EventBus()
