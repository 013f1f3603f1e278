from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from app.domain.models import EventEnvelope, EventRecord
from app.infra.context import get_request_id, get_user_id
from app.infra.db import get_engine

EventHandler = Callable[[EventEnvelope], None]

logger = logging.getLogger(__name__)

UNIT_CREATED = "hierarchy.unit.created"
UNIT_UPDATED = "hierarchy.unit.updated"
UNIT_DELETED = "hierarchy.unit.deleted"
APPOINTMENT_CREATED = "hierarchy.appointment.created"
APPOINTMENT_DISMISSED = "hierarchy.appointment.dismissed"
ROLE_CHANGED = "hierarchy.role.changed"
CHANNEL_CREATED = "hierarchy.channel.created"


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
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event handler failed",
                    extra={"event_type": event.event_type, "event_id": event.event_id},
                )

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        session: Session | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            actor_id=get_user_id(),
            correlation_id=get_request_id(),
            payload=payload,
        )
        self.publish(event, session=session)
        return event


event_bus = EventBus()
