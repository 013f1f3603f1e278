from __future__ import annotations

from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.models import EventEnvelope, EventRecord
from app.infra.context import set_request_context
from app.infra.events import UNIT_CREATED, EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type=UNIT_CREATED,
        payload={"unit_id": "unit-1", "path": "1"},
    )
    bus.subscribe(UNIT_CREATED, handler)

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].payload == {"unit_id": "unit-1", "path": "1"}
    assert seen == [event.event_id]


def test_failing_handler_does_not_break_publish() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def broken(event: EventEnvelope) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe(UNIT_CREATED, broken)
    bus.subscribe("*", lambda event: seen.append(event.event_type))

    set_request_context("user-7", "req-1")
    with Session(engine) as session:
        published = bus.publish_dict(UNIT_CREATED, {"unit_id": "unit-1"}, session=session)
        session.commit()

    assert seen == [UNIT_CREATED]
    assert published.actor_id == "user-7"
    assert published.correlation_id == "req-1"
    set_request_context(None)
