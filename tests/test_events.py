from __future__ import annotations

from sqlmodel import Session, SQLModel, create_engine, select

from billing_console.domain.models import EventEnvelope, EventRecord
from billing_console.infra.events import INVOICE_LOCKED, EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type=INVOICE_LOCKED,
        correlation_id="run-1",
        payload={"invoice_id": "inv-1"},
    )
    bus.subscribe(INVOICE_LOCKED, handler)

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].correlation_id == "run-1"
    assert seen == [event.event_id]


def test_wildcard_subscribers_and_unsubscribe(billing_engine) -> None:
    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_type)

    bus.subscribe("*", handler)
    bus.publish_dict(INVOICE_LOCKED, {"invoice_id": "inv-1"})
    bus.unsubscribe("*", handler)
    bus.publish_dict(INVOICE_LOCKED, {"invoice_id": "inv-2"})

    assert seen == [INVOICE_LOCKED]
    with Session(billing_engine) as session:
        assert len(session.exec(select(EventRecord)).all()) == 2


def test_emit_logs_failures_instead_of_raising(billing_engine, caplog) -> None:
    bus = EventBus()

    def broken(event: EventEnvelope) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe(INVOICE_LOCKED, broken)

    assert bus.emit(INVOICE_LOCKED, {"invoice_id": "inv-1"}, correlation_id="run-9") is None
    assert "failed to publish invoice.locked" in caplog.text
