"""Outbox leasing, acknowledgement and parking of poison events."""

from sqlalchemy import select

from gasmarket.common.outbox import (
    FAILED,
    MAX_PUBLISH_ATTEMPTS,
    SENT,
    claim_outbox_batch,
    mark_outbox_sent,
    record_publish_failure,
    update_outbox_backlog_metrics,
)
from gasmarket.services.orchestrator.models import OutboxEvent


def _status(session_factory, event_id):
    with session_factory() as db:
        return db.execute(select(OutboxEvent.status).where(OutboxEvent.id == event_id)).scalar_one()


def test_claim_then_ack(place, session_factory):
    place()
    with session_factory() as db:
        rows = claim_outbox_batch(db, OutboxEvent)
        db.commit()
    assert [r["topic"] for r in rows] == ["orders.placed"]
    assert rows[0]["payload"]["event_type"] == "orders.placed"

    with session_factory() as db:
        assert claim_outbox_batch(db, OutboxEvent) == []
        mark_outbox_sent(db, OutboxEvent, rows[0]["id"])
        update_outbox_backlog_metrics(db, OutboxEvent, "test")
        db.commit()
    assert _status(session_factory, rows[0]["id"]) == SENT


def test_failing_event_is_parked(place, session_factory):
    place()
    for attempt in range(1, MAX_PUBLISH_ATTEMPTS + 1):
        with session_factory() as db:
            [row] = claim_outbox_batch(db, OutboxEvent)
            status = record_publish_failure(db, OutboxEvent, row["id"], "broker unavailable")
            db.commit()
        assert (status == FAILED) is (attempt == MAX_PUBLISH_ATTEMPTS)

    with session_factory() as db:
        assert claim_outbox_batch(db, OutboxEvent) == []
        parked = db.get(OutboxEvent, row["id"])
    assert parked.publish_attempts == MAX_PUBLISH_ATTEMPTS
    assert parked.last_error == "broker unavailable"
