"""Transactional outbox for marketplace events.

Order and payment writes add an outbox row in their own transaction; the API
process later claims rows in batches, publishes them to Kafka and marks them
sent. A row that keeps failing is parked as `FAILED` after
`MAX_PUBLISH_ATTEMPTS` so one poison event cannot stall the rest.
"""

from datetime import timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update

from gasmarket.common.events import EventEnvelope
from gasmarket.common.logging import logger, trace_id_ctx
from gasmarket.common.metrics import (
    outbox_events_parked_total,
    outbox_oldest_pending_age_seconds,
    outbox_pending_total,
)
from gasmarket.common.timeutils import as_utc, utcnow

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"
FAILED = "FAILED"

MAX_PUBLISH_ATTEMPTS = 10


def enqueue_event(db, outbox_model, topic: str, aggregate_type: str, aggregate_id: str, payload: dict[str, Any]):
    """Add one outbox row in the caller's transaction; it is published after commit."""

    envelope = EventEnvelope(
        event_type=topic,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        trace_id=trace_id_ctx.get() or str(uuid4()),
        payload=payload,
    )
    row = outbox_model(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=topic,
        topic=topic,
        payload=envelope.model_dump(),
        status=PENDING,
        publish_attempts=0,
    )
    db.add(row)
    return row


def claim_outbox_batch(db, outbox_model, limit: int = 100, lease_seconds: int = 30) -> list[dict]:
    """Lease up to `limit` publishable rows, oldest first.

    Rows left in `PROCESSING` by a publisher that died are picked up again once
    their lease runs out.
    """

    now = utcnow()
    lease_expired = now - timedelta(seconds=lease_seconds)
    ids = db.execute(
        select(outbox_model.id)
        .where(
            or_(
                outbox_model.status == PENDING,
                and_(outbox_model.status == PROCESSING, outbox_model.claimed_at < lease_expired),
            )
        )
        .order_by(outbox_model.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars().all()
    if not ids:
        return []
    db.execute(
        update(outbox_model)
        .where(outbox_model.id.in_(ids))
        .values(status=PROCESSING, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    rows = db.execute(
        select(outbox_model.id, outbox_model.topic, outbox_model.payload)
        .where(outbox_model.id.in_(ids))
        .order_by(outbox_model.created_at)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == PROCESSING)
        .values(status=SENT, sent_at=utcnow())
        .execution_options(synchronize_session=False)
    )


def record_publish_failure(db, outbox_model, event_id: str, error: str) -> str:
    """Count a failed publish and return the row's new status."""

    attempts, topic = db.execute(
        select(outbox_model.publish_attempts, outbox_model.topic).where(outbox_model.id == event_id)
    ).one()
    attempts += 1
    status = FAILED if attempts >= MAX_PUBLISH_ATTEMPTS else PENDING
    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == PROCESSING)
        .values(status=status, publish_attempts=attempts, last_error=error[:500], claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    if status == FAILED:
        outbox_events_parked_total.labels(topic=topic).inc()
        logger.error("outbox_event_parked event_id=%s attempts=%s error=%s", event_id, attempts, error)
    return status


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Publish backlog depth and the age of the oldest unsent row."""

    count, oldest = db.execute(
        select(func.count(outbox_model.id), func.min(outbox_model.created_at)).where(
            outbox_model.status.in_((PENDING, PROCESSING))
        )
    ).one()
    age_seconds = max(0.0, (utcnow() - as_utc(oldest)).total_seconds()) if oldest is not None else 0.0
    outbox_pending_total.labels(service=service_name).set(float(count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
