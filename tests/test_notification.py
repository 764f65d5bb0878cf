"""Notification rendering and duplicate-safe consumption."""

import asyncio

from sqlalchemy import select

from gasmarket.common.events import EventEnvelope
from gasmarket.services.notification.models import NotificationLog
from gasmarket.services.notification.service import NotificationService, render_notifications


def _event(event_type, payload, event_id="evt-1"):
    return EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        aggregate_type="order",
        aggregate_id="order-1",
        trace_id="trace-1",
        payload=payload,
    )


def test_status_change_goes_to_the_other_party():
    payload = {
        "order_number": "ORD2403071234",
        "customer_id": "customer-1",
        "agent_id": "agent-1",
        "from_status": "pending",
        "to_status": "confirmed",
        "actor_id": "agent-1",
    }
    [(recipient, channel, message)] = render_notifications(_event("orders.status_changed", payload))
    assert recipient == "customer-1"
    assert channel == "sms"
    assert "confirmed" in message

    payload.update(actor_id="customer-1", to_status="cancelled")
    [(recipient, _, _)] = render_notifications(_event("orders.status_changed", payload))
    assert recipient == "agent-1"


def test_unknown_topic_renders_nothing():
    assert render_notifications(_event("orders.archived", {})) == []


def test_duplicate_event_is_logged_once(session_factory):
    """Kafka redelivery must not produce a second notification."""

    service = NotificationService(session_factory)
    event = _event(
        "orders.placed",
        {"order_number": "ORD2403071234", "agent_id": "agent-1", "quantity": 2, "grand_total": "2500.00"},
    )

    asyncio.run(service.handle_event(event))
    asyncio.run(service.handle_event(event))

    with session_factory() as db:
        logs = db.execute(select(NotificationLog)).scalars().all()
    assert len(logs) == 1
    assert logs[0].recipient_id == "agent-1"
    assert logs[0].delivery_status == "logged"


def test_recent_lists_newest_first(session_factory):
    service = NotificationService(session_factory)
    placed = _event(
        "orders.placed",
        {"order_number": "ORD2403071234", "agent_id": "agent-1", "quantity": 1, "grand_total": "1300.00"},
        event_id="evt-1",
    )
    paid = _event(
        "payments.completed",
        {
            "order_id": "order-1",
            "order_number": "ORD2403071234",
            "customer_id": "customer-1",
            "agent_id": "agent-1",
            "amount": "1300.00",
            "transaction_reference": "MPESA-1-ABC",
        },
        event_id="evt-2",
    )
    asyncio.run(service.handle_event(placed))
    asyncio.run(service.handle_event(paid))

    recent = service.recent("agent-1")
    assert [n["topic"] for n in recent] == ["payments.completed", "orders.placed"]
    assert service.recent("customer-1")[0]["channel"] == "email"
