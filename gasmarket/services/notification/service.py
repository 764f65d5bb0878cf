"""Notification consumer for order and payment events."""

import httpx
from sqlalchemy import select

from gasmarket.common.config import settings
from gasmarket.common.events import EventEnvelope, consume_forever
from gasmarket.common.logging import logger
from gasmarket.common.metrics import duplicate_events_skipped_total, notifications_sent_total
from gasmarket.services.notification.models import InboxEvent, NotificationLog

TOPICS = [
    "orders.placed",
    "orders.status_changed",
    "payments.code_issued",
    "payments.completed",
    "payments.failed",
]


def render_notifications(event: EventEnvelope) -> list[tuple[str, str, str]]:
    """Map one event to `(recipient_id, channel, message)` tuples."""

    p = event.payload
    number = p.get("order_number") or p.get("order_id")
    if event.event_type == "orders.placed":
        return [(p["agent_id"], "sms", f"New order #{number}: {p['quantity']} unit(s), KES {p['grand_total']}")]
    if event.event_type == "orders.status_changed":
        if p.get("actor_id") == p.get("customer_id"):
            return [(p["agent_id"], "sms", f"Order #{number} is now {p['to_status']}")]
        return [(p["customer_id"], "sms", f"Your order #{number} is now {p['to_status']}")]
    if event.event_type == "payments.code_issued":
        return [
            (
                p["customer_id"],
                "sms",
                f"Your GasMarket verification code is {p['verification_code']}. It expires at {p['expires_at']}.",
            )
        ]
    if event.event_type == "payments.completed":
        return [
            (p["agent_id"], "sms", f"Order #{number} has been paid (ref {p['transaction_reference']})"),
            (p["customer_id"], "email", f"Payment received for order #{number}. Waiting for the agent."),
        ]
    if event.event_type == "payments.failed":
        return [(p["customer_id"], "sms", f"Payment for order #{number} failed: {p.get('reason')}")]
    return []


class NotificationService:
    """Writes notification logs and relays them to the configured webhook."""

    def __init__(self, session_factory, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def _relay(self, recipient_id: str, channel: str, message: str) -> str:
        if not settings.notification_webhook_url:
            return "logged"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.post(
                    settings.notification_webhook_url,
                    json={"recipient_id": recipient_id, "channel": channel, "message": message},
                )
            resp.raise_for_status()
            return "relayed"
        except httpx.HTTPError as exc:
            logger.warning("notification_relay_failed recipient=%s channel=%s error=%s", recipient_id, channel, exc)
            return "relay_failed"

    async def handle_event(self, event: EventEnvelope) -> None:
        """Persist notification logs once per event, skipping duplicates."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
                return
            for recipient_id, channel, message in render_notifications(event):
                delivery_status = await self._relay(recipient_id, channel, message)
                db.add(
                    NotificationLog(
                        event_id=event.event_id,
                        topic=event.event_type,
                        recipient_id=recipient_id,
                        channel=channel,
                        message=message,
                        delivery_status=delivery_status,
                    )
                )
                notifications_sent_total.labels(
                    service=self.service_name, topic=event.event_type, channel=channel
                ).inc()
            self._mark_inbox(db, event.event_id)
            db.commit()

    def recent(self, recipient_id: str, limit: int = 20) -> list[dict]:
        with self.session_factory() as db:
            rows = db.execute(
                select(NotificationLog)
                .where(NotificationLog.recipient_id == recipient_id)
                .order_by(NotificationLog.created_at.desc())
                .limit(limit)
            ).scalars().all()
        return [
            {
                "event_id": row.event_id,
                "topic": row.topic,
                "channel": row.channel,
                "message": row.message,
                "delivery_status": row.delivery_status,
                "created_at": row.created_at,
            }
            for row in rows
        ]

    async def start_consumers(self) -> None:
        """Consume every marketplace topic in one group."""

        await consume_forever(TOPICS, "notification", self.handle_event)
