"""Order/payment orchestration.

Coordinates the inventory ledger, the order state machine and the outbox on
order placement, payment completion and customer cancellation. Each entry
point runs in one database transaction, so a failure leaves no partial state.
"""

import asyncio
from decimal import Decimal

from gasmarket.common import state_machine as sm
from gasmarket.common.auth import Principal
from gasmarket.common.errors import AuthorizationError, InsufficientStock, NotCancellable, SelfOrder
from gasmarket.common.events import EventEnvelope, KafkaBus
from gasmarket.common.logging import logger, order_id_ctx
from gasmarket.common.metrics import orders_placed_total
from gasmarket.common.outbox import (
    claim_outbox_batch,
    enqueue_event,
    mark_outbox_sent,
    record_publish_failure,
    update_outbox_backlog_metrics,
)
from gasmarket.common.tracing import tracer
from gasmarket.services.inventory.service import InventoryLedger
from gasmarket.services.orchestrator.models import OutboxEvent
from gasmarket.services.orders.models import Order
from gasmarket.services.orders.schemas import PlaceOrderRequest
from gasmarket.services.orders.service import OrderService, generate_order_number

AT_PLACEMENT = "placement"
AT_PAYMENT_VERIFIED = "payment_verified"

# When stock leaves the listing, per payment method.
STOCK_DEDUCTION_POLICY: dict[str, str] = {
    "cash": AT_PLACEMENT,
    "mpesa": AT_PAYMENT_VERIFIED,
    "card": AT_PAYMENT_VERIFIED,
    "wallet": AT_PAYMENT_VERIFIED,
}

PAYMENT_METHOD_ALIASES = {"cash_on_delivery": "cash"}


def normalize_payment_method(method: str) -> str:
    return PAYMENT_METHOD_ALIASES.get(method, method)


class OrderOrchestrator:
    """Entry points that span inventory, orders and payments."""

    def __init__(
        self,
        session_factory,
        orders: OrderService,
        inventory: InventoryLedger,
        service_name: str = "orchestrator",
    ) -> None:
        self.session_factory = session_factory
        self.orders = orders
        self.inventory = inventory
        self.kafka = KafkaBus()
        self.service_name = service_name

    @tracer.start_as_current_span("orders.place")
    def place_order(self, principal: Principal, req: PlaceOrderRequest) -> Order:
        """Create an order against a listing and deduct stock per policy."""

        if not principal.is_customer:
            raise AuthorizationError("Only customers can place orders")
        payment_method = normalize_payment_method(req.payment_method)
        deduct_now = STOCK_DEDUCTION_POLICY[payment_method] == AT_PLACEMENT

        with self.session_factory() as db:
            listing = self.inventory.get_listing(db, req.listing_id)
            self.inventory.check_available(listing, req.quantity)
            if listing.agent_id == principal.user_id:
                raise SelfOrder()

            unit_price = Decimal(listing.selling_price)
            delivery_fee = Decimal(listing.delivery_fee or 0) if listing.delivery_available else Decimal("0")
            total_price = unit_price * req.quantity
            grand_total = total_price + delivery_fee

            if deduct_now:
                if not self.inventory.reserve(db, listing.id, req.quantity):
                    raise InsufficientStock()
            else:
                self.inventory.count_order(db, listing.id)

            order = Order(
                order_number=generate_order_number(),
                customer_id=principal.user_id,
                agent_id=listing.agent_id,
                listing_id=listing.id,
                quantity=req.quantity,
                unit_price=unit_price,
                total_price=total_price,
                delivery_fee=delivery_fee,
                grand_total=grand_total,
                delivery_address=req.delivery_address,
                delivery_latitude=req.delivery_latitude,
                delivery_longitude=req.delivery_longitude,
                customer_notes=req.delivery_notes,
                payment_method=payment_method,
                payment_status="pending",
                status=sm.PENDING if payment_method == "cash" else sm.PENDING_PAYMENT,
                state_version=0,
                stock_reserved=deduct_now,
            )
            db.add(order)
            db.flush()
            order_id_ctx.set(order.id)
            enqueue_event(
                db,
                OutboxEvent,
                "orders.placed",
                "order",
                order.id,
                {
                    "order_number": order.order_number,
                    "customer_id": order.customer_id,
                    "agent_id": order.agent_id,
                    "listing_id": order.listing_id,
                    "quantity": order.quantity,
                    "grand_total": str(order.grand_total),
                    "payment_method": order.payment_method,
                    "status": order.status,
                },
            )
            db.commit()

        orders_placed_total.labels(service=self.service_name, payment_method=payment_method).inc()
        logger.info(
            "order_placed order_id=%s order_number=%s listing_id=%s quantity=%s grand_total=%s status=%s",
            order.id,
            order.order_number,
            order.listing_id,
            order.quantity,
            order.grand_total,
            order.status,
        )
        return order

    @tracer.start_as_current_span("orders.apply_payment")
    def on_payment_verified(self, db, payment) -> Order:
        """Post-payment sequence, run in the verifying transaction.

        Moves the order out of `pending_payment`, marks it paid, deducts stock
        when the policy defers it to this point, clears the customer's cart
        entry and notifies the agent. Raises `InsufficientStock` if deferred
        stock is gone; the caller fails the payment in that case.
        """

        order = db.get(Order, payment.order_id, with_for_update=True, populate_existing=True)
        order_id_ctx.set(order.id)
        if order.status == sm.PENDING_PAYMENT:
            deduct_now = STOCK_DEDUCTION_POLICY.get(order.payment_method) == AT_PAYMENT_VERIFIED
            if deduct_now and not order.stock_reserved:
                if not self.inventory.reserve(db, order.listing_id, order.quantity, count_order=False):
                    raise InsufficientStock("The listing no longer has enough stock for this order")
                order.stock_reserved = True
            self.orders.transition(db, order, sm.PENDING, payment.customer_id, reason="payment_verified")
        order.payment_status = "paid"
        order.payment_method = payment.payment_method

        listing_id = (payment.metadata_ or {}).get("listing_id") or order.listing_id
        cleared = self.inventory.clear_cart(db, payment.customer_id, listing_id)
        enqueue_event(
            db,
            OutboxEvent,
            "payments.completed",
            "payment",
            payment.id,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "agent_id": order.agent_id,
                "amount": str(payment.amount),
                "transaction_reference": payment.transaction_reference,
            },
        )
        logger.info(
            "payment_applied order_id=%s payment_id=%s order_status=%s cart_rows_cleared=%s",
            order.id,
            payment.id,
            order.status,
            cleared,
        )
        return order

    @tracer.start_as_current_span("orders.cancel")
    def cancel_order(self, principal: Principal, order_id: str, reason: str | None) -> Order:
        """Customer cancellation from `pending` or `confirmed` only."""

        if not principal.is_customer:
            raise AuthorizationError("Only customers can cancel their orders")
        with self.session_factory() as db:
            order = self.orders.find_visible(db, principal, order_id, for_update=True)
            if order.status not in sm.CANCELLABLE_BY_CUSTOMER:
                raise NotCancellable(f"Cannot cancel order with status: {order.status}")
            order.cancellation_reason = reason
            self.orders.transition(db, order, sm.CANCELLED, principal.user_id, reason="customer_cancelled")
            db.commit()
            return order

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            with self.session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with self.session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        db.commit()
                except Exception as exc:
                    logger.warning("outbox_publish_failed topic=%s event_id=%s error=%s", row["topic"], row["id"], exc)
                    with self.session_factory() as db:
                        record_publish_failure(db, OutboxEvent, row["id"], str(exc))
                        db.commit()
            await asyncio.sleep(0.5)
