"""Order state machine, read models and customer/agent order actions.

Status writes go through `transition`, which validates the move against the
transition table and applies it with an optimistic `(id, status,
state_version)` guard so two concurrent requests cannot both move one order.
"""

import random
from datetime import datetime, timezone
from math import ceil

from sqlalchemy import func, select, update

from gasmarket.common import state_machine as sm
from gasmarket.common.auth import Principal
from gasmarket.common.errors import (
    AlreadyRated,
    AuthorizationError,
    InvalidRating,
    InvalidTransition,
    OrderNotFound,
)
from gasmarket.common.logging import logger, order_id_ctx
from gasmarket.common.metrics import order_transitions_total
from gasmarket.common.outbox import enqueue_event
from gasmarket.common.timeutils import utcnow
from gasmarket.common.tracing import tracer
from gasmarket.services.inventory.service import InventoryLedger
from gasmarket.services.orchestrator.models import OutboxEvent
from gasmarket.services.orders.models import Order, OrderTimeline
from gasmarket.services.orders.schemas import OrderStatusPatch
from gasmarket.services.wallet.service import WalletLedger


def generate_order_number(now: datetime | None = None) -> str:
    """`ORD` + yyMMdd + four random digits; collisions are possible but rare."""

    now = now or datetime.now(timezone.utc)
    return f"ORD{now:%y%m%d}{random.randint(1000, 9999)}"


def _money(value) -> float | None:
    return float(value) if value is not None else None


def order_to_dict(order: Order) -> dict:
    """Response shape shared by every order endpoint."""

    return {
        "id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "agent_id": order.agent_id,
        "listing_id": order.listing_id,
        "quantity": order.quantity,
        "unit_price": _money(order.unit_price),
        "total_price": _money(order.total_price),
        "delivery_fee": _money(order.delivery_fee),
        "grand_total": _money(order.grand_total),
        "delivery_address": order.delivery_address,
        "delivery_latitude": _money(order.delivery_latitude),
        "delivery_longitude": _money(order.delivery_longitude),
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "customer_notes": order.customer_notes,
        "agent_notes": order.agent_notes,
        "cancellation_reason": order.cancellation_reason,
        "rating": order.rating,
        "review": order.review,
        "estimated_delivery_time": order.estimated_delivery_time,
        "actual_delivery_time": order.actual_delivery_time,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


class OrderService:
    """Owns order lifecycle progression and its bound side effects."""

    def __init__(
        self,
        session_factory,
        inventory: InventoryLedger,
        wallet: WalletLedger,
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.inventory = inventory
        self.wallet = wallet
        self.service_name = service_name

    @tracer.start_as_current_span("orders.transition")
    def transition(self, db, order: Order, new_status: str, actor_id: str | None, reason: str) -> Order:
        """Apply one validated status change plus its side effects.

        Raises `InvalidTransition` when the move is not in the table or when a
        concurrent writer already changed the order; the order is then left
        untouched.
        """

        sm.validate_transition(order.status, new_status)
        from_status = order.status
        current_version = order.state_version
        now = utcnow()

        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == from_status,
                Order.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition(
                f"Order {order.order_number} was updated by another request; reload and try again"
            )

        order.status = new_status
        order.state_version = current_version + 1
        order.updated_at = now

        if new_status == sm.DELIVERED:
            order.actual_delivery_time = now
            if order.payment_method == "cash" and order.payment_status == "pending":
                # Cash is collected by the agent on handover.
                order.payment_status = "paid"
            self.wallet.credit_for_order(db, order)
        elif new_status in (sm.CANCELLED, sm.REJECTED) and order.stock_reserved:
            self.inventory.release(db, order.listing_id, order.quantity)
            order.stock_reserved = False

        db.add(
            OrderTimeline(
                order_id=order.id,
                from_status=from_status,
                to_status=new_status,
                actor_id=actor_id,
                reason=reason,
            )
        )
        enqueue_event(
            db,
            OutboxEvent,
            "orders.status_changed",
            "order",
            order.id,
            {
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "agent_id": order.agent_id,
                "from_status": from_status,
                "to_status": new_status,
                "actor_id": actor_id,
            },
        )
        order_transitions_total.labels(
            service=self.service_name, from_status=from_status, to_status=new_status
        ).inc()
        logger.info(
            "order_transition order_id=%s from=%s to=%s actor=%s reason=%s",
            order.id,
            from_status,
            new_status,
            actor_id,
            reason,
        )
        return order

    def find_visible(self, db, principal: Principal, order_id: str, for_update: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if principal.is_customer:
            stmt = stmt.where(Order.customer_id == principal.user_id)
        elif principal.is_agent:
            stmt = stmt.where(Order.agent_id == principal.user_id)
        if for_update:
            stmt = stmt.with_for_update()
        order = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        if order is None:
            raise OrderNotFound()
        order_id_ctx.set(order.id)
        return order

    def get_order(self, principal: Principal, order_id: str) -> Order:
        """Fetch one order visible to the caller (customer, agent owner, or admin)."""

        with self.session_factory() as db:
            return self.find_visible(db, principal, order_id)

    def timeline(self, principal: Principal, order_id: str) -> list[OrderTimeline]:
        with self.session_factory() as db:
            order = self.find_visible(db, principal, order_id)
            return list(
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order.id)
                    .order_by(OrderTimeline.created_at)
                ).scalars()
            )

    def list_orders(
        self,
        principal: Principal,
        view: str,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        """Paginated order history from the customer's or the agent's side."""

        if view == "agent" and not principal.is_agent:
            raise AuthorizationError("Only agents can view their received orders")
        if view == "customer" and not principal.is_customer:
            raise AuthorizationError("Only customers can view their orders")
        owner_column = Order.agent_id if view == "agent" else Order.customer_id
        page = max(1, page)
        limit = max(1, min(limit, 100))

        with self.session_factory() as db:
            conditions = [owner_column == principal.user_id]
            if status:
                conditions.append(Order.status == status)
            total = db.execute(select(func.count()).select_from(Order).where(*conditions)).scalar_one()
            orders = db.execute(
                select(Order)
                .where(*conditions)
                .order_by(Order.created_at.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).scalars().all()
            return {
                "count": len(orders),
                "total": total,
                "page": page,
                "total_pages": ceil(total / limit) if total else 0,
                "orders": [order_to_dict(o) for o in orders],
            }

    def status_summary(self, principal: Principal) -> dict[str, int]:
        """Count of the agent's orders per status, zero-filled."""

        if not principal.is_agent:
            raise AuthorizationError("Only agents can view order statistics")
        with self.session_factory() as db:
            rows = db.execute(
                select(Order.status, func.count(Order.id))
                .where(Order.agent_id == principal.user_id)
                .group_by(Order.status)
            ).all()
        summary = {status: 0 for status in sm.ORDER_STATUSES}
        for status, count in rows:
            summary[status] = int(count)
        return summary

    def update_status(self, principal: Principal, order_id: str, patch: OrderStatusPatch) -> Order:
        """Agent-driven status change with the allow-listed note/ETA fields."""

        if not principal.is_agent:
            raise AuthorizationError("Only agents can update order status")
        with self.session_factory() as db:
            order = self.find_visible(db, principal, order_id, for_update=True)
            if order.status == sm.PENDING_PAYMENT:
                raise InvalidTransition("Order is awaiting payment and cannot be updated by the agent")
            self.transition(db, order, patch.status, principal.user_id, reason="agent_status_update")
            if patch.agent_notes is not None:
                order.agent_notes = patch.agent_notes
            if patch.estimated_delivery_time is not None:
                order.estimated_delivery_time = patch.estimated_delivery_time
            db.commit()
            return order

    def add_rating(self, principal: Principal, order_id: str, rating: int, review: str | None) -> Order:
        """Record the customer's single rating on a delivered order."""

        if not principal.is_customer:
            raise AuthorizationError("Only customers can rate orders")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidRating()
        with self.session_factory() as db:
            order = self.find_visible(db, principal, order_id, for_update=True)
            if order.status != sm.DELIVERED:
                raise OrderNotFound("Order not found, not delivered yet, or you cannot rate it")
            if order.rating is not None:
                raise AlreadyRated()
            order.rating = rating
            order.review = review
            self.inventory.record_rating(db, order.listing_id, rating)
            db.commit()
            logger.info("order_rated order_id=%s rating=%s", order.id, rating)
            return order
