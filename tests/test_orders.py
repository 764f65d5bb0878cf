"""Order placement, agent progression, cancellation and rating."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from gasmarket.common.auth import Principal
from gasmarket.common.errors import (
    AlreadyRated,
    AuthorizationError,
    InsufficientStock,
    InvalidRating,
    InvalidTransition,
    NotCancellable,
    OrderNotFound,
    SelfOrder,
)
from gasmarket.services.orchestrator.models import OutboxEvent
from gasmarket.services.orders.models import OrderTimeline
from gasmarket.services.orders.schemas import OrderStatusPatch
from gasmarket.services.orders.service import generate_order_number


def _advance(mp, agent, order_id, *statuses):
    for status in statuses:
        order = mp.orders.update_status(agent, order_id, OrderStatusPatch(status=status))
    return order


def test_cash_order_deducts_stock_at_placement(place, listing, read_listing):
    """2 x 1200 plus a 100 delivery fee; stock drops from 5 to 3 immediately."""

    order = place(quantity=2, payment_method="cash")

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.stock_reserved is True
    assert float(order.total_price) == 2400
    assert float(order.grand_total) == 2500
    assert order.order_number.startswith("ORD")
    row = read_listing(listing.id)
    assert row.available_quantity == 3
    assert row.total_orders == 1


def test_cash_on_delivery_is_an_alias(place):
    order = place(payment_method="cash_on_delivery")
    assert order.payment_method == "cash"
    assert order.status == "pending"


def test_mpesa_order_defers_stock(place, listing, read_listing):
    order = place(quantity=2, payment_method="mpesa")

    assert order.status == "pending_payment"
    assert order.stock_reserved is False
    row = read_listing(listing.id)
    assert row.available_quantity == 5
    assert row.total_orders == 1


def test_placement_rejects_excess_quantity(place, listing, read_listing):
    with pytest.raises(InsufficientStock) as exc:
        place(quantity=6)
    assert exc.value.status_code == 400
    assert read_listing(listing.id).available_quantity == 5


def test_agent_cannot_order_own_listing(place):
    with pytest.raises(SelfOrder):
        place(principal=Principal(user_id="agent-1", user_type="customer"))


def test_only_customers_place_orders(place, agent):
    with pytest.raises(AuthorizationError):
        place(principal=agent)


def test_placement_enqueues_event(place, session_factory):
    order = place()
    with session_factory() as db:
        events = db.execute(select(OutboxEvent).where(OutboxEvent.aggregate_id == order.id)).scalars().all()
    assert [e.topic for e in events] == ["orders.placed"]
    assert events[0].payload["payload"]["agent_id"] == "agent-1"


def test_agent_walks_order_to_delivered(mp, place, agent, session_factory):
    order = place()
    order = _advance(mp, agent, order.id, "confirmed", "processing", "dispatched", "delivered")

    assert order.status == "delivered"
    assert order.actual_delivery_time is not None
    assert order.payment_status == "paid"
    assert order.state_version == 4
    with session_factory() as db:
        steps = db.execute(
            select(OrderTimeline.to_status).where(OrderTimeline.order_id == order.id).order_by(OrderTimeline.created_at)
        ).scalars().all()
    assert steps == ["confirmed", "processing", "dispatched", "delivered"]


def test_skipping_a_step_is_rejected(mp, place, agent, read_order):
    order = place()
    with pytest.raises(InvalidTransition) as exc:
        mp.orders.update_status(agent, order.id, OrderStatusPatch(status="delivered"))
    assert exc.value.message == "Cannot change status from pending to delivered"
    assert read_order(order.id).status == "pending"


def test_stale_writer_loses(mp, place, agent, session_factory):
    """A transition computed from an outdated version must not apply."""

    order = place()
    with session_factory() as db:
        stale = mp.orders.find_visible(db, agent, order.id)
    mp.orders.update_status(agent, order.id, OrderStatusPatch(status="confirmed"))
    with session_factory() as db:
        with pytest.raises(InvalidTransition):
            mp.orders.transition(db, stale, "rejected", agent.user_id, reason="late")


def test_agent_notes_and_eta(mp, place, agent):
    order = place()
    order = mp.orders.update_status(
        agent,
        order.id,
        OrderStatusPatch(status="confirmed", agent_notes="Leaving in 10 minutes", estimated_delivery_time=1),
    )
    assert order.agent_notes == "Leaving in 10 minutes"
    assert order.estimated_delivery_time == 1


def test_other_agent_cannot_see_order(mp, place):
    order = place()
    stranger = Principal(user_id="agent-2", user_type="agent")
    with pytest.raises(OrderNotFound):
        mp.orders.update_status(stranger, order.id, OrderStatusPatch(status="confirmed"))


def test_reject_releases_reserved_stock(mp, place, agent, listing, read_listing):
    order = place(quantity=2)
    _advance(mp, agent, order.id, "rejected")
    assert read_listing(listing.id).available_quantity == 5


def test_customer_cancel_from_confirmed_releases_stock(mp, place, agent, customer, listing, read_listing):
    order = place(quantity=2)
    _advance(mp, agent, order.id, "confirmed")

    order = mp.orchestrator.cancel_order(customer, order.id, "Changed my mind")

    assert order.status == "cancelled"
    assert order.cancellation_reason == "Changed my mind"
    assert order.stock_reserved is False
    assert read_listing(listing.id).available_quantity == 5


def test_customer_cannot_cancel_after_processing(mp, place, agent, customer):
    order = place()
    _advance(mp, agent, order.id, "confirmed", "processing")
    with pytest.raises(NotCancellable) as exc:
        mp.orchestrator.cancel_order(customer, order.id, None)
    assert exc.value.message == "Cannot cancel order with status: processing"


def test_cancel_unpaid_order_is_not_allowed(mp, place, customer, listing, read_listing):
    order = place(payment_method="mpesa")
    with pytest.raises(NotCancellable):
        mp.orchestrator.cancel_order(customer, order.id, None)
    assert read_listing(listing.id).available_quantity == 5


def test_rating_round_trip(mp, place, agent, customer, read_order, read_listing, listing):
    order = place()
    _advance(mp, agent, order.id, "confirmed", "processing", "dispatched", "delivered")

    mp.orders.add_rating(customer, order.id, 4, "Fast delivery")

    stored = read_order(order.id)
    assert stored.rating == 4
    assert stored.review == "Fast delivery"
    assert float(read_listing(listing.id).rating) > 0
    with pytest.raises(AlreadyRated):
        mp.orders.add_rating(customer, order.id, 5, None)


def test_rating_requires_delivery(mp, place, customer):
    order = place()
    with pytest.raises(OrderNotFound):
        mp.orders.add_rating(customer, order.id, 5, None)


@pytest.mark.parametrize("rating", [0, 6, True])
def test_rating_out_of_range(mp, place, customer, rating):
    order = place()
    with pytest.raises(InvalidRating):
        mp.orders.add_rating(customer, order.id, rating, None)


def test_list_orders_and_summary(mp, place, customer, agent):
    first = place(quantity=1)
    place(quantity=1)
    _advance(mp, agent, first.id, "confirmed")

    mine = mp.orders.list_orders(customer, "customer", page=1, limit=1)
    assert mine["total"] == 2
    assert mine["count"] == 1
    assert mine["total_pages"] == 2

    confirmed = mp.orders.list_orders(agent, "agent", status="confirmed")
    assert [o["id"] for o in confirmed["orders"]] == [first.id]

    summary = mp.orders.status_summary(agent)
    assert summary["pending"] == 1
    assert summary["confirmed"] == 1
    assert summary["delivered"] == 0

    with pytest.raises(AuthorizationError):
        mp.orders.list_orders(customer, "agent")


def test_order_number_format():
    number = generate_order_number(datetime(2024, 3, 7, tzinfo=timezone.utc))
    assert number.startswith("ORD240307")
    assert len(number) == 13


@pytest.mark.parametrize("final", ["delivered", "rejected", "cancelled"])
def test_finished_orders_are_not_cancellable(mp, place, agent, customer, final):
    order = place()
    path = {
        "delivered": ("confirmed", "processing", "dispatched", "delivered"),
        "rejected": ("rejected",),
        "cancelled": ("cancelled",),
    }[final]
    _advance(mp, agent, order.id, *path)
    with pytest.raises(NotCancellable):
        mp.orchestrator.cancel_order(customer, order.id, None)


def test_agent_cannot_move_unpaid_order(mp, place, agent, listing, read_listing, read_order):
    order = place(quantity=2, payment_method="mpesa")

    with pytest.raises(InvalidTransition):
        mp.orders.update_status(agent, order.id, OrderStatusPatch(status="pending"))
    assert read_order(order.id).status == "pending_payment"
    assert read_listing(listing.id).available_quantity == 5
    assert mp.wallet.earnings(agent)["balance"] == 0


def test_agent_can_clear_notes(mp, place, agent):
    order = place()
    mp.orders.update_status(agent, order.id, OrderStatusPatch(status="confirmed", agent_notes="Gate B"))
    order = mp.orders.update_status(agent, order.id, OrderStatusPatch(status="processing", agent_notes=""))
    assert order.agent_notes == ""
