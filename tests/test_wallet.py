"""Agent earnings: one credit per delivered order."""

import pytest
from sqlalchemy import select

from gasmarket.common.errors import AuthorizationError, InvalidTransition
from gasmarket.services.orders.schemas import OrderStatusPatch
from gasmarket.services.wallet.models import Wallet, WalletTransaction


def _deliver(mp, agent, order_id):
    for status in ("confirmed", "processing", "dispatched", "delivered"):
        order = mp.orders.update_status(agent, order_id, OrderStatusPatch(status=status))
    return order


def test_delivery_credits_agent(mp, place, agent):
    order = place(quantity=2)
    _deliver(mp, agent, order.id)

    earnings = mp.wallet.earnings(agent)
    assert earnings["balance"] == 2500.0
    assert earnings["currency"] == "KES"
    assert earnings["total_credited"] == 2500.0
    assert earnings["transactions"][0]["order_id"] == order.id
    assert earnings["transactions"][0]["description"] == f"Order #{order.order_number}"


def test_second_delivered_update_does_not_credit_twice(mp, place, agent, session_factory):
    order = place()
    _deliver(mp, agent, order.id)

    with pytest.raises(InvalidTransition):
        mp.orders.update_status(agent, order.id, OrderStatusPatch(status="delivered"))

    with session_factory() as db:
        entries = db.execute(select(WalletTransaction).where(WalletTransaction.order_id == order.id)).scalars().all()
    assert len(entries) == 1


def test_credit_for_order_is_idempotent(mp, place, agent, session_factory, read_order):
    order = place()
    _deliver(mp, agent, order.id)
    delivered = read_order(order.id)

    with session_factory() as db:
        assert mp.wallet.credit_for_order(db, delivered) is False
        db.commit()
    assert mp.wallet.earnings(agent)["balance"] == 2500.0


def test_earnings_before_any_delivery(mp, agent):
    assert mp.wallet.earnings(agent) == {
        "balance": 0.0,
        "currency": "KES",
        "total_credited": 0.0,
        "transactions": [],
    }


def test_earnings_are_agent_only(mp, customer):
    with pytest.raises(AuthorizationError):
        mp.wallet.earnings(customer)


def test_reconciliation_flags_drift(mp, place, agent, session_factory):
    order = place()
    _deliver(mp, agent, order.id)
    assert mp.wallet.reconciliation_report()["mismatched_count"] == 0

    with session_factory() as db:
        wallet = db.execute(select(Wallet).where(Wallet.user_id == agent.user_id)).scalar_one()
        wallet.balance = wallet.balance + 1
        db.commit()

    report = mp.wallet.reconciliation_report()
    assert report["wallets_checked"] == 1
    assert report["mismatched_wallets"][0]["agent_id"] == agent.user_id
