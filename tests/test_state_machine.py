"""Unit tests for order and payment state-machine guardrails."""

import pytest

from gasmarket.common import state_machine as sm
from gasmarket.common.errors import InvalidTransition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    sm.validate_transition(sm.PENDING, sm.CONFIRMED)
    sm.validate_transition(sm.PROCESSING, sm.DISPATCHED)


def test_invalid_transition():
    """Skipping steps must raise to protect the order lifecycle."""

    with pytest.raises(InvalidTransition) as exc:
        sm.validate_transition(sm.PENDING, sm.DELIVERED)
    assert exc.value.message == "Cannot change status from pending to delivered"


def test_pending_payment_only_leaves_via_payment():
    with pytest.raises(InvalidTransition):
        sm.validate_transition(sm.PENDING_PAYMENT, sm.CANCELLED)
    sm.validate_transition(sm.PENDING_PAYMENT, sm.PENDING)


@pytest.mark.parametrize("status", [sm.DELIVERED, sm.CANCELLED, sm.REJECTED, sm.REFUNDED])
def test_terminal_statuses_have_no_exits(status):
    assert status in sm.TERMINAL_STATUSES
    for target in sm.ORDER_STATUSES:
        with pytest.raises(InvalidTransition):
            sm.validate_transition(status, target)


def test_shipped_is_not_a_status():
    """Only `dispatched` names the out-for-delivery state."""

    with pytest.raises(InvalidTransition):
        sm.validate_transition(sm.PROCESSING, "shipped")


def test_payment_leaves_pending_once():
    sm.validate_payment_transition(sm.PAYMENT_PENDING, sm.PAYMENT_COMPLETED)
    with pytest.raises(InvalidTransition):
        sm.validate_payment_transition(sm.PAYMENT_COMPLETED, sm.PAYMENT_FAILED)
    with pytest.raises(InvalidTransition):
        sm.validate_payment_transition(sm.PAYMENT_EXPIRED, sm.PAYMENT_COMPLETED)
