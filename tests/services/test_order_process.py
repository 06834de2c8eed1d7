"""Tests for order transitions and fulfillment-driven reconciliation."""

import random

import pytest

from shipflow.db.models import (
    ACTIVE_FULFILLMENT_STATES,
    PLACED_ORDER_STATES,
    FulfillmentState,
    OrderState,
)
from shipflow.services.errors import TransitionRejected
from shipflow.services.history_service import HistoryService, parse_payload
from shipflow.services.order_process import (
    VALID_TRANSITIONS,
    OrderProcess,
    all_items_fulfilled,
    any_items_fulfilled,
    line_fulfilled_quantity,
)


@pytest.fixture
def orders(db):
    return OrderProcess(db)


def test_fulfilled_quantity_ignores_inactive_fulfillments(make_order, make_fulfillment):
    order = make_order(quantities=(5,))
    line = order.lines[0]
    make_fulfillment([order], lines=[(line, 2)], state=FulfillmentState.purchased)
    make_fulfillment([order], lines=[(line, 3)], state=FulfillmentState.pending)
    make_fulfillment([order], lines=[(line, 3)], state=FulfillmentState.cancelled)

    assert line_fulfilled_quantity(order, line) == 2
    assert any_items_fulfilled(order)
    assert not all_items_fulfilled(order)


class TestTransition:
    def test_records_history(self, db, orders, make_order):
        order = make_order()
        result = orders.transition_to_state(order, OrderState.on_hold)

        assert result is order
        assert order.state == "OnHold"
        [entry] = HistoryService(db).list_entries(order_id=order.id)
        assert parse_payload(entry).from_state == "PaymentSettled"

    def test_table_rejection(self, orders, make_order):
        order = make_order(state=OrderState.delivered)
        result = orders.transition_to_state(order, OrderState.shipped)
        assert isinstance(result, TransitionRejected)
        assert result.message == "Cannot transition Order from Delivered to Shipped"

    def test_shipped_guard(self, orders, make_order, make_fulfillment):
        order = make_order(quantities=(5,))
        make_fulfillment([order], lines=[(order.lines[0], 3)], state=FulfillmentState.purchased)

        result = orders.transition_to_state(order, OrderState.shipped)

        assert isinstance(result, TransitionRejected)
        assert "not all items have been fulfilled" in result.message
        assert order.state == "PaymentSettled"

    def test_partially_shipped_guard_needs_some_items(self, orders, make_order):
        order = make_order()
        result = orders.transition_to_state(order, OrderState.partially_shipped)
        assert "no items have been fulfilled" in result.message


class TestReconcile:
    def test_three_of_five_purchased(self, orders, make_order, make_fulfillment):
        order = make_order(quantities=(5,))
        make_fulfillment([order], lines=[(order.lines[0], 3)], state=FulfillmentState.purchased)

        assert orders.reconcile(order) is True
        assert order.state == OrderState.partially_shipped.value

    def test_all_delivered(self, orders, make_order, make_fulfillment):
        order = make_order(quantities=(2, 1), state=OrderState.shipped)
        make_fulfillment([order], state=FulfillmentState.delivered)

        assert orders.reconcile(order) is True
        assert order.state == OrderState.delivered.value

    def test_cancelled_fulfillment_reverts_to_settled(self, orders, make_order, make_fulfillment):
        order = make_order(quantities=(1,), state=OrderState.shipped)
        make_fulfillment([order], state=FulfillmentState.cancelled)

        assert orders.reconcile(order) is True
        assert order.state == OrderState.payment_settled.value

    def test_on_hold_without_fulfillments_stays(self, orders, make_order):
        order = make_order(state=OrderState.on_hold)
        assert orders.reconcile(order) is False
        assert order.state == "OnHold"

    def test_unplaced_orders_ignored(self, orders, make_order, make_fulfillment):
        order = make_order(state=OrderState.arranging_payment)
        make_fulfillment([order], state=FulfillmentState.purchased)
        assert orders.reconcile(order) is False
        assert order.state == "ArrangingPayment"

    @pytest.mark.asyncio
    async def test_reconcile_orders_isolates_failures(
        self, db, orders, make_order, make_fulfillment
    ):
        order = make_order(quantities=(1,))
        make_fulfillment([order], state=FulfillmentState.purchased)
        db.commit()

        results = await orders.reconcile_orders([order.id, "missing"])

        assert results[0].order_id == order.id
        assert results[0].changed is True
        assert results[0].error is None
        assert results[1].error == "Order 'missing' not found"
        assert order.state == OrderState.shipped.value


def _expected_state(current, line_quantities, fulfillments):
    """Reconciliation rule evaluated from raw quantities, independent of the service."""
    active = [
        (state, covered) for state, covered in fulfillments if state in ACTIVE_FULFILLMENT_STATES
    ]
    coverage = [sum(covered[i] for _, covered in active) for i in range(len(line_quantities))]
    all_fulfilled = all(c >= q for c, q in zip(coverage, line_quantities))
    any_fulfilled = any(c > 0 for c in coverage)

    if all_fulfilled and all(state == FulfillmentState.delivered for state, _ in active):
        target = OrderState.delivered
    elif all_fulfilled:
        target = OrderState.shipped
    elif any_fulfilled:
        target = OrderState.partially_shipped
    elif current != OrderState.on_hold:
        target = OrderState.payment_settled
    else:
        return current
    if target != current and target in VALID_TRANSITIONS[current]:
        return target
    return current


@pytest.mark.parametrize("seed", range(40))
def test_reconciled_state_follows_coverage(seed, db, orders, make_order, make_fulfillment):
    rng = random.Random(seed)
    placed = sorted(PLACED_ORDER_STATES, key=lambda s: s.value)
    fulfillment_states = list(FulfillmentState)

    for _ in range(5):
        current = rng.choice(placed)
        line_quantities = [rng.randint(1, 3) for _ in range(rng.randint(1, 3))]
        order = make_order(quantities=tuple(line_quantities), state=current)

        generated = []
        for _ in range(rng.randint(0, 3)):
            state = rng.choice(fulfillment_states)
            covered = [rng.randint(0, q) for q in line_quantities]
            lines = [(line, qty) for line, qty in zip(order.lines, covered) if qty]
            if not lines:
                continue
            make_fulfillment([order], lines=lines, state=state)
            generated.append((state, covered))

        expected = _expected_state(current, line_quantities, generated)
        changed = orders.reconcile(order)

        assert order.state == expected.value, (current, line_quantities, generated)
        assert changed is (expected != current)
        assert len(HistoryService(db).list_entries(order_id=order.id)) == int(changed)
