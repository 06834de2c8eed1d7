"""Tests for the fulfillment state machine and its stock effects."""

import pytest

from shipflow.db.models import FulfillmentState, HistoryEntry, OrderState, StockMovement
from shipflow.errors.domain import NotFoundError
from shipflow.services.errors import TransitionRejected
from shipflow.services.fulfillment_process import VALID_TRANSITIONS, FulfillmentProcess
from shipflow.services.order_process import OrderProcess


class _RefusingHandler:
    code = "easy-post"

    def __init__(self, message: str | None = "Carrier said no"):
        self.message = message
        self.calls = []

    async def on_transition(self, fulfillment, from_state, to_state):
        self.calls.append((from_state, to_state))
        return self.message


@pytest.fixture
def process(db):
    return FulfillmentProcess(db, [], OrderProcess(db))


def test_terminal_states_have_no_exits():
    assert VALID_TRANSITIONS[FulfillmentState.delivered] == frozenset()
    assert VALID_TRANSITIONS[FulfillmentState.cancelled] == frozenset()
    assert VALID_TRANSITIONS[FulfillmentState.shipped] == {FulfillmentState.delivered}


class TestTransitions:
    @pytest.mark.asyncio
    async def test_illegal_transition_changes_nothing(
        self, db, process, make_order, make_fulfillment
    ):
        order = make_order(quantities=(5,), on_hand=10)
        fulfillment = make_fulfillment([order])
        db.commit()

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.shipped)

        assert result == TransitionRejected(
            "Created", "Shipped", "Cannot transition Fulfillment from Created to Shipped"
        )
        assert fulfillment.state == "Created"
        assert order.lines[0].variant.stock_on_hand == 10
        assert db.query(HistoryEntry).count() == 0
        assert db.query(StockMovement).count() == 0

    @pytest.mark.asyncio
    async def test_delivered_is_terminal(self, db, process, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()], state=FulfillmentState.delivered)
        db.commit()

        result = await process.transition_to_state(fulfillment.id, "Pending")

        assert isinstance(result, TransitionRejected)
        assert result.message == "Cannot transition Fulfillment from Delivered to Pending"

    @pytest.mark.asyncio
    async def test_stock_guard_blocks_pending(self, db, process, make_order, make_fulfillment):
        order = make_order(quantities=(5,), on_hand=3)
        fulfillment = make_fulfillment([order])
        db.commit()
        sku = order.lines[0].variant.sku

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.pending)

        assert isinstance(result, TransitionRejected)
        assert result.message == f"Not enough stock of {sku}! Only 3 on hand (0 total allocated)."
        assert fulfillment.state == "Created"
        assert db.query(HistoryEntry).count() == 0

    @pytest.mark.asyncio
    async def test_pending_sells_and_leaving_pending_restores(
        self, db, process, make_order, make_fulfillment
    ):
        order = make_order(quantities=(5,), on_hand=10)
        variant = order.lines[0].variant
        fulfillment = make_fulfillment([order])
        db.commit()

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.pending)
        assert result.state == "Pending"
        assert (variant.stock_on_hand, variant.stock_allocated) == (5, 0)

        fulfillment.shipment_id = "shp_1"
        fulfillment.rate_id = "rate_1"
        db.commit()

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.created)
        assert result.state == "Created"
        assert (variant.stock_on_hand, variant.stock_allocated) == (10, 5)
        assert fulfillment.shipment_id is None
        assert fulfillment.rate_id is None

        # Order history records both fulfillment moves
        entries = db.query(HistoryEntry).filter(HistoryEntry.order_id == order.id).all()
        assert sorted(e.type for e in entries) == ["order_fulfillment_transition"] * 2

    @pytest.mark.asyncio
    async def test_cancel_from_pending_keeps_shipment(
        self, db, process, make_order, make_fulfillment
    ):
        order = make_order(quantities=(2,), on_hand=10)
        fulfillment = make_fulfillment([order], state=FulfillmentState.pending, shipment_id="shp_9")
        db.commit()

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.cancelled)

        assert result.state == "Cancelled"
        assert result.shipment_id == "shp_9"
        assert order.lines[0].variant.stock_on_hand == 12

    @pytest.mark.asyncio
    async def test_handler_rejection_rolls_back(self, db, make_order, make_fulfillment):
        handler = _RefusingHandler()
        process = FulfillmentProcess(db, [handler], OrderProcess(db))
        order = make_order(quantities=(1,), on_hand=4)
        fulfillment = make_fulfillment([order])
        db.commit()

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.pending)

        assert result.message == "Carrier said no"
        assert handler.calls == [(FulfillmentState.created, FulfillmentState.pending)]
        assert fulfillment.state == "Created"
        assert order.lines[0].variant.stock_on_hand == 4

    @pytest.mark.asyncio
    async def test_handler_is_skipped_for_other_codes(self, db, make_order, make_fulfillment):
        handler = _RefusingHandler()
        process = FulfillmentProcess(db, [handler], OrderProcess(db))
        fulfillment = make_fulfillment([make_order()], handler_code="manual")
        db.commit()

        result = await process.transition_to_state(fulfillment.id, FulfillmentState.on_hold)

        assert result.state == "OnHold"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_unknown_fulfillment(self, process):
        with pytest.raises(NotFoundError):
            await process.transition_to_state("missing", FulfillmentState.pending)


class TestOrderFollows:
    @pytest.mark.asyncio
    async def test_purchase_drives_order_state(self, db, process, make_order, make_fulfillment):
        order = make_order(quantities=(5,))
        first = make_fulfillment([order], lines=[(order.lines[0], 3)])
        second = make_fulfillment([order], lines=[(order.lines[0], 2)])
        db.commit()

        await process.transition_to_state(first.id, FulfillmentState.purchased)
        assert order.state == OrderState.partially_shipped.value

        await process.transition_to_state(second.id, FulfillmentState.purchased)
        assert order.state == OrderState.shipped.value

        await process.transition_to_state(first.id, FulfillmentState.delivered)
        assert order.state == OrderState.shipped.value

        await process.transition_to_state(second.id, FulfillmentState.delivered)
        assert order.state == OrderState.delivered.value
