"""Fulfillment state machine.

Normal path: Created -> Pending -> Purchased -> Tendered -> Shipped -> Delivered.

Pending creates the shipment and locks in a rate; Purchased buys the
label; Tendered means the package was handed to the carrier, which may
not have scanned it yet. OnHold parks a fulfillment, e.g. while stock
is short.

A transition runs, in order: the table check, the entry guards for the
target state, the fulfillment's handler, the state change and then the
generic effects (stock, order history, order reconciliation). The whole
transition is one commit; any rejection rolls it back.
"""

import logging
from collections.abc import Callable, Sequence

from sqlalchemy.orm import Session

from shipflow.db.models import Fulfillment, FulfillmentState
from shipflow.errors.domain import NotFoundError
from shipflow.services.errors import TransitionRejected
from shipflow.services.fulfillment_handler import FulfillmentHandler
from shipflow.services.history_service import (
    HistoryService,
    OrderFulfillmentTransitionData,
)
from shipflow.services.order_process import OrderProcess
from shipflow.services.stock_service import StockService

logger = logging.getLogger(__name__)

F = FulfillmentState

# Valid state transitions
VALID_TRANSITIONS: dict[FulfillmentState, frozenset[FulfillmentState]] = {
    F.created: frozenset({F.pending, F.purchased, F.on_hold, F.cancelled}),
    F.pending: frozenset({F.purchased, F.created, F.on_hold, F.cancelled}),
    F.on_hold: frozenset({F.pending, F.created, F.cancelled}),
    F.purchased: frozenset({F.tendered, F.shipped, F.delivered, F.cancelled}),
    # Tendered -> Purchased covers a package that was never actually handed over
    F.tendered: frozenset({F.shipped, F.delivered, F.purchased, F.cancelled}),
    F.shipped: frozenset({F.delivered}),
    F.delivered: frozenset(),
    F.cancelled: frozenset(),
}

# Stock for these states is allocated, not sold
NON_PENDING_STATES: frozenset[FulfillmentState] = frozenset({F.created, F.on_hold, F.cancelled})

Guard = Callable[[Fulfillment, FulfillmentState], str | None]
Effect = Callable[[Fulfillment, FulfillmentState, FulfillmentState], None]


class FulfillmentProcess:
    """Runs fulfillment transitions.

    Args:
        db: Session; each transition commits it once.
        handlers: Fulfillment handlers, looked up by ``handler_code``.
        order_process: Reconciles owning orders after each transition.
        stock: Stock ledger; built on ``db`` when omitted.
        history: History recorder; built on ``db`` when omitted.
    """

    def __init__(
        self,
        db: Session,
        handlers: Sequence[FulfillmentHandler],
        order_process: OrderProcess,
        stock: StockService | None = None,
        history: HistoryService | None = None,
    ) -> None:
        self.db = db
        self.handlers = {h.code: h for h in handlers}
        self.order_process = order_process
        self.stock = stock or StockService(db)
        self.history = history or HistoryService(db)

        self._entry_guards: dict[FulfillmentState, list[Guard]] = {
            F.pending: [self._check_stock],
        }
        self._effects: list[Effect] = [
            self._move_stock,
            self._record_order_history,
            self._reconcile_orders,
        ]

    def get_fulfillment(self, fulfillment_id: str) -> Fulfillment:
        fulfillment = (
            self.db.query(Fulfillment).filter(Fulfillment.id == fulfillment_id).first()
        )
        if fulfillment is None:
            raise NotFoundError("Fulfillment", fulfillment_id)
        return fulfillment

    def next_states(self, fulfillment: Fulfillment) -> frozenset[FulfillmentState]:
        return VALID_TRANSITIONS.get(FulfillmentState(fulfillment.state), frozenset())

    async def transition_to_state(
        self, fulfillment_id: str, to_state: FulfillmentState | str
    ) -> Fulfillment | TransitionRejected:
        """Move a fulfillment to ``to_state``.

        Returns:
            The committed fulfillment, or a TransitionRejected when the
            table, a guard or the handler refused the move.

        Raises:
            NotFoundError: If the fulfillment does not exist.
            ReconciliationError: If an owning order cannot follow.
        """
        fulfillment = self.get_fulfillment(fulfillment_id)
        from_state = FulfillmentState(fulfillment.state)
        to_state = FulfillmentState(to_state)

        if to_state not in VALID_TRANSITIONS[from_state]:
            return TransitionRejected(
                from_state.value,
                to_state.value,
                f"Cannot transition Fulfillment from {from_state.value} to {to_state.value}",
            )

        try:
            for guard in self._entry_guards.get(to_state, []):
                message = guard(fulfillment, from_state)
                if message:
                    return self._reject(fulfillment, from_state, to_state, message)

            handler = self.handlers.get(fulfillment.handler_code)
            if handler is not None:
                message = await handler.on_transition(fulfillment, from_state, to_state)
                if message:
                    return self._reject(fulfillment, from_state, to_state, message)

            fulfillment.state = to_state.value
            for effect in self._effects:
                effect(fulfillment, from_state, to_state)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(fulfillment)
        logger.info(
            "Fulfillment %s: %s -> %s", fulfillment.id, from_state.value, to_state.value
        )
        return fulfillment

    def _reject(
        self,
        fulfillment: Fulfillment,
        from_state: FulfillmentState,
        to_state: FulfillmentState,
        message: str,
    ) -> TransitionRejected:
        logger.warning(
            "Fulfillment %s rejected %s -> %s: %s",
            fulfillment.id,
            from_state.value,
            to_state.value,
            message,
        )
        self.db.rollback()
        return TransitionRejected(from_state.value, to_state.value, message)

    # -- Guards ----------------------------------------------------------------

    def _check_stock(self, fulfillment: Fulfillment, from_state: FulfillmentState) -> str | None:
        return self.stock.check_availability(fulfillment.lines)

    # -- Effects ---------------------------------------------------------------

    def _move_stock(
        self, fulfillment: Fulfillment, from_state: FulfillmentState, to_state: FulfillmentState
    ) -> None:
        if to_state == F.pending and from_state in NON_PENDING_STATES:
            self.stock.create_sales(fulfillment.lines)
        elif from_state == F.pending and to_state in NON_PENDING_STATES:
            self.stock.create_cancellations(fulfillment.lines)
            self.stock.create_allocations(fulfillment.lines)
            # Cancelled fulfillments keep their shipment for the record
            if to_state != F.cancelled:
                fulfillment.shipment_id = None
                fulfillment.rate_id = None
                fulfillment.rate_cost = None

    def _record_order_history(
        self, fulfillment: Fulfillment, from_state: FulfillmentState, to_state: FulfillmentState
    ) -> None:
        for order in fulfillment.orders:
            self.history.record_order(
                order.id,
                OrderFulfillmentTransitionData(
                    fulfillment_id=fulfillment.id,
                    from_state=from_state.value,
                    to_state=to_state.value,
                ),
            )

    def _reconcile_orders(
        self, fulfillment: Fulfillment, from_state: FulfillmentState, to_state: FulfillmentState
    ) -> None:
        for order in fulfillment.orders:
            self.order_process.reconcile(order)
