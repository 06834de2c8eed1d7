"""Order state machine and the fulfillment-driven reconciler.

Once an order is placed its state follows its fulfillments: Shipped
when every line is covered by active fulfillments, PartiallyShipped when
some are, Delivered when every active fulfillment is delivered.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.orm import Session

from shipflow.db.models import (
    ACTIVE_FULFILLMENT_STATES,
    PLACED_ORDER_STATES,
    FulfillmentState,
    Order,
    OrderLine,
    OrderState,
)
from shipflow.errors.domain import NotFoundError, ReconciliationError
from shipflow.services.errors import TransitionRejected
from shipflow.services.history_service import HistoryService, OrderStateTransitionData

logger = logging.getLogger(__name__)

S = OrderState

# Valid state transitions
VALID_TRANSITIONS: dict[OrderState, frozenset[OrderState]] = {
    S.created: frozenset({S.adding_items, S.draft}),
    S.draft: frozenset({S.arranging_payment, S.cancelled}),
    S.adding_items: frozenset({S.arranging_payment, S.cancelled}),
    S.arranging_payment: frozenset(
        {S.payment_authorized, S.payment_settled, S.adding_items, S.cancelled}
    ),
    S.payment_authorized: frozenset({S.payment_settled, S.cancelled, S.modifying}),
    S.payment_settled: frozenset({
        S.delivered,
        S.partially_shipped,
        S.shipped,
        S.on_hold,
        S.cancelled,
        S.modifying,
        S.arranging_additional_payment,
    }),
    S.on_hold: frozenset({
        S.arranging_additional_payment,
        S.payment_settled,
        S.modifying,
        S.partially_shipped,
        S.shipped,
        S.cancelled,
    }),
    S.partially_shipped: frozenset({S.shipped, S.payment_settled, S.cancelled, S.modifying}),
    S.shipped: frozenset(
        {S.delivered, S.partially_shipped, S.payment_settled, S.cancelled, S.modifying}
    ),
    S.delivered: frozenset({S.cancelled}),
    S.modifying: frozenset({
        S.payment_authorized,
        S.payment_settled,
        S.on_hold,
        S.partially_shipped,
        S.shipped,
        S.arranging_additional_payment,
    }),
    S.arranging_additional_payment: frozenset({
        S.payment_authorized,
        S.payment_settled,
        S.partially_shipped,
        S.shipped,
        S.cancelled,
        S.modifying,
    }),
    # Not normally reachable; lets a stray order find its way back
    S.partially_delivered: frozenset({S.partially_shipped, S.shipped}),
    S.cancelled: frozenset(),
}


def line_fulfilled_quantity(order: Order, line: OrderLine) -> int:
    """Units of a line covered by the order's active fulfillments."""
    total = 0
    for fulfillment in order.fulfillments:
        if FulfillmentState(fulfillment.state) not in ACTIVE_FULFILLMENT_STATES:
            continue
        total += sum(fl.quantity for fl in fulfillment.lines if fl.order_line_id == line.id)
    return total


def all_items_fulfilled(order: Order) -> bool:
    return all(line_fulfilled_quantity(order, line) >= line.quantity for line in order.lines)


def any_items_fulfilled(order: Order) -> bool:
    return any(line_fulfilled_quantity(order, line) > 0 for line in order.lines)


@dataclass
class ReconcileResult:
    order_id: str
    changed: bool
    error: str | None = None


class OrderProcess:
    """Guards order transitions and derives order state from fulfillments."""

    def __init__(self, db: Session, history: HistoryService | None = None) -> None:
        self.db = db
        self.history = history or HistoryService(db)

    def get_order(self, order_id: str) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def next_states(self, order: Order) -> frozenset[OrderState]:
        return VALID_TRANSITIONS.get(OrderState(order.state), frozenset())

    def _check_guards(self, order: Order, to_state: OrderState) -> str | None:
        if to_state == S.shipped and not all_items_fulfilled(order):
            return "Cannot transition to Shipped because not all items have been fulfilled"
        if to_state == S.partially_shipped:
            if not any_items_fulfilled(order):
                return (
                    "Cannot transition to PartiallyShipped because no items have been fulfilled"
                )
            if all_items_fulfilled(order):
                return "Cannot transition to PartiallyShipped because all items are fulfilled"
        return None

    def transition_to_state(
        self, order: Order, to_state: OrderState | str
    ) -> Order | TransitionRejected:
        """Move an order to a new state and record it in the order history.

        Does not commit; callers own the unit of work.

        Returns:
            The order, or a TransitionRejected describing why not.
        """
        from_state = OrderState(order.state)
        to_state = OrderState(to_state)

        if to_state not in VALID_TRANSITIONS.get(from_state, frozenset()):
            return TransitionRejected(
                from_state.value,
                to_state.value,
                f"Cannot transition Order from {from_state.value} to {to_state.value}",
            )

        message = self._check_guards(order, to_state)
        if message:
            return TransitionRejected(from_state.value, to_state.value, message)

        order.state = to_state.value
        self.history.record_order(
            order.id,
            OrderStateTransitionData(from_state=from_state.value, to_state=to_state.value),
        )
        logger.info("Order %s: %s -> %s", order.code, from_state.value, to_state.value)
        return order

    def reconcile(self, order: Order) -> bool:
        """Bring a placed order's state in line with its fulfillments.

        Returns:
            True if the order changed state.

        Raises:
            ReconciliationError: If the derived transition is rejected.
        """
        current = OrderState(order.state)
        if current not in PLACED_ORDER_STATES:
            return False

        all_fulfilled = all_items_fulfilled(order)
        any_fulfilled = any_items_fulfilled(order)

        target: OrderState | None = None
        if all_fulfilled:
            target = S.shipped
        elif any_fulfilled:
            target = S.partially_shipped
        elif current != S.on_hold:
            target = S.payment_settled

        active = [
            f
            for f in order.fulfillments
            if FulfillmentState(f.state) in ACTIVE_FULFILLMENT_STATES
        ]
        if all_fulfilled and all(f.state == FulfillmentState.delivered.value for f in active):
            return self._transition_if_available(order, S.delivered)
        if target is not None and target != current:
            return self._transition_if_available(order, target)
        return False

    def _transition_if_available(self, order: Order, target: OrderState) -> bool:
        if target not in self.next_states(order):
            return False
        result = self.transition_to_state(order, target)
        if isinstance(result, TransitionRejected):
            raise ReconciliationError(order.id, target.value, result.message)
        return True

    async def reconcile_orders(self, order_ids: Sequence[str]) -> list[ReconcileResult]:
        """Reconcile many orders; one failure never blocks the rest.

        Each successful reconciliation is committed on its own.
        """

        async def _one(order_id: str) -> ReconcileResult:
            try:
                changed = self.reconcile(self.get_order(order_id))
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            return ReconcileResult(order_id=order_id, changed=changed)

        outcomes = await asyncio.gather(
            *(_one(order_id) for order_id in order_ids), return_exceptions=True
        )
        results = []
        for order_id, outcome in zip(order_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Failed to reconcile order %s: %s", order_id, outcome)
                results.append(ReconcileResult(order_id=order_id, changed=False, error=str(outcome)))
            else:
                results.append(outcome)
        return results
