"""Fulfillment handlers: per-method side effects of state transitions.

A fulfillment's ``handler_code`` selects the handler whose
``on_transition`` runs after the entry guards and before the state
changes. Returning a string rejects the transition with that message.
"""

import logging
from typing import Protocol

from shipflow.db.models import Fulfillment, FulfillmentState
from shipflow.services.fulfillment_service import HANDLER_CODE, FulfillmentService

logger = logging.getLogger(__name__)

# States from which entering Pending (re)creates the shipment
_SHIPMENT_SOURCE_STATES = frozenset({FulfillmentState.created, FulfillmentState.on_hold})
_REFUNDABLE_STATES = frozenset({FulfillmentState.purchased, FulfillmentState.tendered})


class FulfillmentHandler(Protocol):
    code: str

    async def on_transition(
        self,
        fulfillment: Fulfillment,
        from_state: FulfillmentState,
        to_state: FulfillmentState,
    ) -> str | None: ...


class EasyPostFulfillmentHandler:
    """Creates, buys and refunds EasyPost shipments as fulfillments move."""

    code = HANDLER_CODE

    def __init__(self, service: FulfillmentService) -> None:
        self.service = service

    async def on_transition(
        self,
        fulfillment: Fulfillment,
        from_state: FulfillmentState,
        to_state: FulfillmentState,
    ) -> str | None:
        """Run the provider side effect for a transition.

        Returns:
            None to allow the transition, or a rejection message.
        """
        try:
            if (
                to_state == FulfillmentState.pending
                and from_state in _SHIPMENT_SOURCE_STATES
                and not fulfillment.treat_as_manual
            ):
                await self.service.create_shipment(fulfillment)
            elif to_state == FulfillmentState.purchased:
                if not fulfillment.treat_as_manual:
                    await self.service.purchase_shipment(fulfillment)
                elif fulfillment.tracking_code:
                    await self.service.purchase_tracker(fulfillment)
            elif to_state == FulfillmentState.cancelled and from_state in _REFUNDABLE_STATES:
                if fulfillment.shipment_id and fulfillment.rate_purchased_at:
                    await self.service.refund_shipment(fulfillment.id)
        except Exception as e:
            logger.exception(
                "Fulfillment %s failed %s -> %s", fulfillment.id, from_state.value, to_state.value
            )
            return f"Error transitioning fulfillment: {e}"
        return None
