"""Operator workflows built on top of fulfillment transitions.

These are the warehouse-facing operations: re-quoting, changing the
shipping service, combining and preparing fulfillments, and the label
scan at the packing station. Each one commits its own work.
"""

import logging
from collections.abc import Sequence

from pydantic import BaseModel
from sqlalchemy.orm import Session

from shipflow.config import ShipFlowConfig
from shipflow.db.models import (
    Fulfillment,
    FulfillmentState,
    Order,
    PickupState,
    utc_now_iso,
)
from shipflow.errors.domain import IllegalOperationError, NotFoundError
from shipflow.services.barcodes import tracking_numbers_for_barcode
from shipflow.services.dimensions import estimate_dimensions
from shipflow.services.errors import TransitionRejected
from shipflow.services.fulfillment_process import FulfillmentProcess
from shipflow.services.fulfillment_service import FulfillmentService, fulfilled_quantities
from shipflow.services.history_service import FulfillmentServiceChangeData, HistoryService
from shipflow.services.order_process import OrderProcess, ReconcileResult
from shipflow.services.rate_service import CarrierWithRates, RateService
from shipflow.services.shipment_builder import (
    ShipmentLine,
    build_shipment_request,
    line_value_cents,
    package_items,
)

logger = logging.getLogger(__name__)

UNPURCHASED_STATES = frozenset({
    FulfillmentState.created.value,
    FulfillmentState.pending.value,
    FulfillmentState.on_hold.value,
})

_ADDRESS_FIELDS = (
    "ship_street1",
    "ship_street2",
    "ship_city",
    "ship_state",
    "ship_postal_code",
    "ship_country_code",
)


class ShippingDetailsUpdate(BaseModel):
    """New shipping choice for an unpurchased fulfillment. Unset fields are kept."""

    carrier_id: str | None = None
    carrier_code: str | None = None
    service_code: str | None = None
    service_name: str | None = None
    rate_id: str | None = None
    rate_cost: int | None = None
    insurance_cost: int | None = None


def _same(a: str | None, b: str | None) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


def ensure_combinable(orders: Sequence[Order]) -> None:
    """Orders shipped together must share a customer and an address.

    Raises:
        IllegalOperationError: If they do not.
    """
    if len({(o.customer_email or "").strip().lower() for o in orders}) > 1:
        raise IllegalOperationError("Orders must belong to the same customer to be combined")
    first = orders[0]
    for order in orders[1:]:
        if not all(_same(getattr(order, f), getattr(first, f)) for f in _ADDRESS_FIELDS):
            raise IllegalOperationError(
                "All orders must have the same shipping address to be combined"
            )


def unfulfilled_lines(orders: Sequence[Order]) -> list[ShipmentLine]:
    """Lines of the orders not yet claimed by a non-cancelled fulfillment."""
    claimed = fulfilled_quantities(orders)
    lines = []
    for order in orders:
        for line in order.lines:
            remaining = line.quantity - claimed.get(line.id, 0)
            if remaining > 0:
                lines.append(ShipmentLine(line, remaining))
    return lines


class FulfillmentAdminService:
    """Warehouse operations on fulfillments.

    Args:
        db: Session; operations commit it.
        process: Fulfillment state machine on the same session.
        fulfillments: Fulfillment creation on the same session.
        rate_service: Rate quotes for re-quoting orders.
        config: Application configuration.
    """

    def __init__(
        self,
        db: Session,
        process: FulfillmentProcess,
        fulfillments: FulfillmentService,
        rate_service: RateService,
        config: ShipFlowConfig,
        history: HistoryService | None = None,
    ) -> None:
        self.db = db
        self.process = process
        self.fulfillments = fulfillments
        self.rate_service = rate_service
        self.config = config
        self.history = history or HistoryService(db)

    @property
    def order_process(self) -> OrderProcess:
        return self.process.order_process

    def _get_orders(self, order_ids: Sequence[str]) -> list[Order]:
        if not order_ids:
            raise IllegalOperationError("No order id provided")
        return [self.order_process.get_order(order_id) for order_id in order_ids]

    async def _transition_or_raise(
        self, fulfillment_id: str, to_state: FulfillmentState
    ) -> Fulfillment:
        result = await self.process.transition_to_state(fulfillment_id, to_state)
        if isinstance(result, TransitionRejected):
            raise IllegalOperationError(result.message)
        return result

    async def _cancel_unpurchased(self, orders: Sequence[Order]) -> None:
        pending = {
            f.id
            for order in orders
            for f in order.fulfillments
            if f.state in UNPURCHASED_STATES
        }
        for fulfillment_id in sorted(pending):
            await self._transition_or_raise(fulfillment_id, FulfillmentState.cancelled)

    # ------------------------------------------------------------------
    # Rates and shipping choice
    # ------------------------------------------------------------------

    async def get_rates_for_unfulfilled_order(
        self, order_id: str
    ) -> list[CarrierWithRates] | None:
        """Quote the part of an order that has not shipped yet.

        Selecting shipping for an order invalidates every unpurchased
        fulfillment, so those are cancelled first.

        Returns:
            Carrier rates, or None when quoting failed.

        Raises:
            IllegalOperationError: If nothing remains to ship.
        """
        order = self.order_process.get_order(order_id)
        await self._cancel_unpurchased([order])

        lines = unfulfilled_lines([order])
        if not lines:
            raise IllegalOperationError(f"Order {order.code} has no unfulfilled items")

        try:
            dims = estimate_dimensions(package_items(lines))
            request = build_shipment_request(order, lines, dims, self.config)
            carrier_map = await self.rate_service.get_carrier_info()
            rates = await self.rate_service.get_raw_rates(request)
            return self.rate_service.normalize_and_filter(
                rates, line_value_cents(lines), order, carrier_map
            )
        except Exception as e:
            logger.warning("Error getting unfulfilled rates for %s: %s", order.code, e)
            return None

    async def update_shipping_details(
        self, fulfillment_id: str, update: ShippingDetailsUpdate
    ) -> Fulfillment:
        """Change carrier and service on an unpurchased fulfillment.

        A Pending fulfillment already has a shipment for the old service,
        so it is sent back to Created to force a new one.

        Raises:
            IllegalOperationError: If the fulfillment is purchased or beyond.
        """
        fulfillment = self.process.get_fulfillment(fulfillment_id)
        if fulfillment.state not in UNPURCHASED_STATES:
            raise IllegalOperationError(
                f"Invalid state for updating shipping details: {fulfillment.state}"
            )

        old_service = f"{fulfillment.carrier_code}:{fulfillment.service_code}"
        old_rate = fulfillment.rate_cost

        if fulfillment.state == FulfillmentState.pending.value:
            fulfillment = await self._transition_or_raise(fulfillment_id, FulfillmentState.created)
            fulfillment.shipment_id = None
            fulfillment.rate_purchased_at = None
            fulfillment.rate_id = update.rate_id
            fulfillment.insurance_cost = update.insurance_cost

        for field, value in update.model_dump(exclude_unset=True).items():
            setattr(fulfillment, field, value)

        new_service = f"{fulfillment.carrier_code}:{fulfillment.service_code}"
        if new_service != old_service:
            self.history.record_fulfillment(
                fulfillment.id,
                FulfillmentServiceChangeData(
                    service=new_service,
                    rate=fulfillment.rate_cost,
                    old_service=old_service,
                    old_rate=old_rate,
                ),
            )
        self.db.commit()
        self.db.refresh(fulfillment)
        return fulfillment

    # ------------------------------------------------------------------
    # Combining and preparing
    # ------------------------------------------------------------------

    async def combine_fulfillments(self, fulfillment_ids: Sequence[str]) -> Fulfillment:
        """Replace several Created fulfillments with one covering all their lines.

        Raises:
            IllegalOperationError: Fewer than two fulfillments, any not in
                Created, or orders that cannot ship together.
        """
        if not fulfillment_ids or len(fulfillment_ids) < 2:
            raise IllegalOperationError(
                "At least 2 fulfillment ids are required to combine them"
            )
        sources = (
            self.db.query(Fulfillment).filter(Fulfillment.id.in_(list(fulfillment_ids))).all()
        )
        if len(sources) < 2:
            raise IllegalOperationError("At least 2 fulfillments are required to combine them")
        if not all(f.state == FulfillmentState.created.value for f in sources):
            raise IllegalOperationError(
                'Only fulfillments in the "Created" state can be combined'
            )

        orders: list[Order] = []
        for source in sources:
            for order in source.orders:
                if order not in orders:
                    orders.append(order)
        ensure_combinable(orders)

        quantities: dict[str, int] = {}
        order_lines = {}
        for source in sources:
            for line in source.lines:
                quantities[line.order_line_id] = quantities.get(line.order_line_id, 0) + line.quantity
                order_lines[line.order_line_id] = line.order_line
        lines = [
            ShipmentLine(order_lines[line_id], quantity)
            for line_id, quantity in quantities.items()
            if quantity > 0
        ]
        source_ids = [f.id for f in sources]

        for source_id in source_ids:
            await self._transition_or_raise(source_id, FulfillmentState.cancelled)

        combined = self.fulfillments.create_fulfillment(orders, lines)
        self.db.commit()
        self.db.refresh(combined)
        logger.info("Combined fulfillments %s into %s", ", ".join(source_ids), combined.id)
        return combined

    async def ensure_pending_fulfillment(self, order_ids: Sequence[str]) -> Fulfillment:
        """Get one Pending fulfillment covering everything left on the orders.

        Reuses a Created or Pending fulfillment spanning exactly these
        orders. Otherwise every unpurchased fulfillment of the orders is
        cancelled and a new one is created for the unfulfilled lines.

        Raises:
            IllegalOperationError: Orders cannot ship together, nothing is
                left to ship, or the move to Pending was rejected.
        """
        orders = self._get_orders(order_ids)
        ensure_combinable(orders)
        wanted = {o.id for o in orders}

        existing = next(
            (
                f
                for f in orders[0].fulfillments
                if f.state in (FulfillmentState.created.value, FulfillmentState.pending.value)
                and {o.id for o in f.orders} == wanted
            ),
            None,
        )
        if existing is not None:
            if existing.state == FulfillmentState.pending.value:
                return existing
            return await self._transition_or_raise(existing.id, FulfillmentState.pending)

        await self._cancel_unpurchased(orders)

        lines = unfulfilled_lines(orders)
        if not lines:
            codes = ", ".join(o.code for o in orders)
            raise IllegalOperationError(f"No unfulfilled items for order {codes}")

        created = self.fulfillments.create_fulfillment(orders, lines)
        for order in orders:
            for field in ("carrier_code", "carrier_id", "service_code", "service_name"):
                value = getattr(created, field)
                if getattr(order, field) != value:
                    setattr(order, field, value)
        self.db.commit()

        return await self._transition_or_raise(created.id, FulfillmentState.pending)

    async def correct_order_states(self, order_ids: Sequence[str]) -> list[ReconcileResult]:
        """Re-derive order states from fulfillments, one result per order."""
        return await self.order_process.reconcile_orders(order_ids)

    # ------------------------------------------------------------------
    # Label scans
    # ------------------------------------------------------------------

    def shipping_label_scanned(self, barcode: str) -> Fulfillment:
        """Stamp the fulfillment whose label was scanned at the packing station.

        Raises:
            NotFoundError: No fulfillment matches the barcode.
            IllegalOperationError: The label was already scanned.
        """
        fulfillment = None
        for code in tracking_numbers_for_barcode(barcode):
            fulfillment = (
                self.db.query(Fulfillment).filter(Fulfillment.tracking_code == code).first()
            )
            if fulfillment is not None:
                break

        if fulfillment is None:
            raise NotFoundError("Fulfillment", barcode)
        if fulfillment.label_scanned_at:
            raise IllegalOperationError(
                f"Fulfillment was already scanned at {fulfillment.label_scanned_at}"
            )

        fulfillment.label_scanned_at = utc_now_iso()
        self.db.commit()
        self.db.refresh(fulfillment)
        return fulfillment

    def undo_shipping_label_scan(self, fulfillment_id: str) -> Fulfillment:
        """Clear a scan; the fulfillment also leaves the Open pickup it joined.

        Raises:
            IllegalOperationError: The fulfillment belongs to a Closed pickup.
        """
        fulfillment = self.process.get_fulfillment(fulfillment_id)
        pickup = fulfillment.pickup
        if pickup is not None and pickup.state != PickupState.open.value:
            raise IllegalOperationError(
                "Cannot undo the scan of a fulfillment in a Closed pickup"
            )
        if fulfillment.label_scanned_at:
            fulfillment.label_scanned_at = None
            fulfillment.pickup_id = None
            self.db.commit()
            self.db.refresh(fulfillment)
        return fulfillment
