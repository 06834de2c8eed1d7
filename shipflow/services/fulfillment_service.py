"""EasyPost side effects for a single fulfillment.

Creating, buying, tracking and refunding shipments. None of these
methods commit: they run inside a fulfillment transition, which commits
or rolls back the whole unit of work.

Example:
    service = FulfillmentService(db, client, rate_service, history, config)
    fulfillment = service.create_fulfillment([order], order_shipment_lines(order))
    await service.create_shipment(fulfillment)
"""

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy.orm import Session

from shipflow.config import ShipFlowConfig
from shipflow.db.models import (
    Fulfillment,
    FulfillmentLine,
    FulfillmentState,
    Order,
    utc_now_iso,
)
from shipflow.errors.domain import (
    DomainError,
    IllegalOperationError,
    NotFoundError,
    ShipmentRequestError,
)
from shipflow.services.dimensions import estimate_dimensions
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.errors import CarrierProviderError
from shipflow.services.history_service import (
    FulfillmentPurchasedData,
    FulfillmentRefundData,
    FulfillmentShipmentCreatedData,
    HistoryService,
)
from shipflow.services.rate_service import RateService, to_cents
from shipflow.services.shipment_builder import (
    ShipmentLine,
    fulfillment_shipment_lines,
    fulfillment_to_shipment,
    line_value_cents,
    package_items,
)

logger = logging.getLogger(__name__)

HANDLER_CODE = "easy-post"
MANUAL_METHOD = "Manual Fulfillment"


def _provider_message(error: CarrierProviderError) -> str:
    return error.provider_message or error.message


def fulfilled_quantities(orders: Sequence[Order]) -> dict[str, int]:
    """Quantity per order line already claimed by non-cancelled fulfillments."""
    claimed: dict[str, int] = {}
    seen: set[str] = set()
    for order in orders:
        for fulfillment in order.fulfillments:
            if fulfillment.id in seen or fulfillment.state == FulfillmentState.cancelled.value:
                continue
            seen.add(fulfillment.id)
            for line in fulfillment.lines:
                claimed[line.order_line_id] = claimed.get(line.order_line_id, 0) + line.quantity
    return claimed


class FulfillmentService:
    """Provider-facing operations on fulfillments.

    Args:
        db: Session shared with the caller's transition.
        client: EasyPost client.
        rate_service: Used for the insurance split.
        history: History recorder on the same session.
        config: Application configuration.
    """

    def __init__(
        self,
        db: Session,
        client: EasyPostClient,
        rate_service: RateService,
        history: HistoryService,
        config: ShipFlowConfig,
    ) -> None:
        self.db = db
        self.client = client
        self.rate_service = rate_service
        self.history = history
        self.config = config

    def get_fulfillment(self, fulfillment_id: str) -> Fulfillment:
        fulfillment = (
            self.db.query(Fulfillment).filter(Fulfillment.id == fulfillment_id).first()
        )
        if fulfillment is None:
            raise NotFoundError("Fulfillment", fulfillment_id)
        return fulfillment

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_fulfillment(
        self,
        orders: Sequence[Order],
        lines: Sequence[ShipmentLine],
        treat_as_manual: bool = False,
        tracking_code: str = "",
    ) -> Fulfillment:
        """Create a fulfillment in Created for part or all of some orders.

        Package dimensions are estimated from the shipped lines only; a
        fulfillment can cover several orders or part of one, so nothing
        stored on a single order is reliable enough.

        Args:
            orders: Orders the fulfillment ships. They share an address.
            lines: Order lines with the quantity to ship.
            treat_as_manual: Shipped outside EasyPost; tracking only.
            tracking_code: Carrier tracking number for manual fulfillments.

        Returns:
            The new, flushed Fulfillment.

        Raises:
            IllegalOperationError: If no lines are given or a quantity
                exceeds what remains unfulfilled on its line.
        """
        lines = [line for line in lines if line.quantity > 0]
        if not orders or not lines:
            raise IllegalOperationError("A fulfillment needs at least one order and one line")

        claimed = fulfilled_quantities(orders)
        for line in lines:
            order_line = line.order_line
            remaining = order_line.quantity - claimed.get(order_line.id, 0)
            if line.quantity > remaining:
                raise IllegalOperationError(
                    f"Cannot fulfill {line.quantity} of {order_line.variant.sku}; "
                    f"only {remaining} unfulfilled"
                )

        prior = 0
        seen: set[str] = set()
        for order in orders:
            for existing in order.fulfillments:
                if existing.id in seen:
                    continue
                seen.add(existing.id)
                # Cancelled fulfillments with a bought label still used an invoice number
                if existing.state != FulfillmentState.cancelled.value or existing.rate_purchased_at:
                    prior += 1
        invoice_id = ",".join(o.code for o in orders) + (f"-{prior}" if prior else "")

        with_service = next((o for o in orders if o.service_name), None)
        dims = estimate_dimensions(package_items(list(lines)))

        fulfillment = Fulfillment(
            state=FulfillmentState.created.value,
            handler_code=HANDLER_CODE,
            method=MANUAL_METHOD if treat_as_manual else (
                with_service.service_name if with_service else ""
            ),
            # Purchased labels supply the tracking code later
            tracking_code=(tracking_code or None) if treat_as_manual else None,
            treat_as_manual=treat_as_manual,
            invoice_id=invoice_id,
            weight=dims.weight,
            length=dims.length,
            width=dims.width,
            height=dims.height,
        )
        if not treat_as_manual and with_service is not None:
            fulfillment.carrier_id = with_service.carrier_id
            fulfillment.carrier_code = with_service.carrier_code
            fulfillment.service_code = with_service.service_code
            fulfillment.service_name = with_service.service_name

        fulfillment.orders = list(orders)
        fulfillment.lines = [
            FulfillmentLine(
                order_line=line.order_line,
                order_line_id=line.order_line.id,
                quantity=line.quantity,
            )
            for line in lines
        ]
        self.db.add(fulfillment)
        self.db.flush()
        logger.info(
            "Created fulfillment %s (%s) for %d line(s)",
            fulfillment.id,
            invoice_id,
            len(fulfillment.lines),
        )
        return fulfillment

    # ------------------------------------------------------------------
    # Shipments
    # ------------------------------------------------------------------

    async def create_shipment(self, fulfillment: Fulfillment) -> dict[str, Any]:
        """Create (but do not buy) the EasyPost shipment and lock in its rate.

        Carrier and service fall back to the first order when the
        fulfillment was created before shipping was chosen.

        Raises:
            ShipmentRequestError: Carrier/service or package data missing.
            DomainError: The selected service is no longer offered.
            CarrierProviderError: EasyPost rejected the request.
        """
        order = fulfillment.orders[0] if fulfillment.orders else None
        carrier_id = fulfillment.carrier_id or (order.carrier_id if order else None)
        service_code = fulfillment.service_code or (order.service_code if order else None)
        if not carrier_id or not service_code:
            raise ShipmentRequestError(
                "CarrierId and ServiceCode are required to create a shipment",
                code="E-2003",
            )

        request = fulfillment_to_shipment(fulfillment, self.config)
        if order is not None and order.delivery_instructions:
            request["options"]["handling_instructions"] = order.delivery_instructions
        request["carrier_accounts"] = [carrier_id]

        shipment = await self.client.create_shipment(request)
        rate = next(
            (
                r
                for r in shipment.get("rates") or []
                if r.get("carrier_account_id") == carrier_id
                and (r.get("service") or "").lower() == service_code.lower()
            ),
            None,
        )
        if rate is None:
            raise DomainError(
                f"Rate not found for carrier {fulfillment.carrier_code} ({carrier_id}) "
                f"and service {service_code}"
            )

        rate_cents = to_cents(rate.get("rate"))
        value = line_value_cents(fulfillment_shipment_lines(fulfillment))
        insurance = self.rate_service.insurance_for(value + rate_cents)
        if order is not None and rate_cents + insurance.amount_to_collect > order.shipping:
            logger.warning(
                "Shipping rate is higher than expected: order=%s rate=%d > %d",
                order.code,
                rate_cents + insurance.amount_to_collect,
                order.shipping,
            )

        self.history.record_fulfillment(
            fulfillment.id,
            FulfillmentShipmentCreatedData(
                shipment_id=shipment["id"],
                rate_id=rate["id"],
                rate_cost=rate_cents,
                carrier=carrier_id,
                service=service_code,
                insurance_cost=insurance.insurance_cost,
            ),
        )

        fulfillment.carrier_id = carrier_id
        fulfillment.service_code = service_code
        fulfillment.shipment_id = shipment["id"]
        fulfillment.rate_id = rate["id"]
        fulfillment.rate_cost = rate_cents
        fulfillment.insurance_cost = insurance.insurance_cost
        logger.info(
            "Created shipment %s for fulfillment %s at %d cents",
            shipment["id"],
            fulfillment.id,
            rate_cents,
        )
        return shipment

    async def purchase_shipment(self, fulfillment: Fulfillment) -> dict[str, Any]:
        """Buy the label for the rate locked in by create_shipment.

        Raises:
            IllegalOperationError: Already purchased, or no rate selected.
            DomainError: EasyPost refused the purchase.
        """
        if fulfillment.tracking_code:
            raise IllegalOperationError("Shipment has already been purchased")
        if not fulfillment.rate_id or not fulfillment.shipment_id:
            raise IllegalOperationError("Shipping rate not yet selected")

        value = line_value_cents(fulfillment_shipment_lines(fulfillment))
        insurance = self.rate_service.insurance_for(value + (fulfillment.rate_cost or 0))
        insured_dollars = (
            f"{insurance.value_to_insure / 100:.2f}" if insurance.value_to_insure else None
        )

        try:
            purchased = await self.client.buy_shipment(
                fulfillment.shipment_id, fulfillment.rate_id, insurance=insured_dollars
            )
        except CarrierProviderError as e:
            msg = _provider_message(e)
            if "rate mismatch" in msg.lower():
                raise DomainError("Rate mismatch -- rates need to be recalculated") from e
            raise DomainError(f"EasyPost error: {msg}") from e

        selected = purchased.get("selected_rate") or {}
        rate_cost = to_cents(selected.get("rate")) if selected.get("rate") else (
            fulfillment.rate_cost or 0
        )
        fulfillment.rate_purchased_at = utc_now_iso()
        fulfillment.tracking_code = purchased.get("tracking_code")
        fulfillment.tracker_id = (purchased.get("tracker") or {}).get("id")
        fulfillment.label_url = (purchased.get("postage_label") or {}).get("label_url")
        fulfillment.rate_cost = rate_cost
        fulfillment.insurance_cost = insurance.insurance_cost

        invoice = next(
            (
                form
                for form in purchased.get("forms") or []
                if form.get("form_type") == "commercial_invoice"
            ),
            None,
        )
        if invoice is not None:
            fulfillment.comm_invoice_url = invoice.get("form_url")
            fulfillment.comm_invoice_filed = bool(invoice.get("submitted_electronically"))

        self.history.record_fulfillment(
            fulfillment.id,
            FulfillmentPurchasedData(
                rate_id=fulfillment.rate_id,
                carrier=fulfillment.carrier_code,
                tracking_number=fulfillment.tracking_code,
                label_uri=fulfillment.label_url,
                rate=rate_cost,
                insurance=insurance.insurance_cost,
            ),
        )
        logger.info(
            "Purchased label for fulfillment %s: tracking=%s",
            fulfillment.id,
            fulfillment.tracking_code,
        )
        return purchased

    async def purchase_tracker(self, fulfillment: Fulfillment) -> dict[str, Any] | None:
        """Attach an EasyPost tracker to a manual fulfillment.

        Skips quietly when the fulfillment is not manual, has no
        tracking code or already has a tracker. Provider failures are
        logged, never raised.
        """
        if not fulfillment.treat_as_manual or not fulfillment.tracking_code:
            logger.info(
                "Not purchasing tracker for fulfillment %s; treat_as_manual=%s tracking_code=%s",
                fulfillment.id,
                fulfillment.treat_as_manual,
                fulfillment.tracking_code,
            )
            return None
        if fulfillment.tracker_id:
            logger.info("Tracker already set for fulfillment %s", fulfillment.id)
            return None

        try:
            tracker = await self.client.create_tracker(fulfillment.tracking_code)
        except CarrierProviderError as e:
            logger.error("EasyPost error: %s", _provider_message(e))
            return None

        fees = sum(to_cents(fee.get("amount")) for fee in tracker.get("fees") or [])
        fulfillment.tracker_id = tracker.get("id")
        fulfillment.carrier_code = tracker.get("carrier") or fulfillment.carrier_code
        fulfillment.rate_cost = fees

        self.history.record_fulfillment(
            fulfillment.id,
            FulfillmentPurchasedData(
                rate_id="",
                carrier=fulfillment.carrier_code,
                tracking_number=fulfillment.tracking_code,
                label_uri="",
                rate=fees,
                insurance=0,
            ),
        )
        return tracker

    async def refund_shipment(self, fulfillment_id: str) -> dict[str, Any]:
        """Request a refund for a purchased label.

        Raises:
            NotFoundError: Unknown fulfillment.
            IllegalOperationError: Nothing was purchased, or already cancelled.
            DomainError: EasyPost refused the refund.
        """
        fulfillment = self.get_fulfillment(fulfillment_id)
        if not fulfillment.shipment_id:
            raise IllegalOperationError("No shipment ID found for this fulfillment")
        if not fulfillment.tracking_code or not fulfillment.rate_purchased_at:
            raise IllegalOperationError(
                "No tracking code found - shipment may not have been purchased"
            )
        if fulfillment.state == FulfillmentState.cancelled.value:
            raise IllegalOperationError("Cannot refund a cancelled fulfillment")

        logger.info("Refunding shipment %s", fulfillment.shipment_id)
        try:
            response = await self.client.refund_shipment(fulfillment.shipment_id)
        except CarrierProviderError as e:
            msg = _provider_message(e)
            logger.error("Failed to refund shipment %s: %s", fulfillment.shipment_id, msg)
            raise DomainError(f"Failed to refund shipment: {msg}") from e

        self.history.record_fulfillment(
            fulfillment.id,
            FulfillmentRefundData(
                shipment_id=fulfillment.shipment_id,
                status=response.get("refund_status") or "submitted",
                amount=fulfillment.rate_cost,
            ),
        )
        return response
