"""Carrier pickups: grouping purchased fulfillments, manifesting and scheduling.

A Pickup collects purchased fulfillments for one carrier while Open.
Closing it tenders every member and manifests the shipments with a
scan form (which implicitly creates a batch), falling back to a bare
batch when the carrier cannot produce a scan form. Scheduling books a
carrier pickup for the batch.

Example:
    pickups = PickupService(db, client, process, config)
    [pickup] = pickups.assign_to_pickup([fulfillment.id])
    await pickups.schedule(pickup.id, start, end)
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy.orm import Session

from shipflow.config import ShipFlowConfig
from shipflow.db.models import (
    Fulfillment,
    FulfillmentState,
    HistoryEntryType,
    Pickup,
    PickupState,
)
from shipflow.errors.domain import DomainError, IllegalOperationError, NotFoundError
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.errors import CarrierProviderError, TransitionRejected
from shipflow.services.fulfillment_process import FulfillmentProcess
from shipflow.services.history_service import (
    HistoryService,
    PickupBatchData,
    PickupScanFormData,
    PickupScheduleData,
    PickupStateChangeData,
    parse_payload,
)
from shipflow.services.rate_service import to_cents
from shipflow.services.shipment_builder import address_from_config
from shipflow.services.webhooks import BatchEvent, ScanFormEvent, WebhookEvent

logger = logging.getLogger(__name__)


class PickupService:
    """Manages pickups and their EasyPost manifests."""

    def __init__(
        self,
        db: Session,
        client: EasyPostClient,
        process: FulfillmentProcess,
        config: ShipFlowConfig,
        history: HistoryService | None = None,
    ) -> None:
        self.db = db
        self.client = client
        self.process = process
        self.config = config
        self.history = history or HistoryService(db)

    def get_pickup(self, pickup_id: str) -> Pickup:
        pickup = self.db.query(Pickup).filter(Pickup.id == pickup_id).first()
        if pickup is None:
            raise NotFoundError("Pickup", pickup_id)
        return pickup

    def list_pickups(self, state: PickupState | None = None) -> list[Pickup]:
        query = self.db.query(Pickup)
        if state is not None:
            query = query.filter(Pickup.state == state.value)
        return query.order_by(Pickup.created_at.desc()).all()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def assign_to_pickup(self, fulfillment_ids: Sequence[str]) -> list[Pickup]:
        """Add purchased fulfillments to the Open pickup of their carrier.

        A new pickup is opened for any carrier without one.

        Raises:
            NotFoundError: An id does not exist.
            IllegalOperationError: A fulfillment is unpurchased or already
                belongs to a pickup.
        """
        fulfillments = (
            self.db.query(Fulfillment).filter(Fulfillment.id.in_(list(fulfillment_ids))).all()
        )
        missing = set(fulfillment_ids) - {f.id for f in fulfillments}
        if missing:
            raise NotFoundError("Fulfillment", ", ".join(sorted(missing)))

        by_carrier: dict[str, list[Fulfillment]] = {}
        for fulfillment in fulfillments:
            if not (fulfillment.shipment_id and fulfillment.rate_purchased_at):
                raise IllegalOperationError(
                    "Fulfillments must be purchased before they can be assigned to a pickup"
                )
            if fulfillment.pickup_id:
                raise IllegalOperationError(
                    f"Fulfillment {fulfillment.id} is already assigned to a pickup"
                )
            by_carrier.setdefault(fulfillment.carrier_code or "", []).append(fulfillment)

        pickups = []
        for carrier, members in by_carrier.items():
            pickup = (
                self.db.query(Pickup)
                .filter(Pickup.carrier == carrier, Pickup.state == PickupState.open.value)
                .first()
            )
            if pickup is None:
                pickup = Pickup(carrier=carrier, state=PickupState.open.value)
                self.db.add(pickup)
                logger.info("Opened pickup for carrier %s", carrier)
            for fulfillment in members:
                fulfillment.pickup = pickup
            pickups.append(pickup)

        self.db.commit()
        for pickup in pickups:
            self.db.refresh(pickup)
        return pickups

    def remove_from_pickup(self, pickup_id: str, fulfillment_ids: Sequence[str]) -> Pickup:
        """Detach fulfillments from an Open pickup.

        Raises:
            IllegalOperationError: If the pickup is Closed.
        """
        pickup = self.get_pickup(pickup_id)
        if pickup.state != PickupState.open.value:
            raise IllegalOperationError("Cannot remove fulfillments from a Closed pickup")

        for fulfillment in list(pickup.fulfillments):
            if fulfillment.id in fulfillment_ids:
                fulfillment.pickup = None
        self.db.commit()
        self.db.refresh(pickup)
        return pickup

    # ------------------------------------------------------------------
    # Closing and scheduling
    # ------------------------------------------------------------------

    async def close(self, pickup_id: str) -> Pickup:
        """Tender every member and manifest the pickup's shipments.

        Raises:
            NotFoundError: Unknown pickup.
            IllegalOperationError: The pickup is not Open.
            DomainError: No shipments, or neither a scan form nor a batch
                could be created.
        """
        pickup = self.get_pickup(pickup_id)
        if pickup.state != PickupState.open.value:
            raise IllegalOperationError("Cannot close a pickup that is not Open")

        member_ids = [f.id for f in pickup.fulfillments]
        for fulfillment_id in member_ids:
            result = await self.process.transition_to_state(
                fulfillment_id, FulfillmentState.tendered
            )
            if isinstance(result, TransitionRejected):
                logger.warning(
                    "Pickup %s: fulfillment %s not tendered: %s",
                    pickup_id,
                    fulfillment_id,
                    result.message,
                )

        pickup = self.get_pickup(pickup_id)
        self.history.record_pickup(
            pickup.id,
            PickupStateChangeData(
                state=PickupState.closed.value, previous_state=PickupState.open.value
            ),
        )

        shipment_ids = [f.shipment_id for f in pickup.fulfillments if f.shipment_id]
        if not shipment_ids:
            self.db.rollback()
            raise DomainError("Failed to close pickup: No valid shipments found in pickup")

        try:
            scan_form = await self.client.create_scan_form(shipment_ids)
            pickup.scan_form_id = scan_form.get("id")
            pickup.batch_id = scan_form.get("batch_id")
            self.history.record_pickup(
                pickup.id,
                PickupScanFormData(status="Creating", scan_form_id=pickup.scan_form_id),
            )
        except CarrierProviderError as scan_error:
            logger.error(
                "Failed to create scan form: %s. Falling back to creating a batch", scan_error
            )
            try:
                batch = await self.client.create_batch(shipment_ids)
            except CarrierProviderError as batch_error:
                self.db.rollback()
                logger.error("Failed to close pickup %s: %s", pickup_id, batch_error)
                raise DomainError(
                    f"Failed to close pickup: Failed to create batch: {batch_error}"
                ) from batch_error
            pickup.batch_id = batch.get("id")
            self.history.record_pickup(
                pickup.id,
                PickupBatchData(
                    status="Creating",
                    batch_id=pickup.batch_id,
                    message=f"Failed to create scan form: {scan_error}",
                ),
            )

        # The batch id may still change; the batch webhook confirms it
        pickup.state = PickupState.closed.value
        self.db.commit()
        self.db.refresh(pickup)
        logger.info("Closed pickup %s (batch %s)", pickup.id, pickup.batch_id)
        return pickup

    async def schedule(self, pickup_id: str, window_start: datetime, window_end: datetime) -> Pickup:
        """Book a carrier pickup for the pickup's batch, closing it first if Open.

        The first offered pickup rate is taken.

        Raises:
            DomainError: No members, no address configured, no rates, or
                EasyPost refused the booking.
        """
        pickup = self.get_pickup(pickup_id)
        if pickup.state == PickupState.open.value:
            pickup = await self.close(pickup_id)

        try:
            if not pickup.fulfillments:
                raise DomainError("No fulfillments found in pickup")
            address = self.config.pickup.address
            if address is None:
                raise DomainError("No pickup address configured")

            provider_pickup = await self.client.create_pickup({
                "address": address_from_config(address),
                "batch": {"id": pickup.batch_id},
                "reference": f"pickup_{pickup.id}",
                "min_datetime": window_start.isoformat(),
                "max_datetime": window_end.isoformat(),
                "is_account_address": False,
                "instructions": self.config.pickup.instructions,
            })
            rates = provider_pickup.get("pickup_rates") or []
            if not rates:
                raise DomainError("No pickup rates available")

            rate = rates[0]
            purchased = await self.client.buy_pickup(
                provider_pickup["id"], rate.get("carrier"), rate.get("service")
            )
        except (CarrierProviderError, DomainError) as e:
            self.db.rollback()
            logger.error("Failed to schedule pickup %s: %s", pickup_id, e)
            raise DomainError(f"Failed to schedule pickup: {e}") from e

        cost = to_cents(rate.get("rate"))
        self.history.record_pickup(
            pickup.id,
            PickupScheduleData(
                status="Scheduled",
                pickup_id=purchased.get("id"),
                window_start=window_start.isoformat(),
                window_end=window_end.isoformat(),
                cost=cost,
                message=", ".join(purchased.get("messages") or []) or None,
            ),
        )
        pickup.provider_pickup_id = purchased.get("id")
        pickup.pickup_window_start = window_start.isoformat()
        pickup.pickup_window_end = window_end.isoformat()
        pickup.pickup_cost = cost
        self.db.commit()
        self.db.refresh(pickup)
        return pickup

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle(self, event: WebhookEvent) -> bool:
        """Webhook handler entry point for batch and scan form events."""
        if isinstance(event, BatchEvent):
            self.handle_batch_event(event)
            return True
        if isinstance(event, ScanFormEvent):
            self.handle_scan_form_event(event)
            return True
        return False

    def handle_batch_event(self, event: BatchEvent) -> None:
        if event.status != "completed":
            return
        batch_id = event.result.id
        pickup = self.db.query(Pickup).filter(Pickup.batch_id == batch_id).first()
        if pickup is None:
            logger.warning("No pickup found with batch ID %s", batch_id)
            return
        confirmation = PickupBatchData(status="Completed", batch_id=batch_id)
        recorded = self.history.list_entries(
            pickup_id=pickup.id, entry_type=HistoryEntryType.pickup_batch
        )
        if any(parse_payload(entry) == confirmation for entry in recorded):
            return
        self.history.record_pickup(pickup.id, confirmation)
        self.db.commit()
        logger.info("Batch %s completed for pickup %s", batch_id, pickup.id)

    def handle_scan_form_event(self, event: ScanFormEvent) -> None:
        scan_form = event.result
        pickup = self.db.query(Pickup).filter(Pickup.scan_form_id == scan_form.id).first()
        if pickup is None:
            logger.error("No pickup found with scan form ID %s", scan_form.id)
            return

        if event.status == "failed":
            logger.error("Failed to create scan form: %s", scan_form.message)
            self.history.record_pickup(
                pickup.id,
                PickupScanFormData(
                    status="Failed", scan_form_id=scan_form.id, message=scan_form.message
                ),
            )
            self.db.commit()
            return

        if scan_form.form_url and scan_form.form_url != pickup.scan_form_url:
            pickup.scan_form_url = scan_form.form_url
            pickup.batch_id = scan_form.batch_id or pickup.batch_id
            self.history.record_pickup(
                pickup.id,
                PickupScanFormData(
                    status="Created", scan_form_id=scan_form.id, message=scan_form.message
                ),
            )
            self.db.commit()
