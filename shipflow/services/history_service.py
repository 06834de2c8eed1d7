"""Append-only history entries for orders, fulfillments and pickups.

Each entry's ``data`` column holds one payload model from the
``HistoryPayload`` tagged union, discriminated by ``type``. Recording
only adds to the session; the caller's transition or operation commits.
"""

import logging
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy.orm import Session

from shipflow.db.models import HistoryEntry, HistoryEntryType
from shipflow.errors.domain import NotFoundError

logger = logging.getLogger(__name__)


# ============================================================================
# Payloads
# ============================================================================


class OrderStateTransitionData(BaseModel):
    type: Literal["order_state_transition"] = "order_state_transition"
    from_state: str
    to_state: str


class OrderFulfillmentTransitionData(BaseModel):
    type: Literal["order_fulfillment_transition"] = "order_fulfillment_transition"
    fulfillment_id: str
    from_state: str
    to_state: str


class FulfillmentTrackingData(BaseModel):
    """Carrier tracking update pushed by a tracker webhook."""

    type: Literal["fulfillment_tracking"] = "fulfillment_tracking"
    status: str
    detail: str | None = None
    eta: str | None = None


class FulfillmentPurchasedData(BaseModel):
    """Label or tracker purchase. Amounts in cents."""

    type: Literal["fulfillment_purchased"] = "fulfillment_purchased"
    rate_id: str | None = None
    carrier: str | None = None
    tracking_number: str | None = None
    label_uri: str | None = None
    rate: int = 0
    insurance: int = 0


class FulfillmentRefundData(BaseModel):
    type: Literal["fulfillment_refund"] = "fulfillment_refund"
    shipment_id: str | None = None
    status: str
    amount: int | None = None


class FulfillmentServiceChangeData(BaseModel):
    """Services are ``carrier:service`` strings; rates are cents."""

    type: Literal["fulfillment_service_change"] = "fulfillment_service_change"
    service: str
    rate: int | None = None
    old_service: str
    old_rate: int | None = None


class FulfillmentShipmentCreatedData(BaseModel):
    type: Literal["fulfillment_shipment_created"] = "fulfillment_shipment_created"
    shipment_id: str
    rate_id: str
    rate_cost: int
    carrier: str
    service: str
    insurance_cost: int


class PickupStateChangeData(BaseModel):
    type: Literal["pickup_state_change"] = "pickup_state_change"
    state: str
    previous_state: str


class PickupBatchData(BaseModel):
    type: Literal["pickup_batch"] = "pickup_batch"
    status: str
    batch_id: str | None = None
    message: str | None = None


class PickupScanFormData(BaseModel):
    type: Literal["pickup_scan_form"] = "pickup_scan_form"
    status: str
    scan_form_id: str | None = None
    message: str | None = None


class PickupScheduleData(BaseModel):
    type: Literal["pickup_schedule"] = "pickup_schedule"
    status: str
    pickup_id: str | None = None
    window_start: str | None = None
    window_end: str | None = None
    cost: int | None = None
    message: str | None = None


HistoryPayload = Annotated[
    Union[
        OrderStateTransitionData,
        OrderFulfillmentTransitionData,
        FulfillmentTrackingData,
        FulfillmentPurchasedData,
        FulfillmentRefundData,
        FulfillmentServiceChangeData,
        FulfillmentShipmentCreatedData,
        PickupStateChangeData,
        PickupBatchData,
        PickupScanFormData,
        PickupScheduleData,
    ],
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter[HistoryPayload] = TypeAdapter(HistoryPayload)


def parse_payload(entry: HistoryEntry) -> HistoryPayload:
    """Decode an entry's stored JSON into its payload model."""
    return _payload_adapter.validate_json(entry.data)


# ============================================================================
# Service
# ============================================================================


class HistoryService:
    """Records and administers history entries."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _record(
        self,
        payload: BaseModel,
        *,
        order_id: str | None = None,
        fulfillment_id: str | None = None,
        pickup_id: str | None = None,
        is_public: bool = False,
        administrator: str | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            order_id=order_id,
            fulfillment_id=fulfillment_id,
            pickup_id=pickup_id,
            type=HistoryEntryType(payload.type).value,
            is_public=is_public,
            administrator=administrator,
            data=payload.model_dump_json(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def record_order(
        self,
        order_id: str,
        payload: BaseModel,
        is_public: bool = False,
        administrator: str | None = None,
    ) -> HistoryEntry:
        return self._record(
            payload, order_id=order_id, is_public=is_public, administrator=administrator
        )

    def record_fulfillment(
        self,
        fulfillment_id: str,
        payload: BaseModel,
        is_public: bool = False,
        administrator: str | None = None,
    ) -> HistoryEntry:
        return self._record(
            payload,
            fulfillment_id=fulfillment_id,
            is_public=is_public,
            administrator=administrator,
        )

    def record_pickup(
        self,
        pickup_id: str,
        payload: BaseModel,
        is_public: bool = False,
        administrator: str | None = None,
    ) -> HistoryEntry:
        return self._record(
            payload, pickup_id=pickup_id, is_public=is_public, administrator=administrator
        )

    def list_entries(
        self,
        *,
        order_id: str | None = None,
        fulfillment_id: str | None = None,
        pickup_id: str | None = None,
        entry_type: HistoryEntryType | None = None,
        public_only: bool = False,
    ) -> list[HistoryEntry]:
        """List entries for one owner, oldest first."""
        query = self.db.query(HistoryEntry)
        if entry_type is not None:
            query = query.filter(HistoryEntry.type == entry_type.value)
        if order_id is not None:
            query = query.filter(HistoryEntry.order_id == order_id)
        if fulfillment_id is not None:
            query = query.filter(HistoryEntry.fulfillment_id == fulfillment_id)
        if pickup_id is not None:
            query = query.filter(HistoryEntry.pickup_id == pickup_id)
        if public_only:
            query = query.filter(HistoryEntry.is_public.is_(True))
        return query.order_by(HistoryEntry.created_at.asc()).all()

    def latest_payload(
        self,
        entry_type: HistoryEntryType,
        *,
        fulfillment_id: str | None = None,
        pickup_id: str | None = None,
    ) -> HistoryPayload | None:
        """Payload of the newest entry of ``entry_type`` for one owner."""
        entries = self.list_entries(
            fulfillment_id=fulfillment_id, pickup_id=pickup_id, entry_type=entry_type
        )
        return parse_payload(entries[-1]) if entries else None

    def update_entry(
        self,
        entry_id: str,
        *,
        is_public: bool | None = None,
        administrator: str | None = None,
    ) -> HistoryEntry:
        """Correct an entry's visibility or administrator attribution.

        Raises:
            NotFoundError: If the entry does not exist.
        """
        entry = self.db.query(HistoryEntry).filter(HistoryEntry.id == entry_id).first()
        if entry is None:
            raise NotFoundError("HistoryEntry", entry_id)

        if is_public is not None:
            entry.is_public = is_public
        if administrator is not None:
            entry.administrator = administrator

        self.db.commit()
        self.db.refresh(entry)
        return entry

    def delete_entry(self, entry_id: str) -> None:
        """Purge one entry. Only for explicit audit clean-up."""
        entry = self.db.query(HistoryEntry).filter(HistoryEntry.id == entry_id).first()
        if entry is None:
            raise NotFoundError("HistoryEntry", entry_id)
        entry_type = entry.type
        self.db.delete(entry)
        self.db.commit()
        logger.info("Purged history entry %s (%s)", entry_id, entry_type)
