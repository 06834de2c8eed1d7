"""EasyPost webhook validation, parsing and dispatch.

Inbound events are authenticated with the shared webhook secret, parsed
into typed event models keyed by ``description`` and handed to every
registered handler. EasyPost delivers at least once, so handlers must
tolerate replays.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import unicodedata
from collections.abc import Mapping, Sequence
from typing import Annotated, Any, Literal, Protocol, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Discriminator, Tag, TypeAdapter
from sqlalchemy import or_
from sqlalchemy.orm import Session

from shipflow.db.models import Fulfillment, FulfillmentState, HistoryEntryType
from shipflow.errors.domain import WebhookSignatureError
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.errors import TransitionRejected
from shipflow.services.fulfillment_process import FulfillmentProcess
from shipflow.services.fulfillment_service import HANDLER_CODE
from shipflow.services.history_service import (
    FulfillmentRefundData,
    FulfillmentTrackingData,
    HistoryService,
    parse_payload,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hmac-signature"
SIGNATURE_PREFIX = "hmac-sha256-hex="

SHIPPED_STATUSES = frozenset({"in_transit", "out_for_delivery"})
DELIVERED_STATUSES = frozenset({"delivered", "available_for_pickup"})


# ============================================================================
# Event models
# ============================================================================


class _Result(BaseModel):
    model_config = ConfigDict(extra="allow")


class TrackerResult(_Result):
    id: str
    tracking_code: str | None = None
    status: str | None = None
    status_detail: str | None = None
    est_delivery_date: str | None = None
    shipment_id: str | None = None
    carrier: str | None = None


class RefundResult(_Result):
    id: str | None = None
    shipment_id: str | None = None
    tracking_code: str | None = None
    status: str | None = None


class BatchResult(_Result):
    id: str
    state: str | None = None


class ScanFormResult(_Result):
    id: str
    status: str | None = None
    batch_id: str | None = None
    form_url: str | None = None
    message: str | None = None


class _Event(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    mode: str | None = None
    status: str | None = None
    created_at: str | None = None


class TrackerEvent(_Event):
    description: Literal["tracker.created", "tracker.updated"]
    result: TrackerResult


class RefundEvent(_Event):
    description: Literal["refund.successful"]
    result: RefundResult


class BatchEvent(_Event):
    description: Literal["batch.created", "batch.updated"]
    result: BatchResult


class ScanFormEvent(_Event):
    description: Literal["scan_form.created", "scan_form.updated"]
    result: ScanFormResult


class GenericEvent(_Event):
    """Any event nothing here models, e.g. ``insurance.purchased``."""

    description: str
    result: dict[str, Any] = {}


_EVENT_TAGS = {
    "tracker.created": "tracker",
    "tracker.updated": "tracker",
    "refund.successful": "refund",
    "batch.created": "batch",
    "batch.updated": "batch",
    "scan_form.created": "scan_form",
    "scan_form.updated": "scan_form",
}


def _event_tag(value: Any) -> str:
    if isinstance(value, dict):
        description = value.get("description")
    else:
        description = getattr(value, "description", None)
    return _EVENT_TAGS.get(description, "other")


WebhookEvent = Annotated[
    Union[
        Annotated[TrackerEvent, Tag("tracker")],
        Annotated[RefundEvent, Tag("refund")],
        Annotated[BatchEvent, Tag("batch")],
        Annotated[ScanFormEvent, Tag("scan_form")],
        Annotated[GenericEvent, Tag("other")],
    ],
    Discriminator(_event_tag),
]

_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


def parse_event(payload: Mapping[str, Any]) -> WebhookEvent:
    return _event_adapter.validate_python(dict(payload))


# ============================================================================
# Validation
# ============================================================================


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def compute_signature(body: bytes, secret: str) -> str:
    """Signature header value EasyPost sends for ``body``."""
    key = unicodedata.normalize("NFKD", secret).encode("utf-8")
    digest = hmac.new(key, body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def validate_webhook(body: bytes, headers: Mapping[str, str], secret: str) -> WebhookEvent:
    """Authenticate and parse an inbound webhook.

    Args:
        body: Raw request body, exactly as received.
        headers: Request headers; lookup is case-insensitive.
        secret: Shared webhook secret.

    Returns:
        The parsed event.

    Raises:
        WebhookSignatureError: Missing or mismatched signature, or a body
            that is not a JSON object.
    """
    received = _header(headers, SIGNATURE_HEADER)
    if not received:
        raise WebhookSignatureError("Webhook received does not contain an HMAC signature")

    expected = compute_signature(body, secret)
    if not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookSignatureError(
            "Webhook received did not originate from EasyPost or had a webhook secret mismatch"
        )

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise WebhookSignatureError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise WebhookSignatureError("Webhook body is not a JSON object")
    return parse_event(payload)


# ============================================================================
# Dispatch
# ============================================================================


class WebhookHandler(Protocol):
    async def handle(self, event: WebhookEvent) -> bool: ...


class WebhookDispatcher:
    """Fans an event out to every handler; one failing handler never blocks another."""

    def __init__(self, handlers: Sequence[WebhookHandler]) -> None:
        self.handlers = list(handlers)

    async def dispatch(self, event: WebhookEvent) -> bool:
        """Run all handlers concurrently.

        Returns:
            True if at least one handler recognized the event.
        """
        outcomes = await asyncio.gather(
            *(handler.handle(event) for handler in self.handlers),
            return_exceptions=True,
        )
        handled = False
        for handler, outcome in zip(self.handlers, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Webhook handler %s failed on %s: %s",
                    type(handler).__name__,
                    event.description,
                    outcome,
                )
            elif outcome:
                handled = True
        if not handled:
            logger.info(
                "Unhandled webhook received: %s %s", event.description, event.model_dump_json()
            )
        return handled


class FulfillmentWebhookHandler:
    """Applies tracker and refund events to fulfillments."""

    def __init__(
        self,
        db: Session,
        process: FulfillmentProcess,
        history: HistoryService | None = None,
    ) -> None:
        self.db = db
        self.process = process
        self.history = history or HistoryService(db)

    async def handle(self, event: WebhookEvent) -> bool:
        if isinstance(event, TrackerEvent):
            await self.handle_tracker(event.result)
            return True
        if isinstance(event, RefundEvent):
            self.handle_refund(event.result)
            return True
        return False

    def _find_tracked(self, tracker: TrackerResult) -> Fulfillment | None:
        # Legacy fulfillments have no tracker id; fall back to the shipment
        match_tracker = Fulfillment.tracker_id == tracker.id
        if tracker.shipment_id:
            match_tracker = or_(match_tracker, Fulfillment.shipment_id == tracker.shipment_id)
        return (
            self.db.query(Fulfillment)
            .filter(
                Fulfillment.tracking_code == tracker.tracking_code,
                Fulfillment.handler_code == HANDLER_CODE,
                match_tracker,
            )
            .first()
        )

    async def handle_tracker(self, tracker: TrackerResult) -> None:
        logger.info("Tracker event: %s for shipment %s", tracker.status, tracker.shipment_id)
        if not tracker.tracking_code:
            logger.warning("Tracker %s has no tracking code", tracker.id)
            return
        fulfillment = self._find_tracked(tracker)
        if fulfillment is None or fulfillment.state == FulfillmentState.cancelled.value:
            return

        update = FulfillmentTrackingData(
            status=tracker.status or "unknown",
            detail=tracker.status_detail,
            eta=tracker.est_delivery_date,
        )
        latest = self.history.latest_payload(
            HistoryEntryType.fulfillment_tracking, fulfillment_id=fulfillment.id
        )
        if latest != update:
            self.history.record_fulfillment(fulfillment.id, update, is_public=True)
            self.db.commit()

        target = None
        if tracker.status in SHIPPED_STATUSES and fulfillment.state != FulfillmentState.shipped.value:
            target = FulfillmentState.shipped
        elif (
            tracker.status in DELIVERED_STATUSES
            and fulfillment.state != FulfillmentState.delivered.value
        ):
            target = FulfillmentState.delivered
        if target is None:
            return

        result = await self.process.transition_to_state(fulfillment.id, target)
        if isinstance(result, TransitionRejected):
            logger.warning(
                "Tracker %s could not move fulfillment %s: %s",
                tracker.id,
                fulfillment.id,
                result.message,
            )

    def handle_refund(self, refund: RefundResult) -> None:
        if not refund.tracking_code:
            logger.warning("Refund for shipment %s has no tracking code", refund.shipment_id)
            return
        fulfillment = (
            self.db.query(Fulfillment)
            .filter(Fulfillment.tracking_code == refund.tracking_code)
            .first()
        )
        if fulfillment is None:
            logger.warning("No fulfillment found for refunded tracking code %s", refund.tracking_code)
            return

        update = FulfillmentRefundData(
            shipment_id=refund.shipment_id, status=refund.status or "refunded"
        )
        recorded = self.history.list_entries(
            fulfillment_id=fulfillment.id, entry_type=HistoryEntryType.fulfillment_refund
        )
        if any(parse_payload(entry) == update for entry in recorded):
            return
        self.history.record_fulfillment(fulfillment.id, update)
        self.db.commit()


# ============================================================================
# Registration
# ============================================================================


async def register_webhook(client: EasyPostClient, url: str, secret: str) -> None:
    """Make sure EasyPost posts to ``url`` with ``secret``.

    An existing webhook on the same host and path gets the new secret;
    webhooks on the same host with another path are removed. A new
    webhook is created only when none matched.
    """
    if not url:
        return

    target = urlparse(url)
    found = False
    for webhook in await client.list_webhooks():
        existing = urlparse(webhook.get("url") or "")
        if existing.hostname != target.hostname:
            continue
        if existing.path == target.path:
            await client.update_webhook(webhook["id"], secret)
            found = True
        else:
            await client.delete_webhook(webhook["id"])
            logger.info("Removed stale webhook %s (%s)", webhook["id"], webhook.get("url"))

    if not found:
        await client.create_webhook(url, secret)
        logger.info("Registered EasyPost webhook %s", url)
