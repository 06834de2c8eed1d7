"""Shipping label documents for purchased fulfillments.

Labels are fetched as ZPL, converted to PDF in batches and then split
or merged with pypdf. A label that cannot be fetched or converted is
replaced by a printable error label so one bad fulfillment never blocks a
print run.
"""

import asyncio
import io
import logging
from collections.abc import Sequence

import httpx
from pypdf import PdfReader, PdfWriter

from shipflow.db.models import Fulfillment
from shipflow.errors.domain import LabelConversionError
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.label_converter import LabelConverter, PdfLabel, ZplLabel, count_pages

logger = logging.getLogger(__name__)


def error_label_zpl(invoice_id: str | None, error: str) -> bytes:
    """A single 4x6 label explaining why the real label is missing."""
    return (
        "^XA\n"
        "^FX Error label, not a shipping label.\n"
        "^CF0,60\n"
        "^FO50,50^GB100,100,100^FS\n"
        "^FO75,75^FR^GB100,100,100^FS\n"
        "^FO93,93^GB40,40,40^FS\n"
        f"^FO220,50^FDBroken: {invoice_id or 'unknown'}^FS\n"
        "^CF0,30\n"
        "^FO220,115^FDThis label didn't print^FS\n"
        f"^FO220,155^FD{error}^FS\n"
        "^FO220,195^FDAddress the issue and try again^FS\n"
        "^FO50,250^GB700,3,3^FS\n"
        "^XZ"
    ).encode("utf-8")


class LabelService:
    def __init__(
        self,
        client: EasyPostClient,
        converter: LabelConverter | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.converter = converter or LabelConverter()
        self._timeout = timeout

    async def _fetch_zpl(self, http: httpx.AsyncClient, fulfillment: Fulfillment) -> ZplLabel:
        if not fulfillment.shipment_id:
            error = f"No shipment ID found for fulfillment {fulfillment.id}"
            return ZplLabel(fulfillment.id, error_label_zpl(fulfillment.invoice_id, error))

        try:
            label_url = fulfillment.label_url
            if not label_url:
                shipment = await self.client.retrieve_shipment(fulfillment.shipment_id)
                label_url = (shipment.get("postage_label") or {}).get("label_zpl_url")
            if not label_url:
                return ZplLabel(
                    fulfillment.id, error_label_zpl(fulfillment.invoice_id, "No label URL found")
                )
            response = await http.get(label_url)
            response.raise_for_status()
            return ZplLabel(fulfillment.id, response.content)
        except Exception as e:
            logger.error("Error fetching ZPL label for %s: %s", fulfillment.invoice_id, e)
            error = f"Error fetching ZPL label for {fulfillment.invoice_id}: {e}"
            return ZplLabel(fulfillment.id, error_label_zpl(fulfillment.invoice_id, error))

    async def get_zpl_labels(self, fulfillments: Sequence[Fulfillment]) -> list[ZplLabel]:
        """Fetch every fulfillment's label concurrently, in input order."""
        async with httpx.AsyncClient(timeout=self._timeout) as http:
            return list(
                await asyncio.gather(*(self._fetch_zpl(http, f) for f in fulfillments))
            )

    async def render_labels(self, fulfillments: Sequence[Fulfillment]) -> list[PdfLabel]:
        """Render every fulfillment's label, one result per fulfillment.

        If a conversion request fails, each label is converted on its own
        and any label that still fails is replaced by an error label.

        Raises:
            LabelConversionError: Even an error label could not be rendered.
        """
        invoice_ids = {f.id: f.invoice_id for f in fulfillments}
        labels = []
        for label in await self.get_zpl_labels(fulfillments):
            if count_pages(label.zpl) == 0:
                logger.error("Label for %s has no printable pages", invoice_ids[label.item_id])
                label = ZplLabel(
                    label.item_id,
                    error_label_zpl(invoice_ids[label.item_id], "Label has no printable pages"),
                )
            labels.append(label)

        try:
            return await self.converter.convert(labels)
        except LabelConversionError as e:
            logger.error("Label conversion failed, converting one by one: %s", e)

        rendered: list[PdfLabel] = []
        for label in labels:
            try:
                [pdf_label] = await self.converter.convert([label])
            except LabelConversionError as e:
                logger.error("Label for %s failed to convert: %s", invoice_ids[label.item_id], e)
                error = ZplLabel(label.item_id, error_label_zpl(invoice_ids[label.item_id], str(e)))
                [pdf_label] = await self.converter.convert([error])
            rendered.append(pdf_label)
        return rendered


def extract_item_pdf(label: PdfLabel) -> bytes:
    """Copy one item's page range out of its shared batch PDF."""
    reader = PdfReader(io.BytesIO(label.pdf))
    writer = PdfWriter()
    for index in range(label.page_start, label.page_end + 1):
        writer.add_page(reader.pages[index])
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def merge_label_documents(labels: Sequence[PdfLabel]) -> bytes:
    """Concatenate items' pages, in the given order, into one PDF."""
    writer = PdfWriter()
    readers: dict[int, PdfReader] = {}
    for label in labels:
        # Items from one batch share the same bytes object
        reader = readers.get(id(label.pdf))
        if reader is None:
            reader = PdfReader(io.BytesIO(label.pdf))
            readers[id(label.pdf)] = reader
        for index in range(label.page_start, label.page_end + 1):
            writer.add_page(reader.pages[index])
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()
