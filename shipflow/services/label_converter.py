"""ZPL to PDF conversion through the Labelary rendering service.

Labels are packed greedily into requests of at most ``max_pages`` pages
(one page per ``^XA`` label start). Every item in a request shares the
returned PDF and records the inclusive page range it occupies.
"""

import asyncio
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from shipflow.config import LabelConfig
from shipflow.errors.domain import LabelConversionError

logger = logging.getLogger(__name__)

INVERTED_PRINT = b"^POI"
NORMAL_PRINT = b"^PON"
LABEL_START = b"^XA"


@dataclass(frozen=True)
class ZplLabel:
    item_id: str
    zpl: bytes


@dataclass(frozen=True)
class PdfLabel:
    """One item's pages within a shared PDF. Pages are zero-based, inclusive."""

    item_id: str
    pdf: bytes
    page_start: int
    page_end: int


@dataclass(frozen=True)
class _BatchItem:
    item_id: str
    zpl: bytes
    page_count: int


def normalize_zpl(zpl: bytes) -> bytes:
    """Undo inverted print orientation, which renders labels upside down."""
    return zpl.replace(INVERTED_PRINT, NORMAL_PRINT)


def count_pages(zpl: bytes) -> int:
    return zpl.count(LABEL_START)


def pack_batches(labels: Sequence[ZplLabel], max_pages: int) -> list[list[_BatchItem]]:
    """Greedily pack labels into batches of at most ``max_pages`` pages.

    Items are never split across batches and keep their input order.

    Raises:
        LabelConversionError: If one label alone exceeds ``max_pages``.
    """
    batches: list[list[_BatchItem]] = []
    current: list[_BatchItem] = []
    current_pages = 0

    for label in labels:
        zpl = normalize_zpl(label.zpl)
        item = _BatchItem(label.item_id, zpl, count_pages(zpl))

        if current_pages + item.page_count > max_pages:
            if current:
                batches.append(current)
            current = []
            current_pages = 0

        if item.page_count > max_pages:
            raise LabelConversionError(
                f"Item {item.item_id} has {item.page_count} pages, which exceeds "
                f"the maximum of {max_pages} pages per request"
            )

        current.append(item)
        current_pages += item.page_count

    if current:
        batches.append(current)
    return batches


class LabelConverter:
    """Converts ZPL labels to PDF, batching requests and retrying rate limits."""

    def __init__(self, config: LabelConfig | None = None) -> None:
        self.config = config or LabelConfig()

    async def _render(self, client: httpx.AsyncClient, zpl: bytes) -> bytes:
        retries_left = self.config.max_retries
        while True:
            try:
                response = await client.post(
                    self.config.service_url,
                    content=zpl,
                    headers={
                        "Accept": "application/pdf",
                        "Content-Type": "application/x-www-form-urlencoded",
                    },
                )
            except httpx.RequestError as e:
                raise LabelConversionError(f"Label service unavailable: {e}") from e
            status = response.status_code
            if status < 400:
                return response.content

            if status == 429:
                if retries_left <= 0:
                    raise LabelConversionError("Max retries reached for rate limit", status)
                retries_left -= 1
                delay = self.config.base_delay_seconds + random.random()
                logger.warning("Label service rate limited; retrying in %.2fs", delay)
                await asyncio.sleep(delay)
                continue
            if status == 413:
                raise LabelConversionError(
                    f"Payload too large: maximum {self.config.max_pages_per_request} "
                    "pages per request",
                    status,
                )
            if status == 400:
                raise LabelConversionError(
                    "Bad request: check label size and embedded object/image constraints",
                    status,
                )
            raise LabelConversionError(f"HTTP error {status}: {response.reason_phrase}", status)

    async def convert(self, labels: Sequence[ZplLabel]) -> list[PdfLabel]:
        """Render labels to PDF.

        Returns:
            One PdfLabel per input label, in input order.

        Raises:
            LabelConversionError: A label is too large or rendering failed.
        """
        batches = pack_batches(labels, self.config.max_pages_per_request)
        results: list[PdfLabel] = []

        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            for batch in batches:
                pdf = await self._render(client, b"".join(item.zpl for item in batch))
                page = 0
                for item in batch:
                    results.append(
                        PdfLabel(
                            item_id=item.item_id,
                            pdf=pdf,
                            page_start=page,
                            page_end=page + item.page_count - 1,
                        )
                    )
                    page += item.page_count

        logger.info("Converted %d label(s) in %d request(s)", len(results), len(batches))
        return results
