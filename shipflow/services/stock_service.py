"""Stock ledger operations for fulfillment lines.

Allocated stock is reserved for placed orders; a sale removes it from
on-hand. Every change writes a StockMovement row.
"""

import logging
from collections.abc import Iterable

from sqlalchemy.orm import Session

from shipflow.db.models import FulfillmentLine, StockMovement, StockMovementType

logger = logging.getLogger(__name__)


class StockService:
    """Moves stock between allocated, sold and on-hand for fulfillment lines."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def check_availability(self, lines: Iterable[FulfillmentLine]) -> str | None:
        """Verify on-hand stock covers every line.

        Returns:
            None when every line is covered, otherwise one message per
            short line joined by newlines.
        """
        messages = []
        for line in lines:
            variant = line.order_line.variant
            if variant.stock_on_hand < line.quantity:
                messages.append(
                    f"Not enough stock of {variant.sku}! Only {variant.stock_on_hand} "
                    f"on hand ({variant.stock_allocated} total allocated)."
                )
        return "\n".join(messages) if messages else None

    def create_allocations(self, lines: Iterable[FulfillmentLine]) -> None:
        for line in lines:
            variant = line.order_line.variant
            variant.stock_allocated += line.quantity
            self._movement(StockMovementType.allocation, line)

    def create_sales(self, lines: Iterable[FulfillmentLine]) -> None:
        """Convert allocations to sales: stock leaves the warehouse."""
        for line in lines:
            variant = line.order_line.variant
            variant.stock_on_hand -= line.quantity
            variant.stock_allocated = max(0, variant.stock_allocated - line.quantity)
            self._movement(StockMovementType.sale, line)

    def create_cancellations(self, lines: Iterable[FulfillmentLine]) -> None:
        """Return sold stock to on-hand."""
        for line in lines:
            variant = line.order_line.variant
            variant.stock_on_hand += line.quantity
            self._movement(StockMovementType.cancellation, line)

    def _movement(self, movement_type: StockMovementType, line: FulfillmentLine) -> None:
        self.db.add(
            StockMovement(
                type=movement_type.value,
                variant_id=line.order_line.variant_id,
                order_line_id=line.order_line_id,
                quantity=line.quantity,
            )
        )
        logger.debug(
            "Stock %s of %d x %s", movement_type.value, line.quantity, line.order_line.variant.sku
        )
