"""Database module for ShipFlow orders, fulfillments and pickups."""

from shipflow.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from shipflow.db.models import (
    ACTIVE_FULFILLMENT_STATES,
    PLACED_ORDER_STATES,
    Fulfillment,
    FulfillmentLine,
    FulfillmentState,
    HistoryEntry,
    HistoryEntryType,
    Order,
    OrderLine,
    OrderState,
    Pickup,
    PickupState,
    ProductVariant,
    StockMovement,
    StockMovementType,
)

__all__ = [
    # Models
    "Fulfillment",
    "FulfillmentLine",
    "HistoryEntry",
    "Order",
    "OrderLine",
    "Pickup",
    "ProductVariant",
    "StockMovement",
    # Enums
    "FulfillmentState",
    "HistoryEntryType",
    "OrderState",
    "PickupState",
    "StockMovementType",
    "ACTIVE_FULFILLMENT_STATES",
    "PLACED_ORDER_STATES",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
