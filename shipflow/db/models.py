"""SQLAlchemy ORM models for the ShipFlow fulfillment database.

This module defines orders, stock-bearing product variants, fulfillments,
pickups and the append-only history trail. Uses SQLAlchemy 2.0 style
with Mapped and mapped_column. Money is stored as integer cents.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class FulfillmentState(str, Enum):
    """States of a single physical shipment.

    Lifecycle: Created -> Pending -> Purchased -> Tendered -> Shipped -> Delivered
               any non-terminal -> Cancelled
    """

    created = "Created"
    pending = "Pending"
    on_hold = "OnHold"
    purchased = "Purchased"
    tendered = "Tendered"
    shipped = "Shipped"
    delivered = "Delivered"
    cancelled = "Cancelled"


# States counted as "this quantity has left the building or is committed to"
ACTIVE_FULFILLMENT_STATES: frozenset[FulfillmentState] = frozenset({
    FulfillmentState.purchased,
    FulfillmentState.tendered,
    FulfillmentState.shipped,
    FulfillmentState.delivered,
})


class OrderState(str, Enum):
    """Order status ladder, from checkout through delivery."""

    created = "Created"
    draft = "Draft"
    adding_items = "AddingItems"
    arranging_payment = "ArrangingPayment"
    payment_authorized = "PaymentAuthorized"
    payment_settled = "PaymentSettled"
    on_hold = "OnHold"
    partially_shipped = "PartiallyShipped"
    shipped = "Shipped"
    partially_delivered = "PartiallyDelivered"
    delivered = "Delivered"
    modifying = "Modifying"
    arranging_additional_payment = "ArrangingAdditionalPayment"
    cancelled = "Cancelled"


# Orders whose state is derived from their fulfillments
PLACED_ORDER_STATES: frozenset[OrderState] = frozenset({
    OrderState.payment_settled,
    OrderState.on_hold,
    OrderState.partially_shipped,
    OrderState.shipped,
    OrderState.partially_delivered,
})


class PickupState(str, Enum):
    """Pickup lifecycle: Open -> Closed."""

    open = "Open"
    closed = "Closed"


class HistoryEntryType(str, Enum):
    """Discriminator for history entry payloads."""

    order_state_transition = "order_state_transition"
    order_fulfillment_transition = "order_fulfillment_transition"
    fulfillment_tracking = "fulfillment_tracking"
    fulfillment_purchased = "fulfillment_purchased"
    fulfillment_refund = "fulfillment_refund"
    fulfillment_service_change = "fulfillment_service_change"
    fulfillment_shipment_created = "fulfillment_shipment_created"
    pickup_state_change = "pickup_state_change"
    pickup_batch = "pickup_batch"
    pickup_scan_form = "pickup_scan_form"
    pickup_schedule = "pickup_schedule"


class StockMovementType(str, Enum):
    """Categories of stock ledger entries."""

    allocation = "allocation"
    sale = "sale"
    cancellation = "cancellation"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# A fulfillment may span several orders shipping to the same address
fulfillment_orders = Table(
    "fulfillment_orders",
    Base.metadata,
    Column(
        "fulfillment_id",
        String(36),
        ForeignKey("fulfillments.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# Models


class ProductVariant(Base):
    """Stock-bearing product variant.

    Attributes:
        id: UUID primary key
        sku: Stock keeping unit, unique
        name: Display name
        stock_on_hand: Units physically in the warehouse
        stock_allocated: Units reserved for placed but unshipped orders
        shipping_weight: Per-item weight in ounces
        length: Per-item length in inches
        width: Per-item width in inches
        height: Per-item height in inches
        hs_tariff_number: Harmonized System code for customs declarations
    """

    __tablename__ = "product_variants"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    sku: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    stock_on_hand: Mapped[int] = mapped_column(default=0, nullable=False)
    stock_allocated: Mapped[int] = mapped_column(default=0, nullable=False)

    shipping_weight: Mapped[float | None] = mapped_column(nullable=True)
    length: Mapped[float | None] = mapped_column(nullable=True)
    width: Mapped[float | None] = mapped_column(nullable=True)
    height: Mapped[float | None] = mapped_column(nullable=True)
    hs_tariff_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<ProductVariant(sku={self.sku!r}, on_hand={self.stock_on_hand}, "
            f"allocated={self.stock_allocated})>"
        )


class Order(Base):
    """Customer order.

    The shipping choice (carrier/service) is selected at checkout and
    copied onto each fulfillment when it is created. Once placed, the
    order's state is derived from its fulfillments.

    Attributes:
        id: UUID primary key
        code: Human-facing order code
        state: Current OrderState value
        customer_email: Customer email, forwarded to the carrier
        ship_*: Shipping address fields
        carrier_id: Selected EasyPost carrier account id
        carrier_code: Selected carrier code (e.g. "usps")
        service_code: Selected carrier service code
        service_name: Selected service display name
        delivery_instructions: Free-text handling instructions
        shipping: Shipping charged to the customer in cents
        subtotal: Order subtotal in cents
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    state: Mapped[str] = mapped_column(
        String(40), nullable=False, default=OrderState.payment_settled.value
    )
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Shipping address
    ship_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ship_company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ship_street1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ship_street2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ship_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ship_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ship_postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    ship_country_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    ship_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Selected shipping choice
    carrier_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    carrier_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    service_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivery_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    shipping: Mapped[int] = mapped_column(default=0, nullable=False)
    subtotal: Mapped[int] = mapped_column(default=0, nullable=False)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    lines: Mapped[list["OrderLine"]] = relationship(
        "OrderLine", back_populates="order", cascade="all, delete-orphan"
    )
    fulfillments: Mapped[list["Fulfillment"]] = relationship(
        "Fulfillment", secondary=fulfillment_orders, back_populates="orders"
    )

    __table_args__ = (Index("idx_orders_state", "state"),)

    def __repr__(self) -> str:
        return f"<Order(code={self.code!r}, state={self.state!r})>"


class OrderLine(Base):
    """Line item on an order.

    Attributes:
        id: UUID primary key
        order_id: Foreign key to parent order
        variant_id: Foreign key to the stock-bearing variant
        quantity: Units ordered
        unit_price: Unit price in cents
        discounted_line_price: Line total after discounts in cents
    """

    __tablename__ = "order_lines"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    variant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("product_variants.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(nullable=False)
    unit_price: Mapped[int] = mapped_column(default=0, nullable=False)
    discounted_line_price: Mapped[int] = mapped_column(default=0, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="lines")
    variant: Mapped["ProductVariant"] = relationship("ProductVariant")

    __table_args__ = (Index("idx_order_lines_order_id", "order_id"),)

    def __repr__(self) -> str:
        return f"<OrderLine(id={self.id!r}, quantity={self.quantity})>"


class Fulfillment(Base):
    """One physical shipment (or manual equivalent) for one or more orders.

    Attributes:
        id: UUID primary key
        state: Current FulfillmentState value
        handler_code: Code of the handler that owns side effects
        method: Display name of the shipping method
        tracking_code: Carrier tracking number
        weight/length/width/height: Package dimensions (oz / inches)
        carrier_id/carrier_code/service_code/service_name: Shipping choice
        shipment_id: EasyPost shipment id
        rate_id: EasyPost rate id selected at shipment creation
        tracker_id: EasyPost tracker id
        rate_purchased_at: ISO8601 timestamp of label purchase
        label_url: URL of the purchased label
        rate_cost: Label cost in cents
        insurance_cost: Insurance paid to the insurer in cents
        comm_invoice_url: Commercial invoice URL for international shipments
        comm_invoice_filed: Whether the invoice was filed electronically
        treat_as_manual: Shipped outside EasyPost; tracking only
        invoice_id: Human-facing invoice number
        label_scanned_at: ISO8601 timestamp of the warehouse label scan
        pickup_id: Owning pickup, if any
    """

    __tablename__ = "fulfillments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FulfillmentState.created.value
    )
    handler_code: Mapped[str] = mapped_column(
        String(50), nullable=False, default="easy-post"
    )
    method: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    tracking_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Package
    weight: Mapped[float | None] = mapped_column(nullable=True)
    length: Mapped[float | None] = mapped_column(nullable=True)
    width: Mapped[float | None] = mapped_column(nullable=True)
    height: Mapped[float | None] = mapped_column(nullable=True)

    # Shipping choice
    carrier_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    carrier_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    service_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Provider identifiers
    shipment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rate_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tracker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rate_purchased_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    label_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Cost tracking (in cents to avoid float issues)
    rate_cost: Mapped[int | None] = mapped_column(nullable=True)
    insurance_cost: Mapped[int | None] = mapped_column(nullable=True)

    comm_invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    comm_invoice_filed: Mapped[bool] = mapped_column(nullable=False, default=False)
    treat_as_manual: Mapped[bool] = mapped_column(nullable=False, default=False)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    label_scanned_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    pickup_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("pickups.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    lines: Mapped[list["FulfillmentLine"]] = relationship(
        "FulfillmentLine", back_populates="fulfillment", cascade="all, delete-orphan"
    )
    orders: Mapped[list["Order"]] = relationship(
        "Order", secondary=fulfillment_orders, back_populates="fulfillments"
    )
    pickup: Mapped[Optional["Pickup"]] = relationship(
        "Pickup", back_populates="fulfillments"
    )

    __table_args__ = (
        Index("idx_fulfillments_state", "state"),
        Index("idx_fulfillments_tracking", "tracking_code"),
        Index("idx_fulfillments_shipment", "shipment_id"),
        Index("idx_fulfillments_pickup", "pickup_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Fulfillment(id={self.id!r}, state={self.state!r}, "
            f"tracking_code={self.tracking_code!r})>"
        )


class FulfillmentLine(Base):
    """Quantity of one order line covered by a fulfillment."""

    __tablename__ = "fulfillment_lines"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    fulfillment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fulfillments.id", ondelete="CASCADE"), nullable=False
    )
    order_line_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("order_lines.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(nullable=False)

    fulfillment: Mapped["Fulfillment"] = relationship(
        "Fulfillment", back_populates="lines"
    )
    order_line: Mapped["OrderLine"] = relationship("OrderLine")

    __table_args__ = (
        Index("idx_fulfillment_lines_fulfillment", "fulfillment_id"),
        Index("idx_fulfillment_lines_order_line", "order_line_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<FulfillmentLine(order_line_id={self.order_line_id!r}, "
            f"quantity={self.quantity})>"
        )


class Pickup(Base):
    """Carrier pickup grouping purchased fulfillments.

    Attributes:
        id: UUID primary key
        state: Open while membership may change, Closed once manifested
        carrier: Carrier code shared by every member
        batch_id: EasyPost batch id
        scan_form_id: EasyPost scan form id
        scan_form_url: Printable scan form URL
        provider_pickup_id: EasyPost pickup id once scheduled
        pickup_window_start: ISO8601 start of the scheduled window
        pickup_window_end: ISO8601 end of the scheduled window
        pickup_cost: Pickup cost in cents
    """

    __tablename__ = "pickups"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    state: Mapped[str] = mapped_column(
        String(10), nullable=False, default=PickupState.open.value
    )
    carrier: Mapped[str] = mapped_column(String(50), nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scan_form_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scan_form_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_pickup_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pickup_window_start: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pickup_window_end: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pickup_cost: Mapped[int | None] = mapped_column(nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    fulfillments: Mapped[list["Fulfillment"]] = relationship(
        "Fulfillment", back_populates="pickup"
    )

    __table_args__ = (
        Index("idx_pickups_state_carrier", "state", "carrier"),
        Index("idx_pickups_batch", "batch_id"),
        Index("idx_pickups_scan_form", "scan_form_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Pickup(id={self.id!r}, carrier={self.carrier!r}, state={self.state!r})>"
        )


class HistoryEntry(Base):
    """Append-only audit record attached to an order, fulfillment or pickup.

    Attributes:
        id: UUID primary key
        order_id/fulfillment_id/pickup_id: Exactly one is set
        type: HistoryEntryType value, discriminates the payload
        is_public: Visible to the customer
        administrator: Name of the operator who caused the entry, if any
        data: JSON payload validated by the matching payload model
        created_at: ISO8601 timestamp
    """

    __tablename__ = "history_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=True
    )
    fulfillment_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("fulfillments.id", ondelete="CASCADE"), nullable=True
    )
    pickup_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("pickups.id", ondelete="CASCADE"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_public: Mapped[bool] = mapped_column(nullable=False, default=False)
    administrator: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_history_order", "order_id"),
        Index("idx_history_fulfillment", "fulfillment_id"),
        Index("idx_history_pickup", "pickup_id"),
        Index("idx_history_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<HistoryEntry(id={self.id!r}, type={self.type!r})>"


class StockMovement(Base):
    """Stock ledger row. Never updated once written."""

    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    variant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("product_variants.id"), nullable=False
    )
    order_line_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("order_lines.id"), nullable=True
    )
    quantity: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (Index("idx_stock_movements_variant", "variant_id"),)

    def __repr__(self) -> str:
        return (
            f"<StockMovement(type={self.type!r}, variant_id={self.variant_id!r}, "
            f"quantity={self.quantity})>"
        )
