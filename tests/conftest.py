"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite session
- Application config with origin and pickup addresses
- Factories for variants, orders and fulfillments
"""

import itertools
from collections.abc import Generator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shipflow.config import AddressConfig, PickupConfig, ShipFlowConfig
from shipflow.db.models import (
    Base,
    Fulfillment,
    FulfillmentLine,
    FulfillmentState,
    Order,
    OrderLine,
    OrderState,
    ProductVariant,
)
from shipflow.services.easypost_client import EasyPostClient


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """In-memory SQLite session shared across threads for TestClient use."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def config() -> ShipFlowConfig:
    """Config with a warehouse origin and a pickup address."""
    warehouse = AddressConfig(
        name="Warehouse",
        company="ShipFlow Test Co",
        street1="1 Dock Rd",
        city="Oakland",
        state="CA",
        zip="94607",
        phone="5105550100",
    )
    return ShipFlowConfig(
        origin=warehouse,
        pickup=PickupConfig(address=warehouse),
    )


@pytest.fixture
def mock_client() -> AsyncMock:
    """EasyPost client double; every API method is an AsyncMock."""
    return AsyncMock(spec=EasyPostClient)


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def make_variant(db: Session):
    counter = itertools.count(1)

    def _make(
        on_hand: int = 10,
        weight: float = 8.0,
        length: float = 6.0,
        width: float = 4.0,
        height: float = 2.0,
        sku: str | None = None,
    ) -> ProductVariant:
        n = next(counter)
        variant = ProductVariant(
            sku=sku or f"SKU-{n}",
            name=f"Widget {n}",
            stock_on_hand=on_hand,
            shipping_weight=weight,
            length=length,
            width=width,
            height=height,
        )
        db.add(variant)
        db.flush()
        return variant

    return _make


@pytest.fixture
def make_order(db: Session, make_variant):
    counter = itertools.count(1001)

    def _make(
        quantities: tuple[int, ...] = (5,),
        unit_price: int = 1000,
        state: OrderState = OrderState.payment_settled,
        on_hand: int = 10,
        **fields,
    ) -> Order:
        order = Order(
            code=f"SF{next(counter)}",
            state=state.value,
            customer_email="buyer@example.com",
            ship_name="Ada Buyer",
            ship_street1="500 Market St",
            ship_city="San Francisco",
            ship_state="CA",
            ship_postal_code="94105",
            ship_country_code="US",
            carrier_id="ca_usps",
            carrier_code="usps",
            service_code="priority",
            service_name="USPS Priority",
            shipping=1500,
            subtotal=unit_price * sum(quantities),
        )
        for quantity in quantities:
            variant = make_variant(on_hand=on_hand)
            order.lines.append(
                OrderLine(
                    variant=variant,
                    variant_id=variant.id,
                    quantity=quantity,
                    unit_price=unit_price,
                    discounted_line_price=unit_price * quantity,
                )
            )
        for key, value in fields.items():
            setattr(order, key, value)
        db.add(order)
        db.flush()
        return order

    return _make


@pytest.fixture
def make_fulfillment(db: Session):
    def _make(
        orders: list[Order],
        lines: list[tuple[OrderLine, int]] | None = None,
        state: FulfillmentState = FulfillmentState.created,
        **fields,
    ) -> Fulfillment:
        if lines is None:
            lines = [(line, line.quantity) for order in orders for line in order.lines]
        fulfillment = Fulfillment(
            state=state.value,
            handler_code="easy-post",
            method="USPS Priority",
            invoice_id=",".join(o.code for o in orders),
            weight=16.0,
            length=8,
            width=6,
            height=4,
            carrier_id="ca_usps",
            carrier_code="usps",
            service_code="priority",
            service_name="USPS Priority",
        )
        fulfillment.orders = list(orders)
        fulfillment.lines = [
            FulfillmentLine(order_line=order_line, order_line_id=order_line.id, quantity=qty)
            for order_line, qty in lines
        ]
        for key, value in fields.items():
            setattr(fulfillment, key, value)
        db.add(fulfillment)
        db.flush()
        return fulfillment

    return _make
