"""Tests for stock ledger movements."""

from shipflow.db.models import StockMovement
from shipflow.services.stock_service import StockService


def test_availability_ok(db, make_order, make_fulfillment):
    fulfillment = make_fulfillment([make_order(quantities=(5,), on_hand=5)])
    assert StockService(db).check_availability(fulfillment.lines) is None


def test_availability_reports_each_short_line(db, make_order, make_fulfillment):
    order = make_order(quantities=(3, 2), on_hand=2)
    order.lines[0].variant.stock_allocated = 4
    fulfillment = make_fulfillment([order])

    message = StockService(db).check_availability(fulfillment.lines)

    sku = order.lines[0].variant.sku
    assert message == f"Not enough stock of {sku}! Only 2 on hand (4 total allocated)."


def test_sale_then_cancellation(db, make_order, make_fulfillment):
    order = make_order(quantities=(3,), on_hand=10)
    variant = order.lines[0].variant
    variant.stock_allocated = 3
    fulfillment = make_fulfillment([order])
    stock = StockService(db)

    stock.create_sales(fulfillment.lines)
    assert (variant.stock_on_hand, variant.stock_allocated) == (7, 0)

    stock.create_cancellations(fulfillment.lines)
    assert variant.stock_on_hand == 10

    db.flush()
    types = [m.type for m in db.query(StockMovement).all()]
    assert sorted(types) == ["cancellation", "sale"]


def test_sale_never_drives_allocation_negative(db, make_order, make_fulfillment):
    order = make_order(quantities=(2,), on_hand=5)
    fulfillment = make_fulfillment([order])
    StockService(db).create_sales(fulfillment.lines)
    assert order.lines[0].variant.stock_allocated == 0


def test_allocation(db, make_order, make_fulfillment):
    order = make_order(quantities=(4,))
    fulfillment = make_fulfillment([order])
    StockService(db).create_allocations(fulfillment.lines)
    assert order.lines[0].variant.stock_allocated == 4
