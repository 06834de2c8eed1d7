"""Tests for package dimension estimation."""

from shipflow.services.dimensions import PackageItem, estimate_dimensions


def test_weight_never_below_one_ounce():
    dims = estimate_dimensions([PackageItem(quantity=1, weight=0.2)])
    assert dims.weight == 1.0


def test_empty_package():
    dims = estimate_dimensions([])
    assert dims.weight == 1.0
    assert (dims.length, dims.width, dims.height) == (0, 0, 0)


def test_weight_sums_quantities():
    dims = estimate_dimensions([
        PackageItem(quantity=3, weight=4.0, length=2, width=2, height=2),
        PackageItem(quantity=2, weight=1.5, length=1, width=1, height=1),
    ])
    assert dims.weight == 15.0


def test_each_axis_fits_largest_item():
    items = [
        PackageItem(quantity=1, weight=1, length=12, width=1, height=1),
        PackageItem(quantity=1, weight=1, length=1, width=9, height=1),
        PackageItem(quantity=1, weight=1, length=1, width=1, height=7),
    ]
    dims = estimate_dimensions(items)
    assert dims.length >= 12
    assert dims.width >= 9
    assert dims.height >= 7


def test_single_item_rounds_up_to_whole_inches():
    dims = estimate_dimensions([PackageItem(quantity=1, weight=3, length=5.5, width=3.2, height=1.1)])
    assert (dims.length, dims.width, dims.height) == (6, 4, 2)


def test_doubling_quantity_never_shrinks_package():
    base = [PackageItem(quantity=4, weight=2, length=6, width=4, height=2)]
    doubled = [PackageItem(quantity=8, weight=2, length=6, width=4, height=2)]
    small = estimate_dimensions(base)
    large = estimate_dimensions(doubled)
    assert large.length >= small.length
    assert large.width >= small.width
    assert large.height >= small.height
    assert large.length * large.width * large.height > small.length * small.width * small.height
