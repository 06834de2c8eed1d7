"""Tests for label barcode to tracking number mapping."""

import pytest

from shipflow.services.barcodes import tracking_numbers_for_barcode


@pytest.mark.parametrize(
    "barcode,expected",
    [
        (
            "420123459405511899223197428490",
            ["9405511899223197428490", "05511899223197428490"],
        ),
        (
            "4209410792001234567890123456",
            ["001234567890123456", "92001234567890123456"],
        ),
        ("1234567890123456789000001234567890", ["1234567890"]),
        ("9612345678901234567890", ["901234567890"]),
        ("1Z999AA10123456784", ["1Z999AA10123456784"]),
    ],
)
def test_candidates(barcode, expected):
    assert tracking_numbers_for_barcode(barcode) == expected
