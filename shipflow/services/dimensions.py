"""Package dimension estimation from line items.

Weights are in ounces and lengths in inches, matching what EasyPost
expects on a parcel.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass

# Extra volume allowed for packing material
PACKING_SLACK = 1.2
MIN_WEIGHT_OZ = 1.0


@dataclass(frozen=True)
class PackageItem:
    """One line's worth of identical items going into the package."""

    quantity: int
    weight: float = 0.0
    length: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True)
class PackageDimensions:
    weight: float
    length: int
    width: int
    height: int


def estimate_dimensions(items: Iterable[PackageItem]) -> PackageDimensions:
    """Estimate the parcel needed to hold every item.

    The largest single item's footprint is respected first, then the box
    grows in height, width and length (in that order) until it holds the
    total item volume plus packing slack.

    Args:
        items: Items with per-unit weight and dimensions.

    Returns:
        Parcel weight (at least 1 oz) and whole-inch dimensions.
    """
    total_weight = 0.0
    total_volume = 0.0
    max_length = max_width = max_height = 0.0

    for item in items:
        length = item.length or 0.0
        width = item.width or 0.0
        height = item.height or 0.0
        total_weight += (item.weight or 0.0) * item.quantity
        total_volume += length * width * height * item.quantity * PACKING_SLACK
        max_length = max(max_length, length)
        max_width = max(max_width, width)
        max_height = max(max_height, height)

    # Items with no footprint contribute no volume-derived size
    footprint = max_length * max_width
    height = max(_safe_div(total_volume, footprint) ** (1 / 3), max_height)
    width = max(_safe_div(total_volume, max_length * height), max_width)
    length = max(math.sqrt(_safe_div(total_volume, width * height)), max_length)

    return PackageDimensions(
        weight=max(total_weight, MIN_WEIGHT_OZ),
        length=math.ceil(length),
        width=math.ceil(width),
        height=math.ceil(height),
    )


def _safe_div(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator
