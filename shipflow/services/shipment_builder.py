"""Build EasyPost shipment requests from orders and fulfillments.

The same request shape is used for stateless quotes at checkout, for
re-quoting a fulfillment, and for creating the shipment that is later
bought. Customs info is always attached; EasyPost ignores it for
domestic shipments.
"""

import re
from dataclasses import dataclass
from typing import Any

from shipflow.config import AddressConfig, ShipFlowConfig
from shipflow.db.models import Fulfillment, Order, OrderLine
from shipflow.errors.domain import ShipmentRequestError
from shipflow.services.dimensions import PackageDimensions, PackageItem, estimate_dimensions

DEFAULT_ITEM_WEIGHT_OZ = 0.1


@dataclass(frozen=True)
class ShipmentLine:
    """An order line and the quantity of it going into this package."""

    order_line: OrderLine
    quantity: int


def is_valid_shipping_address(order: Order | None) -> bool:
    """Whether the order has enough address to quote or ship against."""
    if order is None:
        return False
    return bool(
        order.ship_street1
        and order.ship_city
        and order.ship_postal_code
        and order.ship_country_code
    )


def to_easypost_address(order: Order) -> dict[str, str]:
    address = {
        "name": order.ship_name or "Unknown",
        "company": order.ship_company or "",
        "street1": order.ship_street1 or "",
        "street2": order.ship_street2 or "",
        "city": order.ship_city or "",
        "state": order.ship_state or "",
        "zip": order.ship_postal_code or "",
        "country": order.ship_country_code or "",
        "phone": order.ship_phone or "",
    }
    if order.customer_email:
        address["email"] = order.customer_email
    return address


def address_from_config(address: AddressConfig) -> dict[str, str]:
    """Convert a configured address to EasyPost's address shape."""
    return {k: v for k, v in address.model_dump().items() if v}


def order_shipment_lines(order: Order) -> list[ShipmentLine]:
    return [ShipmentLine(line, line.quantity) for line in order.lines]


def fulfillment_shipment_lines(fulfillment: Fulfillment) -> list[ShipmentLine]:
    return [ShipmentLine(fl.order_line, fl.quantity) for fl in fulfillment.lines]


def package_items(lines: list[ShipmentLine]) -> list[PackageItem]:
    """Per-unit physical attributes of every shipped line."""
    items = []
    for line in lines:
        variant = line.order_line.variant
        items.append(
            PackageItem(
                quantity=line.quantity,
                weight=variant.shipping_weight or 0.0,
                length=variant.length or 0.0,
                width=variant.width or 0.0,
                height=variant.height or 0.0,
            )
        )
    return items


def build_shipment_request(
    order: Order,
    lines: list[ShipmentLine],
    dims: PackageDimensions,
    config: ShipFlowConfig,
    enforce_export_value: bool = False,
) -> dict[str, Any]:
    """Build an EasyPost shipment definition.

    Args:
        order: Order supplying the destination address.
        lines: Lines (with shipped quantities) in the package.
        dims: Parcel weight and dimensions.
        config: Origin address, customs and merchant settings.
        enforce_export_value: Reject international shipments whose
            declared value requires an AES ITN.

    Returns:
        Shipment dict suitable for rate quotes or shipment creation.

    Raises:
        ShipmentRequestError: If the export value limit is exceeded.
    """
    customs = config.customs
    total_value_cents = 0
    customs_items = []
    for line in lines:
        if line.quantity <= 0:
            continue
        order_line = line.order_line
        variant = order_line.variant
        # EasyPost wants totals for all units of the line, not per-unit values
        value_cents = _line_value_cents(order_line, line.quantity)
        total_value_cents += value_cents
        customs_items.append({
            "origin_country": customs.origin_country,
            "description": variant.name or "Unknown",
            "quantity": line.quantity,
            "value": value_cents / 100,
            "weight": (variant.shipping_weight or DEFAULT_ITEM_WEIGHT_OZ) * line.quantity,
            "code": variant.sku or "Unknown",
            "hs_tariff_number": variant.hs_tariff_number or customs.default_hs_tariff_number,
            "currency": "USD",
        })

    if (
        enforce_export_value
        and total_value_cents > customs.aes_threshold_cents
        and (order.ship_country_code or "").upper() != "US"
    ):
        raise ShipmentRequestError(
            "International shipments over $2500 require an Automated Export "
            "System (AES) Internal Transaction Number (ITN)",
            code="E-2002",
        )

    origin = config.origin
    return {
        "to_address": to_easypost_address(order),
        "from_address": address_from_config(origin),
        "parcel": {
            "weight": dims.weight,
            "length": dims.length,
            "width": dims.width,
            "height": dims.height,
        },
        "customs_info": {
            "contents_type": "merchandise",
            "contents_explanation": "",
            "customs_certify": True,
            "customs_signer": customs.signer or origin.name or "Unknown",
            "non_delivery_option": "return",
            "restriction_type": "none",
            "restriction_comments": "",
            "customs_items": customs_items,
            "eel_pfc": customs.eel_pfc,
        },
        "options": {
            "incoterm": "DAP",
            "label_size": "4x6",
            "label_format": "ZPL",
            "merchant_id": config.easypost.merchant_id or origin.company,
            "content_description": "Merchandise",
        },
    }


def order_to_shipment(order: Order, config: ShipFlowConfig) -> dict[str, Any]:
    """Shipment definition for quoting a whole order at checkout."""
    lines = order_shipment_lines(order)
    dims = estimate_dimensions(package_items(lines))
    return build_shipment_request(order, lines, dims, config)


def fulfillment_to_shipment(fulfillment: Fulfillment, config: ShipFlowConfig) -> dict[str, Any]:
    """Shipment definition for a fulfillment's stored package.

    The first order supplies the destination; fulfillments spanning
    several orders always share one address.

    Raises:
        ShipmentRequestError: If any dimension is missing or the export
            value limit is exceeded.
    """
    if not (fulfillment.weight and fulfillment.height and fulfillment.width and fulfillment.length):
        raise ShipmentRequestError(
            "Weight, height, width, and length are required to create a shipment",
            code="E-1001",
        )
    if not fulfillment.orders:
        raise ShipmentRequestError(f"Fulfillment {fulfillment.id} has no orders", code="E-1001")

    order = fulfillment.orders[0]
    dims = PackageDimensions(
        weight=fulfillment.weight,
        length=int(fulfillment.length),
        width=int(fulfillment.width),
        height=int(fulfillment.height),
    )
    shipment = build_shipment_request(
        order,
        fulfillment_shipment_lines(fulfillment),
        dims,
        config,
        enforce_export_value=True,
    )
    if fulfillment.invoice_id:
        shipment["options"]["invoice_number"] = fulfillment.invoice_id
    return shipment


def _line_value_cents(order_line: OrderLine, quantity: int) -> int:
    if order_line.quantity <= 0:
        return 0
    if quantity == order_line.quantity:
        return order_line.discounted_line_price
    return round(order_line.discounted_line_price * quantity / order_line.quantity)


def line_value_cents(lines: list[ShipmentLine]) -> int:
    """Undiscounted merchandise value of the shipped quantities."""
    return sum(line.quantity * line.order_line.unit_price for line in lines)


# -- Service names ---------------------------------------------------------------

_CARRIER_EXPRESS = re.compile(r"\s*express\s*", re.IGNORECASE)
_WORD = re.compile(r"\b\w+", re.ASCII)
_ORDINAL = re.compile(r"^([0-9]+)(st|nd|rd|th)$", re.IGNORECASE)


def format_ship_service_name(name: str, carrier: str) -> str:
    """Combine a carrier and raw service code into a display name.

    Examples:
        format_ship_service_name("FEDEX_GROUND", "FedEx") -> "FedEx Ground"
        format_ship_service_name("UPSSaver", "UPS") -> "UPS Saver"
        format_ship_service_name("ExpressMailInternational", "USPS")
            -> "USPS Express Mail International"
    """
    formatted_carrier = _CARRIER_EXPRESS.sub(" ", carrier, count=1).strip()

    processed = re.sub(
        rf"^{re.escape(formatted_carrier)}\s*", "", name, flags=re.IGNORECASE
    ).strip()
    processed = processed.replace("_", " ")
    processed = re.sub(r"([a-z])([A-Z])", r"\1 \2", processed)
    processed = re.sub(r"\s+", " ", processed).strip()

    if processed == processed.upper():
        processed = processed.lower()

    processed = _WORD.sub(lambda m: _format_word(m.group(0)), processed)
    return f"{formatted_carrier} {processed}".strip()


def _format_word(word: str) -> str:
    # Abbreviations stay as they are
    if word.upper() == word and len(word) > 1:
        return word
    ordinal = _ORDINAL.match(word)
    if ordinal:
        return ordinal.group(1) + ordinal.group(2).lower()
    if word.lower() in ("am", "pm"):
        return word.upper()
    return word[:1].upper() + word[1:].lower()
