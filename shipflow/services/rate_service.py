"""Rate shopping: quote, normalize, filter and price carrier rates.

Raw EasyPost rates go through a fixed pipeline before anyone sees them:
eligibility per carrier account, a minimum-price floor, forbidden
services, operating currency and display-name exclusions. Survivors are
grouped per carrier and priced with the insurance split, so every quoted
service already includes the insurance amount collected from the customer.
"""

import logging
import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from shipflow.config import ShipFlowConfig
from shipflow.db.models import Fulfillment, Order
from shipflow.errors.domain import DomainError, IllegalOperationError, ShipmentRequestError
from shipflow.services.cache import NullCache, RedisCache
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.shipment_builder import (
    format_ship_service_name,
    fulfillment_shipment_lines,
    fulfillment_to_shipment,
    is_valid_shipping_address,
    line_value_cents,
    order_to_shipment,
)

logger = logging.getLogger(__name__)

# Codes EasyPost uses for the same carrier depending on account type
CARRIER_ALIASES: dict[str, str] = {
    "ups": "upsdap",
    "fedex": "fedexdefault",
}

CARRIER_NAMES: dict[str, str] = {
    "ups": "UPS",
    "upsdap": "UPS",
    "fedex": "FedEx",
    "fedexdefault": "FedEx",
    "usps": "USPS",
    "dhlexpress": "DHL Express",
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return math.floor(value + 0.5)


def to_cents(amount: str | float | None) -> int:
    """Convert an EasyPost decimal amount (e.g. "12.50") to integer cents."""
    if amount in (None, ""):
        return 0
    return round_half_up(float(amount) * 100)


# ============================================================================
# Insurance
# ============================================================================

MIN_SHIPMENT_VALUE_CENTS = 5000
MIN_COLLECT_CENTS = 50
INSURANCE_RATE = 0.01


@dataclass(frozen=True)
class InsuranceQuote:
    """Insurance split for one shipment, all amounts in cents.

    Attributes:
        shipment_value: Value used for pricing, at least $50
        amount_to_collect: Charged to the customer, always
        should_insure: Whether insurance is actually bought
        value_to_insure: Declared value sent to EasyPost (0 when not insured)
        insurance_cost: Paid to the insurer; the gap to amount_to_collect is margin
    """

    shipment_value: int
    amount_to_collect: int
    should_insure: bool
    value_to_insure: int
    insurance_cost: int


def calculate_insurance(
    value_cents: int,
    minimum_insure_value_cents: int,
    insure_value_percent: float,
) -> InsuranceQuote:
    """Split a shipment's value into collected and purchased insurance.

    Args:
        value_cents: Merchandise value plus shipping, in cents.
        minimum_insure_value_cents: Below this no insurance is bought.
        insure_value_percent: Whole percentage of the value to insure.
    """
    shipment_value = max(MIN_SHIPMENT_VALUE_CENTS, value_cents)
    amount_to_collect = max(MIN_COLLECT_CENTS, round_half_up(shipment_value * INSURANCE_RATE))
    should_insure = shipment_value >= minimum_insure_value_cents
    value_to_insure = (
        round_half_up(shipment_value * insure_value_percent / 100) if should_insure else 0
    )
    insurance_cost = round_half_up(value_to_insure * INSURANCE_RATE)
    return InsuranceQuote(
        shipment_value=shipment_value,
        amount_to_collect=amount_to_collect,
        should_insure=should_insure,
        value_to_insure=value_to_insure,
        insurance_cost=insurance_cost,
    )


# ============================================================================
# Rate models
# ============================================================================


class ServiceRate(BaseModel):
    """One quotable carrier service.

    Costs are dollars because storefront clients display them directly.
    """

    id: str | None = None
    service_code: str
    service_name: str
    shipment_cost: float
    other_cost: float
    insurance_cost: float
    currency: str
    carrier_delivery_date: str | None = None
    carrier_delivery_guarantee: bool = False


class CarrierWithRates(BaseModel):
    id: str
    code: str
    name: str
    nickname: str
    services: list[ServiceRate] = []


class ShippingPrice(BaseModel):
    """Result of the checkout shipping calculator."""

    price: int
    tax: int = 0
    metadata: dict[str, Any] = {}


ShippingTaxStrategy = Callable[[Order, int], Awaitable[int]]


async def no_shipping_tax(order: Order, shipping_cents: int) -> int:
    """Default tax strategy: shipping is not taxed."""
    return 0


# ============================================================================
# Rate service
# ============================================================================


class RateService:
    """Quotes and normalizes EasyPost rates.

    Args:
        client: EasyPost client.
        config: Application configuration.
        cache: Read-through cache; NullCache when not configured.
        tax_strategy: Async callable returning shipping tax in cents.
    """

    def __init__(
        self,
        client: EasyPostClient,
        config: ShipFlowConfig,
        cache: RedisCache | NullCache | None = None,
        tax_strategy: ShippingTaxStrategy | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.cache = cache or NullCache()
        self.tax_strategy = tax_strategy or no_shipping_tax
        self._excluded_names = [
            re.compile(p) for p in config.rates.excluded_service_patterns
        ]

    def insurance_for(self, value_cents: int) -> InsuranceQuote:
        ins = self.config.insurance
        return calculate_insurance(
            value_cents, ins.minimum_insure_value_cents, ins.insure_value_percent
        )

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def get_carrier_info(self) -> dict[str, dict]:
        """Carrier metadata keyed by lower-cased carrier code and its alias.

        Best-effort: failures are logged and yield an empty map.
        """
        key = {"carrierTypes": "easypost"}
        cached = await self.cache.get(key)
        if cached:
            return cached

        try:
            carriers = await self.client.get_carrier_metadata()
        except Exception as e:
            logger.error("Error getting carrier info from EasyPost: %s", e)
            return {}

        carrier_map: dict[str, dict] = {}
        for carrier in carriers:
            name = (carrier.get("name") or "").lower()
            carrier_map[name] = carrier
            if name in CARRIER_ALIASES:
                carrier_map[CARRIER_ALIASES[name]] = carrier

        await self.cache.set(
            key, carrier_map, self.config.cache.carrier_metadata_ttl_seconds
        )
        return carrier_map

    async def get_raw_rates(
        self, shipment: dict[str, Any], ttl_seconds: int | None = None
    ) -> list[dict]:
        """Stateless rate quotes for a shipment request, cached briefly."""
        key = {"epRates": shipment}
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        rates = await self.client.get_stateless_rates(shipment)
        ttl = ttl_seconds if ttl_seconds is not None else self.config.cache.order_rates_ttl_seconds
        await self.cache.set(key, rates, ttl)
        if not rates:
            logger.warning("No rates found for shipment to %s", shipment.get("to_address", {}).get("zip"))
        return rates

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def is_carrier_enabled(self, carrier_account_id: str, order: Order | None) -> bool:
        """Per-account eligibility; accounts without a rule are always enabled."""
        if carrier_account_id in self.config.rates.us_only_accounts:
            country = (order.ship_country_code or "") if order else ""
            return country.upper() == "US"
        return True

    def normalize_and_filter(
        self,
        raw_rates: list[dict],
        line_value_cents: int,
        order: Order | None,
        carrier_map: dict[str, dict] | None = None,
    ) -> list[CarrierWithRates]:
        """Turn raw EasyPost rates into priced, grouped carrier services.

        Args:
            raw_rates: Rates as returned by EasyPost.
            line_value_cents: Merchandise value for the insurance split.
            order: Order the rates are for (eligibility rules).
            carrier_map: Carrier metadata from get_carrier_info().

        Returns:
            Carriers that have at least one eligible service.

        Raises:
            DomainError: If raw_rates is empty.
        """
        if not raw_rates:
            raise DomainError("No rates found")

        carrier_map = carrier_map or {}
        rates_cfg = self.config.rates
        carriers: dict[str, CarrierWithRates] = {}

        for rate in raw_rates:
            account_id = rate.get("carrier_account_id") or ""
            base_rate = float(rate.get("rate") or 0)
            base_rate_cents = round_half_up(base_rate * 100)
            rate_dollars = base_rate + rates_cfg.account_fees.get(account_id, 0)
            rate_cents = round_half_up(rate_dollars * 100)

            if not self.is_carrier_enabled(account_id, order):
                continue
            # Placeholder quotes some carriers return for unsupported routes
            if base_rate_cents < rates_cfg.minimum_rate_cents:
                continue

            raw_carrier = rate.get("carrier") or ""
            carrier_code = raw_carrier.lower()
            service = rate.get("service") or ""
            if service in rates_cfg.forbidden_services.get(carrier_code, []):
                continue

            currency = rate.get("currency") or ""
            if currency.lower() != rates_cfg.currency.lower():
                logger.warning("Skipping %s rate %s in %s", raw_carrier, rate.get("id"), currency)
                continue

            carrier_info = carrier_map.get(carrier_code) or {}
            carrier_name = (
                CARRIER_NAMES.get(carrier_code)
                or carrier_info.get("human_readable")
                or raw_carrier
            )
            service_info = next(
                (
                    level
                    for level in carrier_info.get("service_levels") or []
                    if (level.get("name") or "").lower() == service.lower()
                ),
                None,
            )
            service_name = format_ship_service_name(
                (service_info or {}).get("human_readable") or service, carrier_name
            )
            if any(p.search(service_name) for p in self._excluded_names):
                continue

            carrier = carriers.get(carrier_code)
            if carrier is None:
                carrier = CarrierWithRates(
                    id=account_id,
                    code=carrier_code,
                    name=carrier_name,
                    nickname=raw_carrier,
                )
                carriers[carrier_code] = carrier

            insurance = self.insurance_for(line_value_cents + rate_cents)
            carrier.services.append(
                ServiceRate(
                    id=rate.get("id"),
                    service_code=service.lower(),
                    service_name=service_name,
                    shipment_cost=rate_dollars,
                    other_cost=insurance.amount_to_collect / 100,
                    insurance_cost=insurance.insurance_cost / 100,
                    currency=currency,
                    carrier_delivery_date=rate.get("delivery_date"),
                    carrier_delivery_guarantee=bool(rate.get("delivery_date_guaranteed")),
                )
            )

        return [c for c in carriers.values() if c.services]

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_shipping_rates(self, order: Order) -> list[CarrierWithRates]:
        """Rates for a whole order at checkout.

        Raises:
            ShipmentRequestError: If the shipping address is incomplete.
            DomainError: If EasyPost returned no rates.
        """
        if not is_valid_shipping_address(order):
            raise ShipmentRequestError(
                "Street, city, postal code and country are required to quote shipping",
                code="E-2001",
            )
        shipment = order_to_shipment(order, self.config)
        carrier_map = await self.get_carrier_info()
        rates = await self.get_raw_rates(shipment)
        return self.normalize_and_filter(rates, order.subtotal, order, carrier_map)

    async def get_shipping_rates_for_fulfillment(
        self, fulfillment: Fulfillment
    ) -> list[CarrierWithRates]:
        """Re-quote a fulfillment's stored package, e.g. to switch services.

        Raises:
            ShipmentRequestError: If the address or package is incomplete.
            IllegalOperationError: If the label was already purchased.
        """
        order = fulfillment.orders[0] if fulfillment.orders else None
        if not is_valid_shipping_address(order):
            raise ShipmentRequestError("Shipping address not found", code="E-2001")
        if fulfillment.rate_purchased_at:
            raise IllegalOperationError("Shipping has already been purchased")

        shipment = fulfillment_to_shipment(fulfillment, self.config)
        carrier_map = await self.get_carrier_info()
        rates = await self.get_raw_rates(
            shipment, self.config.cache.fulfillment_rates_ttl_seconds
        )
        value = line_value_cents(fulfillment_shipment_lines(fulfillment))
        return self.normalize_and_filter(rates, value, order, carrier_map)

    async def get_order_shipping_rate(
        self, order: Order, carrier_code: str | None, service_code: str | None
    ) -> int:
        """Shipping charged to the customer in cents: rate plus collected insurance.

        Returns 0 when the carrier or service is no longer offered. Also
        records the carrier account id on the order.
        """
        carriers = await self.get_shipping_rates(order)
        carrier = next((c for c in carriers if c.code == carrier_code), None)
        if carrier is None:
            return 0
        order.carrier_id = carrier.id

        service = next((s for s in carrier.services if s.service_code == service_code), None)
        if service is None:
            return 0
        return round_half_up((service.shipment_cost + service.other_cost) * 100)

    async def calculate_shipping_price(self, order: Order) -> ShippingPrice:
        """Checkout shipping calculator.

        Never raises: failures price shipping at 0 and carry the error in
        metadata so checkout can continue.
        """
        try:
            price = await self.get_order_shipping_rate(
                order, order.carrier_code, order.service_code
            )
        except Exception as e:
            logger.error("Shipping calculation failed for order %s: %s", order.code, e)
            return ShippingPrice(price=0, metadata={"error": str(e)})

        try:
            tax = await self.tax_strategy(order, price)
        except Exception as e:
            logger.warning("Shipping tax lookup failed for order %s: %s", order.code, e)
            tax = 0

        return ShippingPrice(
            price=price,
            tax=tax,
            metadata={
                "serviceName": order.service_name,
                "serviceCode": order.service_code,
                "carrierCode": order.carrier_code,
            },
        )
