"""EasyPost REST API client.

Thin async wrapper over the EasyPost v2 API (plus the beta stateless rate
endpoint). Every method returns the decoded JSON object; amounts stay in
EasyPost's decimal-string form and are converted to cents by callers.

Example:
    client = EasyPostClient(api_key="EZAK...")
    rates = await client.get_stateless_rates(shipment)
"""

import logging
from typing import Any

import httpx

from shipflow.errors.provider_translation import (
    extract_provider_error,
    translate_provider_error,
)
from shipflow.services.errors import CarrierProviderError

logger = logging.getLogger(__name__)


class EasyPostClient:
    """Async client for the EasyPost API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.easypost.com",
        timeout: float = 30.0,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: EasyPost API key (test or production).
            base_url: API root, overridable for tests.
            timeout: Per-request timeout in seconds.
        """
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        """Send a request and decode the JSON response.

        Raises:
            CarrierProviderError: On transport failure or a non-2xx status.
        """
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._get_headers(),
                    auth=(self._api_key, ""),
                )
        except httpx.RequestError as e:
            logger.error("EasyPost %s %s failed: %s", method, path, e)
            raise CarrierProviderError(
                code="E-3001",
                message=f"EasyPost is temporarily unavailable: {e}",
                remediation="Wait a few minutes and retry.",
            ) from e

        if response.status_code >= 400:
            raise self._translate_error(response)

        if not response.content:
            return {}
        return response.json()

    def _translate_error(self, response: httpx.Response) -> CarrierProviderError:
        """Translate an EasyPost error response to CarrierProviderError."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            text = response.text[:500]
            return CarrierProviderError(
                code="E-3005",
                message=f"EasyPost error: {text or response.status_code}",
                status_code=response.status_code,
                provider_message=text,
            )

        provider_code, provider_message = extract_provider_error(body)
        # Ensure we never lose the actual error text
        if not provider_message:
            provider_message = response.text[:500]
        if response.status_code == 429 and not provider_code:
            provider_code = "RATE_LIMITED"

        code, message, remediation = translate_provider_error(
            provider_code, provider_message
        )
        return CarrierProviderError(
            code=code,
            message=message,
            remediation=remediation,
            details=body,
            status_code=response.status_code,
            provider_message=provider_message,
        )

    # -- Rates & shipments --------------------------------------------------

    async def get_stateless_rates(self, shipment: dict) -> list[dict]:
        """Quote rates without creating a shipment object."""
        result = await self._request("POST", "/beta/rates", json={"shipment": shipment})
        if isinstance(result, dict):
            return result.get("rates") or []
        return result or []

    async def create_shipment(self, shipment: dict) -> dict:
        """Create (but do not buy) a shipment; the response carries its rates."""
        return await self._request("POST", "/v2/shipments", json={"shipment": shipment})

    async def retrieve_shipment(self, shipment_id: str) -> dict:
        return await self._request("GET", f"/v2/shipments/{shipment_id}")

    async def buy_shipment(
        self,
        shipment_id: str,
        rate_id: str,
        insurance: str | None = None,
    ) -> dict:
        """Buy a previously created shipment.

        Args:
            shipment_id: EasyPost shipment id.
            rate_id: Rate to purchase.
            insurance: Declared value to insure, in dollars, or None.
        """
        payload: dict[str, Any] = {"rate": {"id": rate_id}}
        if insurance is not None:
            payload["insurance"] = insurance
        return await self._request(
            "POST", f"/v2/shipments/{shipment_id}/buy", json=payload
        )

    async def refund_shipment(self, shipment_id: str) -> dict:
        return await self._request("POST", f"/v2/shipments/{shipment_id}/refund")

    async def create_tracker(self, tracking_code: str, carrier: str | None = None) -> dict:
        tracker: dict[str, str] = {"tracking_code": tracking_code}
        if carrier:
            tracker["carrier"] = carrier
        return await self._request("POST", "/v2/trackers", json={"tracker": tracker})

    async def get_carrier_metadata(self) -> list[dict]:
        """Carrier names and service levels, used to normalize rate names."""
        result = await self._request(
            "GET", "/v2/metadata/carriers", params={"types": "service_levels"}
        )
        return result.get("carriers", []) if isinstance(result, dict) else []

    # -- Manifests & pickups -------------------------------------------------

    async def create_scan_form(self, shipment_ids: list[str]) -> dict:
        """Create a scan form; EasyPost implicitly creates a batch for it."""
        return await self._request(
            "POST",
            "/v2/scan_forms",
            json={"shipments": [{"id": sid} for sid in shipment_ids]},
        )

    async def create_batch(self, shipment_ids: list[str]) -> dict:
        return await self._request(
            "POST",
            "/v2/batches",
            json={"batch": {"shipments": [{"id": sid} for sid in shipment_ids]}},
        )

    async def create_pickup(self, pickup: dict) -> dict:
        return await self._request("POST", "/v2/pickups", json={"pickup": pickup})

    async def buy_pickup(self, pickup_id: str, carrier: str, service: str) -> dict:
        return await self._request(
            "POST",
            f"/v2/pickups/{pickup_id}/buy",
            json={"carrier": carrier, "service": service},
        )

    # -- Webhooks ------------------------------------------------------------

    async def list_webhooks(self) -> list[dict]:
        result = await self._request("GET", "/v2/webhooks")
        return result.get("webhooks", []) if isinstance(result, dict) else []

    async def create_webhook(self, url: str, secret: str) -> dict:
        return await self._request(
            "POST",
            "/v2/webhooks",
            json={"webhook": {"url": url, "webhook_secret": secret}},
        )

    async def update_webhook(self, webhook_id: str, secret: str) -> dict:
        return await self._request(
            "PATCH",
            f"/v2/webhooks/{webhook_id}",
            json={"webhook": {"webhook_secret": secret}},
        )

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("DELETE", f"/v2/webhooks/{webhook_id}")
