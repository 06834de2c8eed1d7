"""Tests for EasyPost shipment creation, purchase, tracking and refunds."""

import pytest

from shipflow.db.models import FulfillmentState
from shipflow.errors.domain import DomainError, IllegalOperationError, ShipmentRequestError
from shipflow.services.errors import CarrierProviderError
from shipflow.services.fulfillment_service import FulfillmentService, fulfilled_quantities
from shipflow.services.history_service import HistoryService, parse_payload
from shipflow.services.rate_service import RateService
from shipflow.services.shipment_builder import ShipmentLine, order_shipment_lines


@pytest.fixture
def history(db):
    return HistoryService(db)


@pytest.fixture
def service(db, mock_client, config, history):
    return FulfillmentService(db, mock_client, RateService(mock_client, config), history, config)


def _purchased_shipment(**overrides) -> dict:
    shipment = {
        "id": "shp_1",
        "tracking_code": "9400100000000000000001",
        "selected_rate": {"id": "rate_1", "rate": "12.50"},
        "tracker": {"id": "trk_1"},
        "postage_label": {"label_url": "https://labels.example.com/shp_1.zpl"},
        "forms": [],
    }
    shipment.update(overrides)
    return shipment


class TestCreateFulfillment:
    def test_whole_order(self, service, make_order):
        order = make_order(quantities=(2, 1))
        fulfillment = service.create_fulfillment([order], order_shipment_lines(order))

        assert fulfillment.state == "Created"
        assert fulfillment.invoice_id == order.code
        assert fulfillment.method == "USPS Priority"
        assert fulfillment.carrier_id == "ca_usps"
        assert fulfillment.weight == 24.0
        assert [fl.quantity for fl in fulfillment.lines] == [2, 1]

    def test_split_shipments_number_invoices(self, service, make_order):
        order = make_order(quantities=(5,))
        line = order.lines[0]

        first = service.create_fulfillment([order], [ShipmentLine(line, 3)])
        second = service.create_fulfillment([order], [ShipmentLine(line, 2)])

        assert first.invoice_id == order.code
        assert second.invoice_id == f"{order.code}-1"
        assert fulfilled_quantities([order]) == {line.id: 5}

    def test_over_fulfillment_rejected(self, service, make_order):
        order = make_order(quantities=(5,))
        line = order.lines[0]
        service.create_fulfillment([order], [ShipmentLine(line, 5)])

        with pytest.raises(IllegalOperationError, match="only 0 unfulfilled"):
            service.create_fulfillment([order], [ShipmentLine(line, 1)])

    def test_manual_fulfillment(self, service, make_order):
        order = make_order()
        fulfillment = service.create_fulfillment(
            [order], order_shipment_lines(order), treat_as_manual=True, tracking_code="1Z999"
        )
        assert fulfillment.method == "Manual Fulfillment"
        assert fulfillment.tracking_code == "1Z999"
        assert fulfillment.carrier_id is None

    def test_needs_lines(self, service, make_order):
        with pytest.raises(IllegalOperationError):
            service.create_fulfillment([make_order()], [])


class TestCreateShipment:
    @pytest.mark.asyncio
    async def test_locks_in_matching_rate(
        self, service, mock_client, history, make_order, make_fulfillment
    ):
        fulfillment = make_fulfillment([make_order(delivery_instructions="Leave at dock")])
        mock_client.create_shipment.return_value = {
            "id": "shp_1",
            "rates": [
                {"id": "rate_a", "carrier_account_id": "ca_other", "service": "Priority", "rate": "5.00"},
                {"id": "rate_b", "carrier_account_id": "ca_usps", "service": "Priority", "rate": "12.50"},
            ],
        }

        await service.create_shipment(fulfillment)

        request = mock_client.create_shipment.await_args.args[0]
        assert request["carrier_accounts"] == ["ca_usps"]
        assert request["options"]["handling_instructions"] == "Leave at dock"
        assert fulfillment.shipment_id == "shp_1"
        assert fulfillment.rate_id == "rate_b"
        assert fulfillment.rate_cost == 1250

        [entry] = history.list_entries(fulfillment_id=fulfillment.id)
        payload = parse_payload(entry)
        assert payload.rate_id == "rate_b"
        assert payload.rate_cost == 1250

    @pytest.mark.asyncio
    async def test_missing_service_rate(self, service, mock_client, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()])
        mock_client.create_shipment.return_value = {
            "id": "shp_1",
            "rates": [{"id": "r", "carrier_account_id": "ca_usps", "service": "Express", "rate": "30.00"}],
        }
        with pytest.raises(DomainError, match="Rate not found"):
            await service.create_shipment(fulfillment)
        assert fulfillment.shipment_id is None

    @pytest.mark.asyncio
    async def test_requires_carrier_and_service(
        self, service, mock_client, make_order, make_fulfillment
    ):
        order = make_order(carrier_id=None, service_code=None)
        fulfillment = make_fulfillment([order], carrier_id=None, service_code=None)
        with pytest.raises(ShipmentRequestError):
            await service.create_shipment(fulfillment)
        mock_client.create_shipment.assert_not_awaited()


class TestPurchase:
    @pytest.mark.asyncio
    async def test_purchase_records_label(self, service, mock_client, make_order, make_fulfillment):
        fulfillment = make_fulfillment(
            [make_order()], state=FulfillmentState.pending,
            shipment_id="shp_1", rate_id="rate_1", rate_cost=1250,
        )
        mock_client.buy_shipment.return_value = _purchased_shipment(
            forms=[{
                "form_type": "commercial_invoice",
                "form_url": "https://forms.example.com/ci.pdf",
                "submitted_electronically": True,
            }]
        )

        await service.purchase_shipment(fulfillment)

        # Below the insurance minimum nothing is insured
        mock_client.buy_shipment.assert_awaited_once_with("shp_1", "rate_1", insurance=None)
        assert fulfillment.tracking_code == "9400100000000000000001"
        assert fulfillment.tracker_id == "trk_1"
        assert fulfillment.label_url.endswith("shp_1.zpl")
        assert fulfillment.rate_purchased_at
        assert fulfillment.comm_invoice_filed is True

    @pytest.mark.asyncio
    async def test_insured_value_sent_in_dollars(
        self, service, mock_client, make_order, make_fulfillment
    ):
        fulfillment = make_fulfillment(
            [make_order(quantities=(5,), unit_price=10000)],
            shipment_id="shp_1", rate_id="rate_1", rate_cost=1250,
        )
        mock_client.buy_shipment.return_value = _purchased_shipment()

        await service.purchase_shipment(fulfillment)

        mock_client.buy_shipment.assert_awaited_once_with("shp_1", "rate_1", insurance="512.50")
        assert fulfillment.insurance_cost == 513

    @pytest.mark.asyncio
    async def test_rate_mismatch(self, service, mock_client, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()], shipment_id="shp_1", rate_id="rate_1")
        mock_client.buy_shipment.side_effect = CarrierProviderError(
            code="E-3004",
            message="Rate mismatch -- rates need to be recalculated",
            provider_message="Rate mismatch for this shipment",
        )
        with pytest.raises(DomainError) as exc_info:
            await service.purchase_shipment(fulfillment)
        assert exc_info.value.message == "Rate mismatch -- rates need to be recalculated"
        assert fulfillment.tracking_code is None

    @pytest.mark.asyncio
    async def test_already_purchased(self, service, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()], tracking_code="94001", rate_id="r", shipment_id="s")
        with pytest.raises(IllegalOperationError, match="already been purchased"):
            await service.purchase_shipment(fulfillment)

    @pytest.mark.asyncio
    async def test_needs_selected_rate(self, service, make_order, make_fulfillment):
        with pytest.raises(IllegalOperationError, match="not yet selected"):
            await service.purchase_shipment(make_fulfillment([make_order()]))


class TestTracker:
    @pytest.mark.asyncio
    async def test_manual_tracker_fees(self, service, mock_client, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()], treat_as_manual=True, tracking_code="1Z999")
        mock_client.create_tracker.return_value = {
            "id": "trk_9",
            "carrier": "UPS",
            "fees": [{"amount": "0.02"}, {"amount": "0.01"}],
        }

        await service.purchase_tracker(fulfillment)

        assert fulfillment.tracker_id == "trk_9"
        assert fulfillment.carrier_code == "UPS"
        assert fulfillment.rate_cost == 3

    @pytest.mark.asyncio
    async def test_provider_failure_is_logged_only(
        self, service, mock_client, make_order, make_fulfillment
    ):
        fulfillment = make_fulfillment([make_order()], treat_as_manual=True, tracking_code="1Z999")
        mock_client.create_tracker.side_effect = CarrierProviderError(code="E-3005", message="nope")
        assert await service.purchase_tracker(fulfillment) is None
        assert fulfillment.tracker_id is None

    @pytest.mark.asyncio
    async def test_skips_non_manual(self, service, mock_client, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()], tracking_code="9400")
        assert await service.purchase_tracker(fulfillment) is None
        mock_client.create_tracker.assert_not_awaited()


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_records_amount(
        self, service, mock_client, history, make_order, make_fulfillment
    ):
        fulfillment = make_fulfillment(
            [make_order()], state=FulfillmentState.purchased, shipment_id="shp_1",
            tracking_code="9400", rate_purchased_at="2026-01-01T00:00:00+00:00", rate_cost=1250,
        )
        mock_client.refund_shipment.return_value = {"id": "shp_1", "refund_status": "submitted"}

        await service.refund_shipment(fulfillment.id)

        [entry] = history.list_entries(fulfillment_id=fulfillment.id)
        payload = parse_payload(entry)
        assert payload.status == "submitted"
        assert payload.amount == 1250

    @pytest.mark.asyncio
    async def test_refund_requires_purchase(self, service, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()], shipment_id="shp_1")
        with pytest.raises(IllegalOperationError, match="may not have been purchased"):
            await service.refund_shipment(fulfillment.id)

    @pytest.mark.asyncio
    async def test_refund_failure(self, service, mock_client, make_order, make_fulfillment):
        fulfillment = make_fulfillment(
            [make_order()], shipment_id="shp_1", tracking_code="9400",
            rate_purchased_at="2026-01-01T00:00:00+00:00",
        )
        mock_client.refund_shipment.side_effect = CarrierProviderError(
            code="E-3006", message="Refund unavailable", provider_message="Label already scanned"
        )
        with pytest.raises(DomainError, match="Failed to refund shipment: Label already scanned"):
            await service.refund_shipment(fulfillment.id)
