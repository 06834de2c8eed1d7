"""Tests for history entry recording and administration."""

import pytest

from shipflow.db.models import HistoryEntry, HistoryEntryType
from shipflow.errors.domain import NotFoundError
from shipflow.services.history_service import (
    FulfillmentRefundData,
    FulfillmentTrackingData,
    HistoryService,
    OrderStateTransitionData,
    parse_payload,
)


@pytest.fixture
def history(db):
    return HistoryService(db)


class TestRecord:
    def test_payload_round_trips_through_discriminator(self, history, make_order):
        order = make_order()
        entry = history.record_order(
            order.id,
            OrderStateTransitionData(from_state="PaymentSettled", to_state="Shipped"),
            is_public=True,
        )

        assert entry.type == "order_state_transition"
        payload = parse_payload(entry)
        assert isinstance(payload, OrderStateTransitionData)
        assert payload.to_state == "Shipped"

    def test_record_only_flushes(self, db, history, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()])
        history.record_fulfillment(
            fulfillment.id, FulfillmentTrackingData(status="in_transit", detail="Departed")
        )
        db.rollback()
        assert db.query(HistoryEntry).count() == 0

    def test_list_filters_by_owner_and_visibility(self, history, make_order, make_fulfillment):
        order = make_order()
        fulfillment = make_fulfillment([order])
        history.record_order(
            order.id, OrderStateTransitionData(from_state="PaymentSettled", to_state="Shipped")
        )
        history.record_fulfillment(
            fulfillment.id, FulfillmentTrackingData(status="delivered"), is_public=True
        )
        history.record_fulfillment(
            fulfillment.id, FulfillmentRefundData(status="submitted", amount=1250)
        )

        assert len(history.list_entries(order_id=order.id)) == 1
        assert len(history.list_entries(fulfillment_id=fulfillment.id)) == 2
        public = history.list_entries(fulfillment_id=fulfillment.id, public_only=True)
        assert [e.type for e in public] == ["fulfillment_tracking"]

    def test_filter_by_type_and_latest_payload(self, history, make_order, make_fulfillment):
        fulfillment = make_fulfillment([make_order()])
        history.record_fulfillment(fulfillment.id, FulfillmentTrackingData(status="in_transit"))
        history.record_fulfillment(fulfillment.id, FulfillmentRefundData(status="submitted"))
        history.record_fulfillment(fulfillment.id, FulfillmentTrackingData(status="delivered"))

        tracking = history.list_entries(
            fulfillment_id=fulfillment.id, entry_type=HistoryEntryType.fulfillment_tracking
        )

        assert len(tracking) == 2
        latest = history.latest_payload(
            HistoryEntryType.fulfillment_tracking, fulfillment_id=fulfillment.id
        )
        assert latest.status == "delivered"
        assert history.latest_payload(HistoryEntryType.pickup_batch, pickup_id="none") is None


class TestAdminister:
    def test_update_visibility_and_administrator(self, history, make_order):
        order = make_order()
        entry = history.record_order(
            order.id, OrderStateTransitionData(from_state="PaymentSettled", to_state="Shipped")
        )

        updated = history.update_entry(entry.id, is_public=True, administrator="ops@example.com")

        assert updated.is_public is True
        assert updated.administrator == "ops@example.com"

    def test_payload_cannot_be_rewritten(self, history, make_order):
        order = make_order()
        entry = history.record_order(
            order.id, OrderStateTransitionData(from_state="PaymentSettled", to_state="Shipped")
        )
        with pytest.raises(TypeError):
            history.update_entry(
                entry.id,
                payload=OrderStateTransitionData(from_state="PaymentSettled", to_state="Delivered"),
            )
        assert parse_payload(entry).to_state == "Shipped"

    def test_delete_entry(self, db, history, make_order):
        order = make_order()
        entry = history.record_order(
            order.id, OrderStateTransitionData(from_state="PaymentSettled", to_state="Shipped")
        )
        history.delete_entry(entry.id)
        assert db.query(HistoryEntry).count() == 0

    def test_missing_entry(self, history):
        with pytest.raises(NotFoundError):
            history.delete_entry("nope")
        with pytest.raises(NotFoundError):
            history.update_entry("nope", is_public=True)
