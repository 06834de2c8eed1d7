"""Tests for the webhook endpoint and health check."""

import json

import pytest
from fastapi.testclient import TestClient

from shipflow.api.main import app
from shipflow.api.routes.webhooks import get_settings
from shipflow.db.connection import get_db
from shipflow.db.models import FulfillmentState, OrderState
from shipflow.services.gateway_provider import get_easypost_client
from shipflow.services.webhooks import compute_signature

SECRET = "whsec_route"

WEBHOOK_PATH = next(
    route.path for route in app.routes if getattr(route, "path", "").endswith("/easypost")
)


@pytest.fixture
def client(db, config, mock_client):
    """TestClient without lifespan so no schema or registration side effects run."""
    config.easypost.webhook_secret = SECRET
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_easypost_client] = lambda: mock_client
    app.dependency_overrides[get_settings] = lambda: config
    yield TestClient(app)
    app.dependency_overrides.clear()


def _post(client: TestClient, payload: dict, secret: str = SECRET):
    body = json.dumps(payload).encode()
    return client.post(
        WEBHOOK_PATH,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Hmac-Signature": compute_signature(body, secret),
        },
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_tracker_event_ships_fulfillment(client, db, make_order, make_fulfillment):
    order = make_order(quantities=(1,))
    fulfillment = make_fulfillment(
        [order],
        state=FulfillmentState.purchased,
        shipment_id="shp_route",
        tracker_id="trk_route",
        tracking_code="9400100000000000000099",
    )
    order.state = OrderState.shipped.value
    db.commit()

    response = _post(
        client,
        {
            "description": "tracker.updated",
            "result": {
                "id": "trk_route",
                "tracking_code": "9400100000000000000099",
                "status": "in_transit",
                "shipment_id": "shp_route",
            },
        },
    )

    assert response.status_code == 200
    assert response.json() == {"message": "Webhook received"}
    db.refresh(fulfillment)
    assert fulfillment.state == FulfillmentState.shipped.value


def test_unmatched_event_still_acknowledged(client):
    response = _post(client, {"description": "insurance.purchased", "result": {"id": "ins_1"}})
    assert response.status_code == 200


def test_bad_signature_rejected(client):
    response = _post(
        client, {"description": "batch.updated", "result": {"id": "b"}}, secret="wrong"
    )
    assert response.status_code == 400
    assert "secret mismatch" in response.json()["detail"]


def test_missing_signature_rejected(client):
    response = client.post(WEBHOOK_PATH, content=b"{}")
    assert response.status_code == 400


def test_malformed_payload_rejected(client):
    response = _post(client, {"description": "tracker.updated", "result": {"status": 5}})
    assert response.status_code == 400
    assert response.json()["detail"] == "Malformed webhook payload"
