"""Service layer for ShipFlow.

Provides the fulfillment and order state machines, rate quoting,
pickups, webhook handling and label rendering on top of EasyPost.
"""

from shipflow.services.errors import CarrierProviderError, TransitionRejected
from shipflow.services.fulfillment_admin import FulfillmentAdminService
from shipflow.services.fulfillment_handler import EasyPostFulfillmentHandler
from shipflow.services.fulfillment_process import FulfillmentProcess
from shipflow.services.fulfillment_service import FulfillmentService
from shipflow.services.history_service import HistoryService
from shipflow.services.label_converter import LabelConverter
from shipflow.services.label_service import LabelService
from shipflow.services.order_process import OrderProcess, ReconcileResult
from shipflow.services.pickup_service import PickupService
from shipflow.services.rate_service import RateService
from shipflow.services.stock_service import StockService
from shipflow.services.webhooks import (
    FulfillmentWebhookHandler,
    WebhookDispatcher,
    validate_webhook,
)

__all__ = [
    "CarrierProviderError",
    "TransitionRejected",
    "FulfillmentAdminService",
    "EasyPostFulfillmentHandler",
    "FulfillmentProcess",
    "FulfillmentService",
    "HistoryService",
    "LabelConverter",
    "LabelService",
    "OrderProcess",
    "ReconcileResult",
    "PickupService",
    "RateService",
    "StockService",
    "FulfillmentWebhookHandler",
    "WebhookDispatcher",
    "validate_webhook",
]
