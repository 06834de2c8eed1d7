"""Service wiring for one database session.

The API route and the CLI never construct services piecemeal; they ask
for a bundle bound to their session and the process-global provider
handles from ``gateway_provider``.
"""

from dataclasses import dataclass

from sqlalchemy.orm import Session

from shipflow.config import ShipFlowConfig
from shipflow.services.cache import NullCache, RedisCache
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.fulfillment_admin import FulfillmentAdminService
from shipflow.services.fulfillment_handler import EasyPostFulfillmentHandler
from shipflow.services.fulfillment_process import FulfillmentProcess
from shipflow.services.fulfillment_service import FulfillmentService
from shipflow.services.history_service import HistoryService
from shipflow.services.order_process import OrderProcess
from shipflow.services.pickup_service import PickupService
from shipflow.services.rate_service import RateService
from shipflow.services.webhooks import FulfillmentWebhookHandler, WebhookDispatcher


@dataclass
class Services:
    history: HistoryService
    rates: RateService
    orders: OrderProcess
    fulfillments: FulfillmentService
    process: FulfillmentProcess
    admin: FulfillmentAdminService
    pickups: PickupService
    webhooks: WebhookDispatcher


def build_services(
    db: Session,
    client: EasyPostClient,
    config: ShipFlowConfig,
    cache: RedisCache | NullCache | None = None,
) -> Services:
    """Wire every service onto ``db`` so a transition commits once."""
    history = HistoryService(db)
    rates = RateService(client, config, cache)
    orders = OrderProcess(db, history)
    fulfillments = FulfillmentService(db, client, rates, history, config)
    process = FulfillmentProcess(
        db, [EasyPostFulfillmentHandler(fulfillments)], orders, history=history
    )
    pickups = PickupService(db, client, process, config, history)
    return Services(
        history=history,
        rates=rates,
        orders=orders,
        fulfillments=fulfillments,
        process=process,
        admin=FulfillmentAdminService(db, process, fulfillments, rates, config, history),
        pickups=pickups,
        webhooks=WebhookDispatcher([FulfillmentWebhookHandler(db, process, history), pickups]),
    )
