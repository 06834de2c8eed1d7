"""FastAPI route for inbound EasyPost webhooks.

The body is authenticated against the raw bytes, so the route reads the
request itself instead of letting FastAPI parse JSON.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from shipflow.config import ShipFlowConfig, get_config
from shipflow.db.connection import get_db
from shipflow.errors.domain import WebhookSignatureError
from shipflow.services.easypost_client import EasyPostClient
from shipflow.services.factory import build_services
from shipflow.services.gateway_provider import get_easypost_client
from shipflow.services.webhooks import validate_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def get_settings() -> ShipFlowConfig:
    return get_config()


@router.post("/easypost")
async def easypost_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: EasyPostClient = Depends(get_easypost_client),
    config: ShipFlowConfig = Depends(get_settings),
) -> dict:
    """Validate and dispatch an EasyPost event.

    Returns:
        Acknowledgement once every handler has run. Handler failures are
        logged, not returned, so EasyPost does not redeliver.

    Raises:
        HTTPException: 400 if the signature or payload is invalid.
    """
    body = await request.body()
    try:
        event = validate_webhook(body, request.headers, config.easypost.webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("Rejected webhook: %s", e.message)
        raise HTTPException(status_code=400, detail=e.message)
    except ValidationError as e:
        logger.warning("Malformed webhook payload: %s", e)
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    services = build_services(db, client, config)
    await services.webhooks.dispatch(event)
    return {"message": "Webhook received"}
