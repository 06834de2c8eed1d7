"""FastAPI application for the ShipFlow webhook daemon.

Provides the main application instance with the webhook router,
domain exception handlers and lifecycle hooks configured.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("shipflow").setLevel(logging.INFO)
from fastapi.responses import JSONResponse

from shipflow import __version__
from shipflow.api.routes import webhooks
from shipflow.config import get_config
from shipflow.db.connection import init_db
from shipflow.errors.domain import (
    DomainError,
    IllegalOperationError,
    NotFoundError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)


async def _register_webhook() -> None:
    """Point EasyPost at this daemon when a public URI is configured."""
    from shipflow.services.gateway_provider import get_easypost_client
    from shipflow.services.webhooks import register_webhook

    cfg = get_config().easypost
    if not cfg.webhook_uri or cfg.webhook_secret == "0":
        return
    try:
        client = await get_easypost_client()
        await register_webhook(client, f"{cfg.webhook_uri}/easypost", cfg.webhook_secret)
    except Exception as e:
        logger.error("Webhook registration failed (non-blocking): %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: schema creation and webhook registration, then cleanup."""
    from shipflow.services.gateway_provider import shutdown_gateways

    # --- Startup ---
    init_db()
    await _register_webhook()

    yield

    # --- Shutdown ---
    await shutdown_gateways()


app = FastAPI(
    title="ShipFlow API",
    description="EasyPost fulfillment orchestration webhooks",
    version=__version__,
    lifespan=lifespan,
)


def _status_for(exc: DomainError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, IllegalOperationError):
        return 409
    return 400


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Handle DomainError exceptions with consistent format.

    Args:
        request: The incoming request.
        exc: The DomainError exception.

    Returns:
        JSONResponse with the error type and message.
    """
    if not isinstance(exc, WebhookSignatureError):
        logger.error("Request %s failed: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=_status_for(exc),
        content={
            "error": type(exc).__name__,
            "message": exc.message,
        },
    )


# Include routers
app.include_router(webhooks.router, prefix=f"/{get_config().easypost.webhook_prefix}")


@app.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns:
        Dictionary with status and version.
    """
    return {"status": "healthy", "version": __version__}
