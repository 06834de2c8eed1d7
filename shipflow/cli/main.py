"""ShipFlow CLI: operator tooling for the fulfillment daemon.

Usage:
    shipflow serve                     Start the webhook daemon
    shipflow config show               Show resolved configuration
    shipflow webhook register URL      Register the EasyPost webhook
    shipflow labels convert a.zpl b.zpl --out labels.pdf
    shipflow pickup close PICKUP_ID
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from shipflow import __version__
from shipflow.config import ShipFlowConfig, load_config, set_config
from shipflow.errors.domain import DomainError
from shipflow.errors.formatter import ShipFlowError, format_error
from shipflow.services.errors import CarrierProviderError

_log = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="shipflow",
    help="EasyPost fulfillment orchestration operator CLI",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
webhook_app = typer.Typer(help="Manage the EasyPost webhook")
cache_app = typer.Typer(help="Manage the rate cache")
labels_app = typer.Typer(help="Render shipping labels")
pickup_app = typer.Typer(help="Close and schedule carrier pickups")
orders_app = typer.Typer(help="Order maintenance")
fulfillment_app = typer.Typer(help="Warehouse fulfillment operations")

app.add_typer(config_app, name="config")
app.add_typer(webhook_app, name="webhook")
app.add_typer(cache_app, name="cache")
app.add_typer(labels_app, name="labels")
app.add_typer(pickup_app, name="pickup")
app.add_typer(orders_app, name="orders")
app.add_typer(fulfillment_app, name="fulfillment")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to shipflow.yaml config file"
    ),
):
    """ShipFlow CLI for EasyPost fulfillment orchestration."""
    global _config_path
    _config_path = config


def _load() -> ShipFlowConfig:
    """Load config from the --config path and make it process-wide."""
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    set_config(cfg)
    return cfg


def _mask(secret: str) -> str:
    if not secret:
        return "(not set)"
    return "***" + secret[-4:] if len(secret) > 4 else "***"


def _run(coro_fn: Callable[[], Awaitable[T]]) -> T:
    """Run an async command, reporting domain and provider failures."""
    from shipflow.services.gateway_provider import shutdown_gateways

    async def _wrapped() -> T:
        try:
            return await coro_fn()
        finally:
            await shutdown_gateways()

    try:
        return asyncio.run(_wrapped())
    except CarrierProviderError as e:
        error = ShipFlowError(code=e.code, message=e.message, remediation=e.remediation)
        console.print(format_error(error), style="red", markup=False)
        raise typer.Exit(1)
    except (DomainError, RuntimeError) as e:
        console.print(f"Error: {e}", style="red", markup=False)
        raise typer.Exit(1)


async def _with_services(fn: Callable[[Any], Awaitable[T]]) -> T:
    """Run ``fn`` with a service bundle bound to a fresh session."""
    from shipflow.config import get_config
    from shipflow.db.connection import get_db_context
    from shipflow.services.factory import build_services
    from shipflow.services.gateway_provider import get_cache, get_easypost_client

    client = await get_easypost_client()
    cache = await get_cache()
    with get_db_context() as db:
        return await fn(build_services(db, client, get_config(), cache))


# --- Version ---


@app.command()
def version():
    """Show the ShipFlow version."""
    console.print(f"shipflow {__version__}")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _load()

    console.print("[bold]Daemon:[/bold]")
    console.print(f"  host: {cfg.daemon.host}")
    console.print(f"  port: {cfg.daemon.port}")
    console.print(f"  log_level: {cfg.daemon.log_level}")

    console.print("\n[bold]EasyPost:[/bold]")
    console.print(f"  api_key: {_mask(cfg.easypost.api_key)}")
    console.print(f"  webhook_secret: {_mask(cfg.easypost.webhook_secret)}")
    console.print(f"  webhook_uri: {cfg.easypost.webhook_uri or '(not set)'}")
    console.print(f"  webhook path: /{cfg.easypost.webhook_prefix}/easypost")

    console.print("\n[bold]Cache:[/bold]")
    console.print(f"  redis: {'enabled' if cfg.cache.redis_url else 'disabled'}")
    console.print(f"  namespace: {cfg.cache.namespace}")

    console.print("\n[bold]Insurance:[/bold]")
    console.print(f"  minimum: ${cfg.insurance.minimum_insure_value_cents / 100:.2f}")
    console.print(f"  insured percent: {cfg.insurance.insure_value_percent:g}%")

    if cfg.pickup.address:
        console.print("\n[bold]Pickup address:[/bold]")
        addr = cfg.pickup.address
        console.print(f"  {addr.street1}, {addr.city} {addr.state} {addr.zip}")


@config_app.command("validate")
def config_validate(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate a config file without starting the daemon."""
    path = config or _config_path
    try:
        cfg = load_config(config_path=path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    console.print(f"  EasyPost API key: {'set' if cfg.easypost.api_key else 'missing'}")
    console.print(f"  Rate cache: {'enabled' if cfg.cache.redis_url else 'disabled'}")


# --- Daemon ---


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the webhook daemon (FastAPI under uvicorn)."""
    import uvicorn

    cfg = _load()
    final_host = host or cfg.daemon.host
    final_port = port or cfg.daemon.port

    # The app loads its own config; point it at the same file
    if _config_path:
        os.environ["SHIPFLOW_CONFIG"] = str(_config_path)

    console.print(f"[bold]Starting ShipFlow on {final_host}:{final_port}[/bold]")
    uvicorn.run(
        "shipflow.api.main:app",
        host=final_host,
        port=final_port,
        log_level=cfg.daemon.log_level,
        workers=1,
    )


# --- Webhook commands ---


@webhook_app.command("register")
def webhook_register(
    url: str = typer.Argument(..., help="Public URL EasyPost should post events to"),
):
    """Create or update the EasyPost webhook for URL using the configured secret."""
    cfg = _load()
    if not cfg.easypost.webhook_secret:
        console.print("[red]No webhook secret configured (easypost.webhook_secret).[/red]")
        raise typer.Exit(1)

    async def _register() -> None:
        from shipflow.services.gateway_provider import get_easypost_client
        from shipflow.services.webhooks import register_webhook

        client = await get_easypost_client()
        await register_webhook(client, url, cfg.easypost.webhook_secret)

    _run(_register)
    console.print(f"[green]Webhook registered:[/green] {url}")


# --- Cache commands ---


@cache_app.command("clear")
def cache_clear():
    """Delete every cached rate and carrier entry."""
    _load()

    async def _clear() -> int:
        from shipflow.services.gateway_provider import get_cache

        cache = await get_cache()
        return await cache.clear_all()

    removed = _run(_clear)
    console.print(f"Removed {removed} cached entr{'y' if removed == 1 else 'ies'}.")


# --- Label commands ---


@labels_app.command("convert")
def labels_convert(
    files: list[Path] = typer.Argument(..., help="ZPL files to render", exists=True),
    out: Path = typer.Option(Path("labels.pdf"), "--out", "-o", help="Combined PDF path"),
):
    """Render ZPL files to one PDF, batching requests to the label service."""
    from shipflow.services.label_converter import LabelConverter, ZplLabel
    from shipflow.services.label_service import merge_label_documents

    cfg = _load()
    labels = [ZplLabel(item_id=str(path), zpl=path.read_bytes()) for path in files]

    async def _convert():
        return await LabelConverter(cfg.labels).convert(labels)

    rendered = _run(_convert)
    out.write_bytes(merge_label_documents(rendered))

    table = Table(title=f"Labels written to {out}")
    table.add_column("File")
    table.add_column("Pages", justify="right")
    page = 1
    for label in rendered:
        count = label.page_end - label.page_start + 1
        table.add_row(label.item_id, f"{page}-{page + count - 1}")
        page += count
    console.print(table)


# --- Pickup commands ---


@pickup_app.command("close")
def pickup_close(pickup_id: str = typer.Argument(..., help="Pickup id")):
    """Tender members and create the scan form (or batch) for a pickup."""
    _load()

    async def _close():
        return await _with_services(lambda s: s.pickups.close(pickup_id))

    pickup = _run(_close)
    console.print(
        f"[green]Pickup {pickup.id} closed.[/green] batch={pickup.batch_id or '-'} "
        f"scan_form={pickup.scan_form_id or '-'}"
    )


@pickup_app.command("schedule")
def pickup_schedule(
    pickup_id: str = typer.Argument(..., help="Pickup id"),
    start: datetime = typer.Option(..., "--start", help="Window start (ISO 8601)"),
    end: datetime = typer.Option(..., "--end", help="Window end (ISO 8601)"),
):
    """Book a carrier pickup, closing the pickup first if it is still Open."""
    if end <= start:
        console.print("[red]--end must be after --start[/red]")
        raise typer.Exit(1)
    _load()

    async def _schedule():
        return await _with_services(lambda s: s.pickups.schedule(pickup_id, start, end))

    pickup = _run(_schedule)
    cost = f"${pickup.pickup_cost / 100:.2f}" if pickup.pickup_cost is not None else "-"
    console.print(
        f"[green]Pickup {pickup.id} scheduled[/green] "
        f"({pickup.provider_pickup_id}, cost {cost})"
    )


# --- Order and fulfillment commands ---


@orders_app.command("reconcile")
def orders_reconcile(order_ids: list[str] = typer.Argument(..., help="Order ids")):
    """Recompute order states from their fulfillments."""
    _load()

    async def _reconcile():
        return await _with_services(lambda s: s.admin.correct_order_states(order_ids))

    results = _run(_reconcile)
    table = Table(title="Order reconciliation")
    table.add_column("Order")
    table.add_column("Result")
    failed = False
    for result in results:
        if result.error:
            failed = True
            table.add_row(result.order_id, f"[red]{result.error}[/red]")
        else:
            table.add_row(result.order_id, "changed" if result.changed else "unchanged")
    console.print(table)
    if failed:
        raise typer.Exit(1)


@fulfillment_app.command("scan")
def fulfillment_scan(barcode: str = typer.Argument(..., help="Scanned label barcode")):
    """Stamp the fulfillment whose label was scanned at the packing station."""
    _load()

    async def _mark(services):
        return services.admin.shipping_label_scanned(barcode)

    async def _scan():
        return await _with_services(_mark)

    fulfillment = _run(_scan)
    console.print(
        f"[green]Scanned[/green] {fulfillment.invoice_id} ({fulfillment.tracking_code})"
    )


if __name__ == "__main__":
    app()
