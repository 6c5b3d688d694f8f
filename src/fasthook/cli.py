"""FastHook server CLI."""

import asyncio
import json
import logging
import subprocess
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from fasthook import __version__
from fasthook.config import get_settings
from fasthook.webhook.signing import signature_header, verify_signature

app = typer.Typer(
    name="fasthook",
    help="FastHook - Outbound Webhook Delivery Service",
    no_args_is_help=True,
)

console = Console()

# Subcommands
db_app = typer.Typer(help="Database management commands")
endpoint_app = typer.Typer(help="Webhook endpoint commands")
delivery_app = typer.Typer(help="Delivery inspection commands")

app.add_typer(db_app, name="db")
app.add_typer(endpoint_app, name="endpoint")
app.add_typer(delivery_app, name="delivery")


def run_async(coro):
    """Run an async function synchronously.

    The database engine is disposed before the event loop closes.
    """
    from fasthook.db.session import close_engine

    async def run():
        try:
            return await coro
        finally:
            await close_engine()

    return asyncio.run(run())


def configure_logging(level: str) -> None:
    """Send application logs through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.command()
def serve(
    api_only: bool = typer.Option(False, "--api-only", help="Run only API server"),
    worker_only: bool = typer.Option(False, "--worker-only", help="Run only delivery worker"),
    shutdown_timeout: int = typer.Option(
        30, "--shutdown-timeout", help="Timeout for graceful shutdown in seconds"
    ),
):
    """Start the FastHook server."""
    import signal

    import uvicorn

    from fasthook.webhook import WebhookWorker

    if api_only and worker_only:
        console.print("[red]--api-only and --worker-only are mutually exclusive[/red]")
        raise typer.Exit(1)

    settings = get_settings()
    configure_logging(settings.log_level)

    async def run_all():
        uvicorn_server: uvicorn.Server | None = None
        webhook_worker: WebhookWorker | None = None

        async def graceful_shutdown(sig: signal.Signals | None = None) -> None:
            """Handle graceful shutdown of all components."""
            if sig:
                console.print(f"\n[yellow]Received {sig.name}, shutting down...[/yellow]")
            else:
                console.print("\n[yellow]Shutting down...[/yellow]")

            if uvicorn_server is not None:
                uvicorn_server.should_exit = True
                console.print("[dim]Stopping API server...[/dim]")

            if webhook_worker is not None:
                console.print("[dim]Stopping delivery worker...[/dim]")
                try:
                    await asyncio.wait_for(webhook_worker.stop(), timeout=shutdown_timeout)
                except TimeoutError:
                    console.print("[red]Shutdown timed out, forcing exit[/red]")

            console.print("[green]Shutdown complete[/green]")

        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            loop.create_task(graceful_shutdown(sig))

        # Register signal handlers (Unix only)
        try:
            loop.add_signal_handler(signal.SIGTERM, lambda: signal_handler(signal.SIGTERM))
            loop.add_signal_handler(signal.SIGINT, lambda: signal_handler(signal.SIGINT))
        except NotImplementedError:
            pass

        tasks = []

        if not worker_only:
            config = uvicorn.Config(
                "fasthook.main:app",
                host=settings.api_host,
                port=settings.api_port,
                log_level=settings.log_level.lower(),
                log_config=None,
            )
            uvicorn_server = uvicorn.Server(config)
            tasks.append(asyncio.create_task(uvicorn_server.serve()))
            console.print(
                f"[green]API server started on {settings.api_host}:{settings.api_port}[/green]"
            )

        if not api_only:
            webhook_worker = WebhookWorker(settings)
            webhook_worker.start()
            tasks.append(asyncio.create_task(webhook_worker.wait()))
            console.print("[green]Delivery worker started[/green]")

        await asyncio.gather(*tasks)

    try:
        asyncio.run(run_all())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


@app.command()
def version():
    """Show version information."""
    console.print(f"FastHook version {__version__}")


@app.command()
def show_config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="FastHook Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for field_name in type(settings).model_fields:
        value = getattr(settings, field_name)
        # Hide sensitive values
        if "key" in field_name.lower() or "secret" in field_name.lower():
            value = "********" if value else "(not set)"
        table.add_row(field_name, str(value))

    console.print(table)


@app.command()
def sign(
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Payload file"),
    secret: str = typer.Option(..., "--secret", "-s", help="Endpoint signing secret"),
):
    """Print the signature header a receiver should expect for a payload."""
    console.print(signature_header(secret, payload_file.read_bytes()), highlight=False)


@app.command()
def verify(
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Payload file"),
    signature: str = typer.Option(..., "--signature", help="X-Webhook-Signature header value"),
    secret: str = typer.Option(..., "--secret", "-s", help="Endpoint signing secret"),
):
    """Check a received signature against a payload."""
    if verify_signature(payload_file.read_bytes(), signature, secret):
        console.print("[green]Signature valid[/green]")
        return
    console.print("[red]Signature mismatch[/red]")
    raise typer.Exit(1)


# Database commands


@db_app.command("upgrade")
def db_upgrade(
    revision: str = typer.Argument("head", help="Revision to upgrade to"),
):
    """Upgrade database to a revision."""
    _run_alembic("upgrade", revision)


@db_app.command("downgrade")
def db_downgrade(
    revision: str = typer.Argument(..., help="Revision to downgrade to"),
):
    """Downgrade database to a revision."""
    _run_alembic("downgrade", revision)


@db_app.command("revision")
def db_revision(
    message: str = typer.Option(..., "-m", "--message", help="Revision message"),
    autogenerate: bool = typer.Option(True, "--autogenerate/--no-autogenerate"),
):
    """Create a new database revision."""
    args = ["revision", "-m", message]
    if autogenerate:
        args.append("--autogenerate")
    _run_alembic(*args)


@db_app.command("current")
def db_current():
    """Show current database revision."""
    _run_alembic("current")


@db_app.command("history")
def db_history():
    """Show revision history."""
    _run_alembic("history")


def _run_alembic(*args):
    """Run alembic command."""
    project_dir = Path(__file__).parent.parent.parent
    alembic_ini = project_dir / "alembic.ini"

    if not alembic_ini.exists():
        console.print(f"[red]alembic.ini not found at {alembic_ini}[/red]")
        raise typer.Exit(1)

    cmd = ["alembic", "-c", str(alembic_ini), *args]
    result = subprocess.run(cmd, cwd=project_dir)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)


# Endpoint commands


@endpoint_app.command("create")
def endpoint_create(
    owner: str = typer.Argument(..., help="Owner ID"),
    url: str = typer.Argument(..., help="Receiver URL"),
    events: list[str] = typer.Option(..., "--event", "-e", help="Event type (repeatable)"),
):
    """Register a webhook endpoint and print its signing secret."""
    from fasthook.db.session import async_session
    from fasthook.webhook.registry import create_endpoint
    from fasthook.webhook.url_validator import UnsafeURLError

    async def create():
        async with async_session() as session:
            try:
                endpoint, secret = await create_endpoint(session, owner, url, events)
            except (UnsafeURLError, ValueError) as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(1) from e
            await session.commit()

        console.print(f"[green]Created endpoint {endpoint.id}[/green]")
        console.print(f"Secret: [bold]{secret}[/bold]", highlight=False)
        console.print("[yellow]Store the secret now, it will not be shown again[/yellow]")

    run_async(create())


@endpoint_app.command("list")
def endpoint_list(
    owner: str = typer.Argument(..., help="Owner ID"),
):
    """List an owner's endpoints."""
    from fasthook.db.session import async_session
    from fasthook.webhook.registry import list_endpoints

    async def list_all():
        async with async_session() as session:
            endpoints = await list_endpoints(session, owner)

        table = Table(title=f"Endpoints for {owner}")
        table.add_column("ID", style="dim")
        table.add_column("URL", style="cyan")
        table.add_column("Events")
        table.add_column("Active")

        for endpoint in endpoints:
            table.add_row(
                str(endpoint.id),
                endpoint.url,
                ", ".join(endpoint.events),
                "✓" if endpoint.is_active else "✗",
            )

        console.print(table)

    run_async(list_all())


@endpoint_app.command("delete")
def endpoint_delete(
    endpoint_id: uuid.UUID = typer.Argument(..., help="Endpoint ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Delete an endpoint."""
    from fasthook.db.session import async_session
    from fasthook.webhook.registry import delete_endpoint, get_endpoint

    async def delete():
        async with async_session() as session:
            endpoint = await get_endpoint(session, endpoint_id)
            if not endpoint:
                console.print(f"[red]Endpoint {endpoint_id} not found[/red]")
                raise typer.Exit(1)

            if not force:
                confirm = typer.confirm(f"Delete endpoint {endpoint.url}?")
                if not confirm:
                    raise typer.Abort()

            await delete_endpoint(session, endpoint)
            await session.commit()
            console.print(f"[green]Deleted endpoint {endpoint_id}[/green]")

    run_async(delete())


# Delivery commands


@delivery_app.command("list")
def delivery_list(
    endpoint_id: uuid.UUID = typer.Argument(..., help="Endpoint ID"),
    status: str = typer.Option(None, "--status", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=100),
):
    """List recent deliveries for an endpoint."""
    from fasthook.db.enums import DeliveryStatus
    from fasthook.db.session import async_session
    from fasthook.webhook.queue import list_deliveries

    try:
        status_filter = DeliveryStatus(status) if status else None
    except ValueError as e:
        console.print(f"[red]Unknown status '{status}'[/red]")
        raise typer.Exit(1) from e

    async def list_all():
        async with async_session() as session:
            deliveries, total = await list_deliveries(
                session, endpoint_id, limit=limit, status=status_filter
            )

        table = Table(title=f"Deliveries ({len(deliveries)} of {total})")
        table.add_column("ID", style="dim")
        table.add_column("Event", style="cyan")
        table.add_column("Status")
        table.add_column("Attempts")
        table.add_column("HTTP")
        table.add_column("Next retry")
        table.add_column("Created")

        for d in deliveries:
            table.add_row(
                str(d.id),
                d.event_type,
                d.status,
                f"{d.attempts}/{d.max_attempts}",
                str(d.response_status or ""),
                str(d.next_retry_at or ""),
                str(d.created_at),
            )

        console.print(table)

    run_async(list_all())


@delivery_app.command("show")
def delivery_show(
    delivery_id: int = typer.Argument(..., help="Delivery ID"),
):
    """Show a delivery with its payload and last response."""
    from fasthook.db.session import async_session
    from fasthook.webhook.queue import get_delivery

    async def show():
        async with async_session() as session:
            delivery = await get_delivery(session, delivery_id)

        if not delivery:
            console.print(f"[red]Delivery {delivery_id} not found[/red]")
            raise typer.Exit(1)

        console.print(f"[bold]Delivery {delivery.id}[/bold] ({delivery.event_type})")
        console.print(f"Endpoint: {delivery.endpoint_id}")
        console.print(f"Status: {delivery.status}")
        console.print(f"Attempts: {delivery.attempts}/{delivery.max_attempts}")
        console.print(f"Next retry: {delivery.next_retry_at or '-'}")
        console.print(f"Delivered at: {delivery.delivered_at or '-'}")
        console.print(f"Last response: {delivery.response_status or '-'}")
        if delivery.response_body:
            console.print(delivery.response_body, markup=False, highlight=False)
        try:
            console.print_json(json.dumps(json.loads(delivery.payload)))
        except ValueError:
            console.print(delivery.payload.decode("utf-8", errors="replace"), markup=False)

    run_async(show())


@delivery_app.command("retry")
def delivery_retry(
    delivery_id: int = typer.Argument(..., help="Delivery ID"),
):
    """Queue a pending or dead delivery for another attempt."""
    from fasthook.db.session import async_session
    from fasthook.webhook.queue import DeliveryNotRetryableError, retry_delivery

    async def retry():
        async with async_session() as session:
            try:
                delivery = await retry_delivery(session, delivery_id)
            except DeliveryNotRetryableError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(1) from e

            if not delivery:
                console.print(f"[red]Delivery {delivery_id} not found[/red]")
                raise typer.Exit(1)

            await session.commit()
            console.print(
                f"[green]Delivery {delivery_id} queued for retry "
                f"(attempts {delivery.attempts}/{delivery.max_attempts})[/green]"
            )

    run_async(retry())


if __name__ == "__main__":
    app()
