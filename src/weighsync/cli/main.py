"""weighsync CLI main entry point."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any

import typer

from weighsync.cli._helpers import (
    get_config,
    open_service,
    open_store,
    output_result,
    print_progress,
    require_context,
    run_async,
)
from weighsync.cli.commands.config_cmd import config_app
from weighsync.cli.commands.sync_cmd import sync_app
from weighsync.cli.tui import render_devices, render_status
from weighsync.sync.sync_engine import LAST_SYNC_KEY

# Main app
app = typer.Typer(
    name="weighsync",
    help="weighsync - keep weighing records in sync across devices",
    no_args_is_help=True,
)

app.add_typer(sync_app, name="sync")
app.add_typer(config_app, name="config")


@app.callback()
def _configure(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def serve(
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Hide progress events")] = False,
) -> None:
    """Run the transfer endpoint, discovery and background timers.

    Stops on Ctrl+C.

    Examples:
        weighsync serve
        weighsync -v serve
    """
    config = get_config()

    async def _serve() -> None:
        service = await open_service(config)
        if not quiet:
            service.subscribe_progress(print_progress)
        await service.start_background_sync()

        typer.secho(
            f"Background sync running for activation {config.tenant_id} "
            f"(transfer: {service.transfer_state})",
            fg=typer.colors.GREEN,
        )
        typer.secho("Press Ctrl+C to stop.", fg=typer.colors.BRIGHT_BLACK)
        await asyncio.Event().wait()

    try:
        run_async(_serve())
    except KeyboardInterrupt:
        typer.echo("\nStopped.")


@app.command()
def discover(
    timeout: Annotated[
        float, typer.Option("--timeout", "-t", help="Seconds to listen for peers")
    ] = 3.0,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List same-activation devices announcing on the local network.

    Examples:
        weighsync discover
        weighsync discover --timeout 10 --json
    """

    async def _discover() -> list[dict[str, Any]]:
        service = await open_service(get_config())
        devices = await service.discover_devices(timeout)
        return [device.to_dict() for device in devices]

    devices = run_async(_discover())
    if json_output:
        output_result({"devices": devices}, True)
        return

    render_devices(devices)


@app.command()
def status(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show local record counts and sync cursors."""
    config = get_config()

    async def _status() -> dict[str, Any]:
        context = require_context(config)
        store = await open_store(config)
        counts = await store.get_aggregate_counts(context.tenant_id)
        pending = await store.count_pending(context.tenant_id)
        return {
            "tenantId": context.tenant_id,
            "deviceName": context.device_name,
            "lastSyncTime": await store.get_setting(context.tenant_id, LAST_SYNC_KEY),
            "pendingUpload": pending,
            "records": {kind.value: agg.count for kind, agg in counts.items()},
        }

    data = run_async(_status())
    if json_output:
        output_result(data, True)
        return

    render_status(data)


@app.command()
def version() -> None:
    """Show version information."""
    from weighsync import __version__

    typer.echo(f"weighsync v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
