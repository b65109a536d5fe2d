"""Sync commands: manual triggers for every sync operation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated, Any

import typer

from weighsync.cli._helpers import (
    get_config,
    open_service,
    output_result,
    print_progress,
    run_async,
)
from weighsync.sync.device import build_descriptor
from weighsync.sync.protocol import SyncResult
from weighsync.sync.service import SyncService

sync_app = typer.Typer(help="Run sync operations")

JsonOption = Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")]


def _run(operation: Callable[[SyncService], Awaitable[SyncResult]], json_output: bool) -> None:
    async def _execute() -> dict[str, Any]:
        service = await open_service(get_config())
        if not json_output:
            service.subscribe_progress(print_progress)
        result = await operation(service)
        return result.to_dict()

    data = run_async(_execute())
    output_result(data, json_output)
    if not data["success"]:
        raise typer.Exit(1)


@sync_app.command("auto")
def sync_auto(json_output: JsonOption = False) -> None:
    """Sync with the first responding LAN peer, falling back to the cloud.

    Examples:
        weighsync sync auto
        weighsync sync auto --json
    """
    _run(lambda service: service.perform_auto_sync(), json_output)


@sync_app.command("device")
def sync_device(
    address: Annotated[str, typer.Argument(help="Peer address as HOST or HOST:PORT")],
    json_output: JsonOption = False,
) -> None:
    """Sync with one peer at a known address.

    Examples:
        weighsync sync device 192.168.1.20
        weighsync sync device 192.168.1.20:8767
    """
    config = get_config()
    host, _, port_text = address.partition(":")
    try:
        port = int(port_text) if port_text else config.peer.transfer_port
    except ValueError:
        typer.secho(f"Invalid port in address: {address}", fg=typer.colors.RED)
        raise typer.Exit(1) from None

    device = build_descriptor(host, port, config.tenant_id, name=host)
    _run(lambda service: service.sync_with_device(device), json_output)


@sync_app.command("cloud")
def sync_cloud(
    full: Annotated[bool, typer.Option("--full", help="Ignore the sync cursor")] = False,
    json_output: JsonOption = False,
) -> None:
    """Pull, merge and upload against the cloud server.

    Examples:
        weighsync sync cloud
        weighsync sync cloud --full
    """
    _run(lambda service: service.sync_with_cloud(force_full=full), json_output)


@sync_app.command("upload")
def sync_upload(
    all_records: Annotated[
        bool, typer.Option("--all", help="Upload every record, not only pending ones")
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Upload pending local records to the cloud."""
    _run(lambda service: service.upload_only(force_all=all_records), json_output)


@sync_app.command("download")
def sync_download(
    full: Annotated[bool, typer.Option("--full", help="Download everything")] = False,
    json_output: JsonOption = False,
) -> None:
    """Download and merge cloud changes without uploading."""
    _run(lambda service: service.download_only(force_full=full), json_output)


@sync_app.command("check")
def sync_check(json_output: JsonOption = False) -> None:
    """Compare local and cloud fingerprints.

    Examples:
        weighsync sync check
    """

    async def _check() -> dict[str, Any]:
        service = await open_service(get_config())
        report = await service.check_mismatch()
        return report.to_dict()

    data = run_async(_check())
    if json_output:
        output_result(data, True)
        return

    if data["mismatched"]:
        typer.secho("Local data differs from the cloud", fg=typer.colors.YELLOW)
    elif data.get("suppressed"):
        typer.secho("Difference suppressed (recent upload)", fg=typer.colors.BRIGHT_BLACK)
    else:
        typer.secho("Local data matches the cloud", fg=typer.colors.GREEN)
    typer.echo(f"  local: {data['localHash']}")
    typer.echo(f"  cloud: {data.get('cloudHash') or '(unknown)'}")
