"""CLI commands for configuration management."""

from __future__ import annotations

from typing import Annotated

import typer

from weighsync.cli._helpers import get_config, output_result

config_app = typer.Typer(help="Configuration management")


@config_app.command("show")
def config_show(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show the current configuration.

    Examples:
        weighsync config show
        weighsync config show --json
    """
    config = get_config()
    data = config.to_dict()
    if json_output:
        output_result(data, True)
        return

    typer.echo(f"Config file: {config.config_path}")
    typer.echo(f"Database:    {data['db_path']}")
    typer.echo(f"Activation:  {config.tenant_id or '(not set)'}")
    typer.echo(f"Device name: {config.device_name}")
    typer.echo(f"Cloud URL:   {config.cloud.server_url or '(disabled)'}")
    typer.echo(
        f"Peer ports:  transfer {config.peer.transfer_port}, "
        f"fallback {config.peer.fallback_port}, discovery {config.peer.discovery_port}"
    )


@config_app.command("set-tenant")
def config_set_tenant(
    tenant_id: Annotated[int, typer.Argument(help="Activation id of this installation")],
) -> None:
    """Set the activation id that scopes every synced record."""
    config = get_config()
    try:
        config.set_tenant(tenant_id)
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1) from None
    typer.secho(f"Activation set to {tenant_id}", fg=typer.colors.GREEN)


@config_app.command("set-cloud")
def config_set_cloud(
    server_url: Annotated[
        str, typer.Argument(help="Cloud server URL, or an empty string to disable")
    ],
) -> None:
    """Set the cloud backup server.

    Examples:
        weighsync config set-cloud https://backup.example.com
        weighsync config set-cloud ""
    """
    config = get_config()
    try:
        config.set_cloud_url(server_url)
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1) from None

    if config.cloud.server_url:
        typer.secho(f"Cloud sync enabled: {config.cloud.server_url}", fg=typer.colors.GREEN)
    else:
        typer.secho("Cloud sync disabled", fg=typer.colors.YELLOW)
