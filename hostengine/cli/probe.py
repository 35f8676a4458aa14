import sys
from typing import Optional

import click
import msgspec

from hostengine.cli.check_update import build_resolver
from hostengine.models.settings import EngineSettings
from hostengine.utils.exception import ProvisioningError
from hostengine.utils.server_query.prober import LivenessProber


@click.command("probe")
@click.argument("address")
@click.option(
    "--app-id",
    default=None,
    help="App of the server; selects the query family through the catalog.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Seconds to wait for each reply (default from settings).",
)
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON.")
@click.pass_obj
def probe(
    settings: EngineSettings,
    address: str,
    app_id: Optional[str],
    timeout: Optional[float],
    as_json: bool,
) -> None:
    """Query the server at ADDRESS (host:port) once and report whether it is online.

    Exits with status 0 if the server answered and 1 otherwise.

    \b
      hostengine probe 203.0.113.7:2457 --app-id 896660
    """
    resolver = build_resolver(settings) if app_id else None
    prober = LivenessProber(settings.probe_timeout, resolver=resolver)
    try:
        snapshot = prober.probe(address, timeout=timeout, app_id=app_id)
    except (ProvisioningError, ValueError) as e:
        click.secho(f"✗ Error: {e}", fg="red", err=True)
        sys.exit(1)

    if as_json:
        click.echo(msgspec.json.encode(snapshot).decode())
    elif snapshot.online:
        click.secho(f"✓ {snapshot.server_address} is online", fg="green")
        click.echo(f"Name:    {snapshot.server_name}")
        click.echo(f"Map:     {snapshot.map}")
        click.echo(f"Players: {snapshot.player_count}/{snapshot.max_players}")
        if snapshot.game_version:
            click.echo(f"Version: {snapshot.game_version}")
        click.echo(f"Latency: {(snapshot.round_trip_latency or 0) * 1000:.0f} ms")
    else:
        click.secho(f"✗ {snapshot.server_address} is offline", fg="red")
    sys.exit(0 if snapshot.online else 1)
