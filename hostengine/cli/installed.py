import sys
from pathlib import Path

import click
import msgspec

from hostengine.controllers.inventory_controller import installation_stats, scan_installs
from hostengine.models.settings import EngineSettings
from hostengine.utils.generic import format_file_size


@click.command("installed")
@click.argument(
    "root", type=click.Path(path_type=Path, file_okay=False, exists=True, resolve_path=True)
)
@click.option("--json", "as_json", is_flag=True, help="Print the installs and totals as JSON.")
@click.pass_obj
def installed(settings: EngineSettings, root: Path, as_json: bool) -> None:
    """List the dedicated servers installed at ROOT or in its subfolders.

    Installs are found through their SteamCMD appmanifests. Exits with
    status 1 if nothing is installed.

    \b
      hostengine installed /srv
    """
    apps = scan_installs(root)
    stats = installation_stats(apps)

    if as_json:
        click.echo(msgspec.json.encode({"apps": apps, "stats": stats}).decode())
    elif not apps:
        click.secho(f"No dedicated servers installed under {root}", fg="yellow")
    else:
        for app in apps:
            state = "" if app.fully_installed else click.style(" (incomplete)", fg="yellow")
            click.echo(
                f"{app.app_id:>8}  {app.name}  build {app.build_id or '?'}  "
                f"{format_file_size(app.size_on_disk)}  {app.install_path}{state}"
            )
        click.echo(
            f"{stats.installed_apps} app(s), {stats.fully_installed_apps} fully installed, "
            f"{format_file_size(stats.total_size_bytes)} on disk"
        )
    sys.exit(0 if apps else 1)
