import sys

import click

from hostengine.models.settings import EngineSettings
from hostengine.utils.steam.steamcmd.wrapper import SteamcmdInterface


@click.command("setup-steamcmd")
@click.option(
    "--reinstall",
    is_flag=True,
    help="Delete an existing SteamCMD installation first.",
)
@click.option(
    "--check",
    is_flag=True,
    help="Only check that the installed SteamCMD starts and exits cleanly.",
)
@click.pass_obj
def setup_steamcmd(settings: EngineSettings, reinstall: bool, check: bool) -> None:
    """Download and extract SteamCMD into the configured prefix."""
    steamcmd = SteamcmdInterface(settings.steamcmd_prefix)
    if check:
        health = steamcmd.check_health()
        if health.healthy:
            click.secho(f"✓ SteamCMD at {health.steamcmd_path} is healthy", fg="green", err=True)
            sys.exit(0)
        click.secho(f"✗ SteamCMD is not healthy: {health.error}", fg="red", err=True)
        sys.exit(1)
    if steamcmd.setup_steamcmd(reinstall=reinstall):
        click.secho(f"✓ SteamCMD is installed at {steamcmd.steamcmd}", fg="green", err=True)
        sys.exit(0)
    click.secho("✗ SteamCMD setup failed, see the log for details", fg="red", err=True)
    sys.exit(1)
