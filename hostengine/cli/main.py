"""
Main CLI entry point for HostEngine.

This module defines the Click command group and registers all subcommands.
"""

from pathlib import Path
from typing import Optional

import click

from hostengine.cli.check_update import check_update
from hostengine.cli.install import install, uninstall, update, verify
from hostengine.cli.installed import installed
from hostengine.cli.probe import probe
from hostengine.cli.setup_steamcmd import setup_steamcmd
from hostengine.models.settings import EngineSettings
from hostengine.utils.app_info import AppInfo


@click.group()
@click.version_option(version=AppInfo().app_version, prog_name="HostEngine")
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="HOSTENGINE_SETTINGS",
    help="Settings JSON file. Defaults to settings.json in the platform data folder.",
)
@click.pass_context
def cli(ctx: click.Context, settings_path: Optional[Path]) -> None:
    """HostEngine - dedicated server provisioning CLI

    Installs, updates, verifies and removes dedicated servers through SteamCMD and
    checks running servers with their UDP status query.

    Global flags (processed before CLI):
      --debug    Log at DEBUG level (same as a DEBUG file in the data folder)
    """
    ctx.obj = EngineSettings.load(settings_path)


# Register subcommands
cli.add_command(install)
cli.add_command(update)
cli.add_command(verify)
cli.add_command(uninstall)
cli.add_command(installed)
cli.add_command(check_update)
cli.add_command(probe)
cli.add_command(setup_steamcmd)


if __name__ == "__main__":
    cli()
