import sys
from pathlib import Path

import click

from hostengine.controllers.catalog_controller import (
    BuiltinCatalogSource,
    CatalogCache,
    CatalogResolver,
    HttpCatalogSource,
)
from hostengine.controllers.install_controller import check_for_update
from hostengine.models.settings import EngineSettings
from hostengine.utils.exception import ProvisioningError
from hostengine.utils.steam.steamcmd.wrapper import SteamcmdInterface


def build_resolver(settings: EngineSettings) -> CatalogResolver:
    if settings.catalog_url:
        source = HttpCatalogSource(settings.catalog_url)
    else:
        source = BuiltinCatalogSource(
            steamcmd=SteamcmdInterface(
                settings.steamcmd_prefix, validate=settings.validate_downloads
            )
        )
    return CatalogResolver(source, CatalogCache(settings.catalog_ttl_seconds))


@click.command("check-update")
@click.argument("app_id")
@click.argument("path", type=click.Path(path_type=Path, file_okay=False))
@click.option(
    "--exit-code",
    is_flag=True,
    help="Exit with status 3 when an update is available.",
)
@click.pass_obj
def check_update(
    settings: EngineSettings, app_id: str, path: Path, exit_code: bool
) -> None:
    """Compare the build installed at PATH with the latest build of APP_ID."""
    resolver = build_resolver(settings)
    try:
        result = check_for_update(resolver, app_id, path)
    except ProvisioningError as e:
        click.secho(f"✗ Error: {e}", fg="red", err=True)
        sys.exit(1)

    click.echo(f"Installed build: {result.installed_version or 'not installed'}")
    click.echo(f"Latest build:    {result.latest_version or 'unknown'}")
    if result.size_estimate:
        click.echo(f"Download size:   {result.size_estimate} bytes")
    if result.update_available:
        click.secho("An update is available", fg="yellow")
        if exit_code:
            sys.exit(3)
    else:
        click.secho("Up to date", fg="green")
