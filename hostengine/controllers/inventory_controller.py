"""
Installed dedicated server inventory.

Reads what is installed straight from the appmanifests SteamCMD leaves in
each install path, so the inventory survives restarts and covers installs
made outside the engine.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from hostengine.models.inventory import InstallationStats, InstalledApp
from hostengine.utils.acf_utils import (
    installed_app_ids,
    is_fully_installed,
    read_app_manifest,
)
from hostengine.utils.generic import directories, directory_size


def _last_updated(raw: object) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(str(raw)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def read_installed_apps(install_path: str | Path) -> list[InstalledApp]:
    """
    Describe every app with an appmanifest in an install path.

    :param install_path: A SteamCMD force_install_dir
    :return: One InstalledApp per appmanifest, sorted by app id
    """
    app_ids = installed_app_ids(install_path)
    if not app_ids:
        return []
    size = directory_size(install_path)
    apps = []
    for app_id in app_ids:
        app_state = read_app_manifest(install_path, app_id)
        if not app_state:
            continue
        build_id = app_state.get("buildid")
        apps.append(
            InstalledApp(
                app_id=app_id,
                install_path=str(install_path),
                name=app_state.get("name", f"App {app_id}"),
                build_id=str(build_id) if build_id else None,
                fully_installed=is_fully_installed(app_state),
                size_on_disk=size,
                last_updated=_last_updated(app_state.get("LastUpdated")),
            )
        )
    return apps


def scan_installs(root: str | Path) -> list[InstalledApp]:
    """
    Find installs in a directory and its immediate subdirectories.

    :param root: Either an install path or a folder holding one install path per server
    """
    found = read_installed_apps(root)
    for path in directories(root):
        found.extend(read_installed_apps(path))
    logger.debug(f"Found {len(found)} installed app(s) under {root}")
    return found


def installation_stats(
    apps: Iterable[InstalledApp], active_jobs: int = 0
) -> InstallationStats:
    apps = list(apps)
    # Several apps may share one install path
    sizes = {app.install_path: app.size_on_disk for app in apps}
    return InstallationStats(
        installed_apps=len(apps),
        fully_installed_apps=sum(1 for app in apps if app.fully_installed),
        total_size_bytes=sum(sizes.values()),
        active_jobs=active_jobs,
    )
