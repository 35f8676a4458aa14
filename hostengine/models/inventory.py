from datetime import datetime
from typing import Optional

import msgspec


class InstalledApp(msgspec.Struct, frozen=True):
    """A dedicated server found on disk through its appmanifest."""

    app_id: str
    install_path: str
    name: str
    build_id: Optional[str]
    fully_installed: bool
    size_on_disk: int
    # From the appmanifest's LastUpdated, None if missing
    last_updated: Optional[datetime] = None


class InstallationStats(msgspec.Struct, frozen=True):
    installed_apps: int
    fully_installed_apps: int
    total_size_bytes: int
    active_jobs: int
