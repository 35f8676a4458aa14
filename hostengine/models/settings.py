from pathlib import Path
from typing import Optional

import msgspec
from loguru import logger

from hostengine.utils.app_info import AppInfo
from hostengine.utils.constants import (
    DEFAULT_CATALOG_TTL_SECONDS,
    DEFAULT_JOB_HISTORY_LIMIT,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_TRANSFER_ATTEMPTS,
    DEFAULT_TRANSFER_BACKOFF_FACTOR,
    DEFAULT_TRANSFER_INACTIVITY_TIMEOUT,
    DEFAULT_TRANSFER_POLL_INTERVAL,
    DEFAULT_WORKSHOP_MAX_WORKERS,
    BusyPathPolicy,
)


def _default_steamcmd_prefix() -> str:
    return str(AppInfo().default_steamcmd_prefix)


def _default_workshop_cache_path() -> str:
    return str(AppInfo().default_workshop_cache_folder)


class EngineSettings(msgspec.Struct, kw_only=True):
    """
    Deployment configuration for the provisioning engine.

    Pure data class persisted as JSON in the platform data folder.
    """

    # SteamCMD
    steamcmd_prefix: str = msgspec.field(default_factory=_default_steamcmd_prefix)
    workshop_cache_path: str = msgspec.field(
        default_factory=_default_workshop_cache_path
    )
    validate_downloads: bool = False

    # Catalog, empty catalog_url means the built-in table plus SteamCMD app_info
    catalog_url: str = ""
    catalog_ttl_seconds: float = DEFAULT_CATALOG_TTL_SECONDS

    # Transfers
    transfer_attempts: int = DEFAULT_TRANSFER_ATTEMPTS
    transfer_backoff_factor: float = DEFAULT_TRANSFER_BACKOFF_FACTOR
    transfer_inactivity_timeout: float = DEFAULT_TRANSFER_INACTIVITY_TIMEOUT
    transfer_poll_interval: float = DEFAULT_TRANSFER_POLL_INTERVAL

    # Jobs
    job_history_limit: int = DEFAULT_JOB_HISTORY_LIMIT
    max_workers: int = DEFAULT_MAX_WORKERS
    workshop_max_workers: int = DEFAULT_WORKSHOP_MAX_WORKERS
    busy_path_policy: BusyPathPolicy = BusyPathPolicy.ATTACH

    # Liveness probes
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT

    # Outbound notifications for analytics/support collaborators
    notification_webhook_url: str = ""

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "EngineSettings":
        """
        Load settings from disk, falling back to defaults.

        :param path: Settings file, defaults to the platform settings file
        :return: Loaded settings, or defaults if the file is missing or invalid
        """
        settings_file = path or AppInfo().app_settings_file
        if not settings_file.exists():
            logger.debug(f"No settings file at {settings_file}, using defaults")
            return cls()
        try:
            settings = msgspec.json.decode(settings_file.read_bytes(), type=cls)
        except (OSError, msgspec.DecodeError) as e:
            logger.warning(
                f"Could not read settings from {settings_file}, using defaults: {e}"
            )
            return cls()
        logger.info(f"Loaded settings from {settings_file}")
        return settings

    def save(self, path: Optional[Path] = None) -> None:
        settings_file = path or AppInfo().app_settings_file
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = settings_file.with_suffix(".tmp")
        temp_file.write_bytes(msgspec.json.format(msgspec.json.encode(self)))
        temp_file.replace(settings_file)
        logger.info(f"Saved settings to {settings_file}")
