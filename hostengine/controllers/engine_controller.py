from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from hostengine.controllers.catalog_controller import (
    BuiltinCatalogSource,
    CatalogCache,
    CatalogResolver,
    CatalogSource,
    HttpCatalogSource,
)
from hostengine.controllers.install_controller import InstallOrchestrator
from hostengine.controllers.inventory_controller import installation_stats, scan_installs
from hostengine.controllers.job_controller import JobScheduler
from hostengine.controllers.workshop_controller import WorkshopSyncManager
from hostengine.models.install_job import JobNotification, JobSnapshot, JobState
from hostengine.models.inventory import InstallationStats, InstalledApp
from hostengine.models.server_status import ServerStatusSnapshot, UpdateCheckResult
from hostengine.models.settings import EngineSettings
from hostengine.utils.constants import JobKind
from hostengine.utils.exception import ProvisioningError
from hostengine.utils.notifications import JobNotifier, WebhookNotifier
from hostengine.utils.server_query.prober import LivenessProber
from hostengine.utils.steam.steamcmd.wrapper import SteamcmdInterface
from hostengine.utils.steam.webapi.wrapper import SteamWorkshopCatalog, WorkshopCatalog


class ProvisioningEngine:
    """
    Facade wiring the catalog, orchestrator, scheduler, workshop sync and
    prober together from EngineSettings.

    Collaborators can be injected, which is how the tests replace SteamCMD
    and the Steam WebAPI.

    Examples:
        >>> with ProvisioningEngine(EngineSettings.load()) as engine:
        ...     job_id = engine.ensure_installed("896660", "/srv/valheim")
        ...     engine.wait(job_id)
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        transfer_client: Optional[Any] = None,
        catalog_source: Optional[CatalogSource] = None,
        workshop_catalog: Optional[WorkshopCatalog] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        if transfer_client is None:
            transfer_client = SteamcmdInterface(
                self.settings.steamcmd_prefix,
                validate=self.settings.validate_downloads,
                poll_interval=self.settings.transfer_poll_interval,
                inactivity_timeout=self.settings.transfer_inactivity_timeout,
            )
        self.transfer_client = transfer_client

        if catalog_source is None:
            if self.settings.catalog_url:
                catalog_source = HttpCatalogSource(self.settings.catalog_url)
            else:
                steamcmd = (
                    transfer_client
                    if isinstance(transfer_client, SteamcmdInterface)
                    else None
                )
                catalog_source = BuiltinCatalogSource(steamcmd=steamcmd)
        self.resolver = CatalogResolver(
            catalog_source, CatalogCache(self.settings.catalog_ttl_seconds)
        )

        self.notifier = JobNotifier()
        if self.settings.notification_webhook_url:
            self.notifier.subscribe(
                WebhookNotifier(self.settings.notification_webhook_url)
            )

        self.workshop = WorkshopSyncManager(
            transfer_client,
            workshop_catalog or SteamWorkshopCatalog(),
            self.settings.workshop_cache_path,
            max_workers=self.settings.workshop_max_workers,
            poll_interval=self.settings.transfer_poll_interval,
        )
        self.orchestrator = InstallOrchestrator(
            self.resolver,
            transfer_client,
            workshop=self.workshop,
            notifier=self.notifier,
            transfer_attempts=self.settings.transfer_attempts,
            backoff_factor=self.settings.transfer_backoff_factor,
        )
        self.scheduler = JobScheduler(
            self.orchestrator.run,
            max_workers=self.settings.max_workers,
            history_limit=self.settings.job_history_limit,
            busy_path_policy=self.settings.busy_path_policy,
        )
        self.prober = LivenessProber(self.settings.probe_timeout, resolver=self.resolver)

    def __enter__(self) -> "ProvisioningEngine":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def ensure_installed(
        self, app_id: str, install_path: str | Path, kind: JobKind = JobKind.INSTALL
    ) -> str:
        """
        Make sure the latest build of an app is installed at a path.

        Re-submitting against a path whose latest job is ready, with no
        newer build in the catalog, returns that job's id. A path that is
        already current on disk, for example installed by an earlier
        process, gets a new job that finishes without a transfer.

        :return: The id of the job tracking the request
        :raises PathBusy: If the busy-path policy refuses the request
        """
        latest = self.scheduler.latest_for(install_path)
        if (
            kind in (JobKind.INSTALL, JobKind.UPDATE)
            and latest is not None
            and latest.state == JobState.READY
            and latest.app_id == app_id
        ):
            try:
                check = self.orchestrator.check_for_update(app_id, install_path)
            except ProvisioningError as e:
                logger.warning(f"Could not check app {app_id} for updates: {e}")
            else:
                if not check.update_available:
                    logger.info(
                        f"App {app_id} at {install_path} is up to date (build {check.installed_version})"
                    )
                    return latest.job_id
        return self.scheduler.submit(app_id, install_path, kind)

    def update(self, app_id: str, install_path: str | Path) -> str:
        return self.ensure_installed(app_id, install_path, JobKind.UPDATE)

    def verify(self, app_id: str, install_path: str | Path) -> str:
        return self.ensure_installed(app_id, install_path, JobKind.VERIFY_ONLY)

    def uninstall(self, app_id: str, install_path: str | Path) -> str:
        """
        Submit a job deleting the install of an app, holding the path lock.

        :return: The id of the uninstall job
        :raises PathBusy: If another job is active at the path
        """
        return self.scheduler.submit(app_id, install_path, JobKind.UNINSTALL)

    def installed_apps(self, root: str | Path) -> list[InstalledApp]:
        return scan_installs(root)

    def installation_stats(self, root: str | Path) -> InstallationStats:
        return installation_stats(
            scan_installs(root), active_jobs=len(self.scheduler.active_jobs())
        )

    def cancel(self, job_id: str) -> bool:
        return self.scheduler.cancel(job_id)

    def status(self, job_id: str) -> JobSnapshot:
        return self.scheduler.status(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        return self.scheduler.wait(job_id, timeout)

    def check_for_update(self, app_id: str, install_path: str | Path) -> UpdateCheckResult:
        return self.orchestrator.check_for_update(app_id, install_path)

    def probe(
        self,
        address: str,
        timeout: Optional[float] = None,
        app_id: Optional[str] = None,
    ) -> ServerStatusSnapshot:
        return self.prober.probe(address, timeout=timeout, app_id=app_id)

    def probe_app(
        self, app_id: str, host: str, port: Optional[int] = None
    ) -> ServerStatusSnapshot:
        return self.prober.probe_app(app_id, host, port=port)

    def subscribe(
        self, callback: Callable[[JobNotification], None]
    ) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    def close(self) -> None:
        logger.debug("Shutting down provisioning engine")
        self.scheduler.shutdown(cancel_active=True, wait=True)
        self.workshop.shutdown(wait=True)
