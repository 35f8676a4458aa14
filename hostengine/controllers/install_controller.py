"""
Install/update orchestration.

Drives one InstallJob through resolving, downloading, verifying and
workshop synchronisation, or removes an install, and publishes exactly one
notification when the job reaches a terminal state.
"""

from contextlib import closing
from pathlib import Path
from typing import Iterator, Optional, Protocol

from loguru import logger

from hostengine.controllers.catalog_controller import CatalogResolver
from hostengine.controllers.workshop_controller import WorkshopSyncManager
from hostengine.models.app_descriptor import CatalogEntry, current_platform
from hostengine.models.install_job import InstallJob, JobNotification, JobState
from hostengine.models.server_status import UpdateCheckResult
from hostengine.models.transfer import TransferEvent, TransferProgress, TransferResult
from hostengine.utils.acf_utils import (
    installed_app_ids,
    is_fully_installed,
    read_app_manifest,
    read_installed_build_id,
)
from hostengine.utils.constants import (
    DEFAULT_TRANSFER_ATTEMPTS,
    DEFAULT_TRANSFER_BACKOFF_FACTOR,
    JOB_KIND_TRANSFER_MODES,
    JobKind,
    TransferMode,
)
from hostengine.utils.exception import (
    Cancelled,
    NotInstalled,
    ProvisioningError,
    TransferError,
    UnsupportedPlatform,
    VerificationError,
    WorkshopSyncError,
)
from hostengine.utils.generic import rmtree
from hostengine.utils.notifications import JobNotifier
from hostengine.utils.retry import RetryConfig, backoff_delay


def check_for_update(
    resolver: CatalogResolver, app_id: str, install_path: str | Path
) -> UpdateCheckResult:
    """
    Compare the installed build id with the catalog's latest build.

    :raises UnknownApp: If the catalog does not recognise the id
    :raises CatalogUnavailable: If the catalog is unreachable and nothing is cached
    """
    entry = resolver.resolve(app_id)
    return UpdateCheckResult(
        app_id=app_id,
        installed_version=read_installed_build_id(install_path, app_id),
        latest_version=entry.latest_version,
        size_estimate=entry.size_estimate,
    )


class TransferClient(Protocol):
    def transfer(
        self, app_id: str, install_path: str, mode: TransferMode
    ) -> Iterator[TransferEvent]: ...


class InstallOrchestrator:
    """
    Runs install, update, verify and uninstall jobs to completion.

    :param resolver: Catalog resolver for descriptors and latest builds
    :param transfer_client: Downloads apps into install paths
    :param workshop: Syncs declared workshop dependencies
    :param notifier: Receives one JobNotification per finished job
    :param transfer_attempts: Total transfer attempts per download phase
    :param backoff_factor: Seconds multiplied by 2**attempt between attempts
    :param system: Platform used to locate the server executable, defaults to the running one
    """

    def __init__(
        self,
        resolver: CatalogResolver,
        transfer_client: TransferClient,
        workshop: Optional[WorkshopSyncManager] = None,
        notifier: Optional[JobNotifier] = None,
        transfer_attempts: int = DEFAULT_TRANSFER_ATTEMPTS,
        backoff_factor: float = DEFAULT_TRANSFER_BACKOFF_FACTOR,
        system: Optional[str] = None,
    ) -> None:
        self.resolver = resolver
        self.transfer_client = transfer_client
        self.workshop = workshop
        self.notifier = notifier or JobNotifier()
        self.transfer_attempts = max(1, transfer_attempts)
        self.backoff = RetryConfig(backoff_factor=backoff_factor)
        self.system = system

    def run(self, job: InstallJob) -> None:
        """
        Drive a job to a terminal state. Never raises.

        :param job: A pending job, owned by the caller's worker thread
        """
        logger.info(
            f"Starting {job.kind.value} job {job.job_id} for app {job.app_id} at {job.install_path}"
        )
        try:
            self._check_cancelled(job)
            if job.kind == JobKind.UNINSTALL:
                job.transition(JobState.REMOVING)
                self._uninstall(job)
                job.transition(JobState.READY)
                logger.info(f"Job {job.job_id}: app {job.app_id} removed from {job.install_path}")
                return

            job.transition(JobState.RESOLVING)
            entry = self.resolver.resolve(job.app_id)
            if entry.stale:
                logger.warning(f"Using a stale catalog entry for app {job.app_id}")
            if not entry.descriptor.supports(self.system):
                raise UnsupportedPlatform(
                    f"App {job.app_id} has no dedicated server for "
                    f"{self.system or current_platform()} "
                    f"(supported: {', '.join(sorted(entry.descriptor.platforms))})"
                )
            self._check_cancelled(job)

            if job.kind == JobKind.VERIFY_ONLY:
                job.transition(JobState.VERIFYING)
            elif self.verify(job.app_id, job.install_path, entry) is None:
                logger.info(
                    f"App {job.app_id} at {job.install_path} is already at the latest build, "
                    f"skipping the download"
                )
                job.transition(JobState.VERIFYING)
            else:
                job.transition(JobState.DOWNLOADING)
                self._download(job, JOB_KIND_TRANSFER_MODES[job.kind])
                job.transition(JobState.VERIFYING)

            mismatch = self.verify(job.app_id, job.install_path, entry)
            if mismatch is not None:
                logger.warning(
                    f"Verification of app {job.app_id} at {job.install_path} failed "
                    f"({mismatch}), downloading once more with validation"
                )
                self._check_cancelled(job)
                job.transition(JobState.DOWNLOADING)
                self._download(job, TransferMode.VERIFY)
                job.transition(JobState.VERIFYING)
                mismatch = self.verify(job.app_id, job.install_path, entry)
                if mismatch is not None:
                    raise VerificationError(mismatch)

            dependencies = entry.descriptor.workshop_dependencies
            if dependencies:
                self._check_cancelled(job)
                job.transition(JobState.SYNCING_WORKSHOP)
                self._sync_workshop(job, sorted(dependencies))

            job.transition(JobState.READY)
            logger.info(f"Job {job.job_id}: app {job.app_id} is ready at {job.install_path}")
        except Cancelled:
            logger.info(f"Job {job.job_id} was cancelled during {job.state.value}")
            job.transition(JobState.CANCELLED)
        except ProvisioningError as e:
            logger.error(f"Job {job.job_id} failed during {job.state.value}: {e}")
            job.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job.job_id}")
            job.fail(ProvisioningError(f"Unexpected error: {e}"))
        finally:
            if job.is_terminal:
                self._notify(job)

    def verify(
        self, app_id: str, install_path: str | Path, entry: CatalogEntry
    ) -> Optional[str]:
        """
        Compare an install against the catalog.

        :return: None if the install matches, else a description of the mismatch
        """
        app_state = read_app_manifest(install_path, app_id)
        if not app_state:
            return f"no appmanifest for app {app_id} in {install_path}"
        if not is_fully_installed(app_state):
            return f"appmanifest reports StateFlags {app_state.get('StateFlags')}"
        build_id = str(app_state.get("buildid", ""))
        if entry.latest_version is not None and build_id != entry.latest_version:
            return f"installed build {build_id} is not the latest build {entry.latest_version}"
        executable = entry.descriptor.executable_path(install_path, self.system)
        if not executable.exists():
            return f"server executable {executable} is missing"
        return None

    def check_for_update(self, app_id: str, install_path: str | Path) -> UpdateCheckResult:
        return check_for_update(self.resolver, app_id, install_path)

    def _uninstall(self, job: InstallJob) -> None:
        """
        Delete an install path that holds the job's app.

        :raises NotInstalled: If the path has no appmanifest for the app
        """
        if not read_app_manifest(job.install_path, job.app_id):
            raise NotInstalled(f"App {job.app_id} is not installed at {job.install_path}")
        others = [i for i in installed_app_ids(job.install_path) if i != job.app_id]
        if others:
            raise ProvisioningError(
                f"{job.install_path} also holds app(s) {', '.join(others)}, refusing to remove it"
            )
        self._check_cancelled(job)
        logger.info(f"Removing {job.install_path}")
        if not rmtree(job.install_path):
            raise ProvisioningError(f"Failed to remove {job.install_path}, see the log for details")

    def _check_cancelled(self, job: InstallJob) -> None:
        if job.is_cancelled:
            raise Cancelled(f"Job {job.job_id} was cancelled")

    def _download(self, job: InstallJob, mode: TransferMode) -> None:
        for attempt in range(self.transfer_attempts):
            self._check_cancelled(job)
            job.record_attempt()
            error = self._transfer_once(job, mode)
            if error is None:
                return
            if attempt + 1 >= self.transfer_attempts:
                raise TransferError(
                    f"Transfer of app {job.app_id} failed after {self.transfer_attempts} attempts: {error}"
                )
            delay = backoff_delay(self.backoff, attempt)
            logger.warning(
                f"Transfer attempt {attempt + 1}/{self.transfer_attempts} for app {job.app_id} "
                f"failed ({error}), retrying in {delay:.1f}s"
            )
            if job.cancel_event.wait(delay):
                raise Cancelled(f"Job {job.job_id} was cancelled")

    def _transfer_once(self, job: InstallJob, mode: TransferMode) -> Optional[str]:
        """
        Run one transfer, recording progress on the job.

        :return: None on success, else the transfer error
        """
        result: Optional[TransferResult] = None
        try:
            with closing(
                self.transfer_client.transfer(job.app_id, job.install_path, mode)
            ) as events:
                for event in events:
                    self._check_cancelled(job)
                    if isinstance(event, TransferProgress):
                        job.update_progress(event.bytes_transferred, event.bytes_total)
                    elif isinstance(event, TransferResult):
                        result = event
                        break
        except TransferError as e:
            return str(e)
        if result is None:
            return "transfer ended without a result"
        if not result.success:
            return result.error or "unknown transfer error"
        if job.bytes_total is not None:
            job.update_progress(job.bytes_total, job.bytes_total)
        return None

    def _sync_workshop(self, job: InstallJob, item_ids: list[str]) -> None:
        if self.workshop is None:
            raise WorkshopSyncError(item_ids[0], "No workshop sync manager is configured")
        results = self.workshop.sync(job.app_id, item_ids, cancel_event=job.cancel_event)
        failed = [result for result in results.values() if not result.success]
        for result in failed:
            logger.error(f"Workshop item {result.workshop_id} failed: {result.error}")
        if failed:
            raise WorkshopSyncError(failed[0].workshop_id, failed[0].error)

    def _notify(self, job: InstallJob) -> None:
        snapshot = job.snapshot()
        self.notifier.publish(
            JobNotification(
                job_id=snapshot.job_id,
                app_id=snapshot.app_id,
                install_path=snapshot.install_path,
                final_state=snapshot.state,
                duration_ms=job.duration_ms,
                error=snapshot.last_error,
            )
        )
