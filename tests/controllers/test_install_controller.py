"""Tests for the install/update orchestrator."""

import time
from pathlib import Path
from threading import Event, Thread
from unittest.mock import Mock

import pytest

from hostengine.controllers.catalog_controller import CatalogResolver
from hostengine.controllers.install_controller import InstallOrchestrator
from hostengine.controllers.workshop_controller import WorkshopSyncManager
from hostengine.models.app_descriptor import AppDescriptor, CatalogEntry
from hostengine.models.install_job import InstallJob, JobNotification, JobState
from hostengine.models.workshop_item import WorkshopSyncResult
from hostengine.utils.constants import JobKind, TransferMode
from hostengine.utils.exception import CatalogUnavailable
from hostengine.utils.notifications import JobNotifier
from tests.fakes import (
    APP_ID,
    BYTES_TOTAL,
    LATEST_BUILD,
    FakeTransferClient,
    StaticCatalogSource,
    make_descriptor,
    write_app_manifest,
)


@pytest.fixture
def notifications() -> list[JobNotification]:
    return []


def make_orchestrator(
    catalog_source: StaticCatalogSource,
    transfer_client: FakeTransferClient,
    notifications: list[JobNotification],
    workshop: WorkshopSyncManager | None = None,
) -> InstallOrchestrator:
    notifier = JobNotifier()
    notifier.subscribe(notifications.append)
    return InstallOrchestrator(
        CatalogResolver(catalog_source),
        transfer_client,
        workshop=workshop,
        notifier=notifier,
        transfer_attempts=3,
        backoff_factor=0.0,
    )


def make_job(install_path: Path, kind: JobKind = JobKind.INSTALL) -> InstallJob:
    return InstallJob(job_id="job-1", app_id=APP_ID, install_path=str(install_path), kind=kind)


class TestInstall:
    """Tests for successful installs."""

    def test_install_reaches_ready(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test the reference scenario: app 900 at a fresh path ends READY."""
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)
        job = make_job(install_path)

        orchestrator.run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.READY
        assert snapshot.bytes_total == BYTES_TOTAL
        assert snapshot.bytes_transferred == BYTES_TOTAL
        assert snapshot.attempts == 1
        assert job.duration_ms > 0
        assert transfer_client.calls == [(APP_ID, str(install_path), TransferMode.INSTALL)]
        assert len(notifications) == 1
        assert notifications[0].final_state == JobState.READY
        assert notifications[0].error is None

    def test_update_uses_update_mode(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that update jobs run the transfer in update mode."""
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)
        orchestrator.run(make_job(install_path, JobKind.UPDATE))

        assert transfer_client.calls[0][2] == TransferMode.UPDATE

    def test_unknown_total_is_left_unknown(
        self,
        catalog_source: StaticCatalogSource,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a transfer that never reports a total keeps bytes_total None."""
        client = FakeTransferClient(descriptor, bytes_total=None)
        job = make_job(install_path)
        make_orchestrator(catalog_source, client, notifications).run(job)

        assert job.snapshot().state == JobState.READY
        assert job.snapshot().bytes_total is None

    def test_verify_only_does_not_transfer(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a healthy install passes verification without a download."""
        write_app_manifest(install_path, APP_ID, LATEST_BUILD)
        descriptor.executable_path(install_path).touch()
        job = make_job(install_path, JobKind.VERIFY_ONLY)

        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        assert job.snapshot().state == JobState.READY
        assert transfer_client.calls == []

    def test_current_install_skips_download(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an install job on a path already at the latest build transfers nothing."""
        write_app_manifest(install_path, APP_ID, LATEST_BUILD)
        descriptor.executable_path(install_path).touch()
        job = make_job(install_path)

        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.READY
        assert snapshot.attempts == 0
        assert transfer_client.calls == []


class TestRetries:
    """Tests for transfer retries and verification re-downloads."""

    def test_transient_failures_are_retried(
        self,
        catalog_source: StaticCatalogSource,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that two failed attempts followed by a success end READY."""
        client = FakeTransferClient(descriptor, failures=2)
        job = make_job(install_path)
        make_orchestrator(catalog_source, client, notifications).run(job)

        assert job.snapshot().state == JobState.READY
        assert job.snapshot().attempts == 3

    def test_attempts_exhausted(
        self,
        catalog_source: StaticCatalogSource,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that the job fails with TransferError after the last attempt."""
        client = FakeTransferClient(descriptor, failures=5)
        job = make_job(install_path)
        make_orchestrator(catalog_source, client, notifications).run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "TransferError"
        assert snapshot.failed_phase == JobState.DOWNLOADING
        assert "Connection to content server lost" in (snapshot.last_error or "")
        assert len(client.calls) == 3
        assert notifications[0].final_state == JobState.FAILED

    def test_verification_mismatch_redownloads_once(
        self,
        catalog_source: StaticCatalogSource,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an outdated build triggers one validated download that fixes it."""
        client = FakeTransferClient(descriptor, build_ids=("1000", LATEST_BUILD))
        job = make_job(install_path)
        make_orchestrator(catalog_source, client, notifications).run(job)

        assert job.snapshot().state == JobState.READY
        assert [mode for _, _, mode in client.calls] == [
            TransferMode.INSTALL,
            TransferMode.VERIFY,
        ]

    def test_verification_mismatch_after_redownload_fails(
        self,
        catalog_source: StaticCatalogSource,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a persistent mismatch fails with VerificationError and no third download."""
        client = FakeTransferClient(descriptor, build_ids=("1000",))
        job = make_job(install_path)
        make_orchestrator(catalog_source, client, notifications).run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "VerificationError"
        assert snapshot.failed_phase == JobState.VERIFYING
        assert len(client.calls) == 2


class TestFailures:
    """Tests for non-transfer failures."""

    def test_unknown_app(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an unknown app fails during resolving without a transfer."""
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)
        job = InstallJob(job_id="j", app_id="424242", install_path=str(install_path), kind=JobKind.INSTALL)
        orchestrator.run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "UnknownApp"
        assert snapshot.failed_phase == JobState.RESOLVING
        assert transfer_client.calls == []

    def test_catalog_unavailable(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an unreachable catalog with an empty cache fails the job."""
        catalog_source.unavailable = True
        job = make_job(install_path)
        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        assert job.snapshot().error_kind == CatalogUnavailable.kind

    def test_workshop_item_failure(
        self,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a failing workshop item fails the job and names the item."""
        descriptor = make_descriptor(workshop_dependencies=("111", "222"))
        source = StaticCatalogSource({APP_ID: CatalogEntry(descriptor, latest_version=LATEST_BUILD)})
        client = FakeTransferClient(descriptor)
        workshop = Mock(spec=WorkshopSyncManager)
        workshop.sync.return_value = {
            "111": WorkshopSyncResult(workshop_id="111", success=True),
            "222": WorkshopSyncResult(workshop_id="222", success=False, error="File not found"),
        }
        job = make_job(install_path)

        make_orchestrator(source, client, notifications, workshop=workshop).run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "WorkshopSyncError"
        assert snapshot.failed_phase == JobState.SYNCING_WORKSHOP
        assert snapshot.failed_item == "222"
        assert workshop.sync.call_args[0][:2] == (APP_ID, ["111", "222"])
        assert workshop.sync.call_args[1]["cancel_event"] is job.cancel_event

    def test_unsupported_platform(
        self,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an app without a server build for this platform fails while resolving."""
        descriptor = AppDescriptor(
            app_id=APP_ID, name="Plan 9 Only Server", executable="srcds", platforms=frozenset({"plan9"})
        )
        source = StaticCatalogSource({APP_ID: CatalogEntry(descriptor, latest_version=LATEST_BUILD)})
        job = make_job(install_path)

        make_orchestrator(source, transfer_client, notifications).run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "UnsupportedPlatform"
        assert snapshot.failed_phase == JobState.RESOLVING
        assert "plan9" in (snapshot.last_error or "")
        assert transfer_client.calls == []

    def test_unexpected_error_fails_job(
        self,
        catalog_source: StaticCatalogSource,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a crashing transfer client turns into a failed job."""
        client = Mock()
        client.transfer.side_effect = RuntimeError("boom")
        job = make_job(install_path)
        orchestrator = InstallOrchestrator(CatalogResolver(catalog_source), client, backoff_factor=0)
        orchestrator.notifier.subscribe(notifications.append)

        orchestrator.run(job)

        assert job.snapshot().state == JobState.FAILED
        assert "boom" in (job.snapshot().last_error or "")
        assert len(notifications) == 1


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_during_download(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that cancelling mid-transfer ends CANCELLED within one progress interval."""
        transfer_client.gate = Event()
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)
        job = make_job(install_path)
        worker = Thread(target=orchestrator.run, args=(job,))
        worker.start()

        assert transfer_client.started.wait(5)
        job.request_cancel()
        worker.join(5)

        assert not worker.is_alive()
        assert job.snapshot().state == JobState.CANCELLED
        assert [n.final_state for n in notifications] == [JobState.CANCELLED]

    def test_cancel_during_backoff(
        self,
        catalog_source: StaticCatalogSource,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that cancelling while waiting to retry ends the job at once without another transfer."""
        client = FakeTransferClient(descriptor, failures=1)
        notifier = JobNotifier()
        notifier.subscribe(notifications.append)
        orchestrator = InstallOrchestrator(
            CatalogResolver(catalog_source), client, notifier=notifier, backoff_factor=30.0
        )
        job = make_job(install_path)
        worker = Thread(target=orchestrator.run, args=(job,))
        worker.start()

        assert client.started.wait(5)
        # Let the first attempt fail and the backoff wait begin
        time.sleep(0.2)
        job.request_cancel()
        worker.join(5)

        assert not worker.is_alive()
        assert job.snapshot().state == JobState.CANCELLED
        assert len(client.calls) == 1
        assert [n.final_state for n in notifications] == [JobState.CANCELLED]

    def test_cancel_before_start(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a job cancelled while pending never resolves or transfers."""
        job = make_job(install_path)
        job.request_cancel()
        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        assert job.snapshot().state == JobState.CANCELLED
        assert catalog_source.fetch_count == 0
        assert transfer_client.calls == []


class TestCheckForUpdate:
    """Tests for update checks."""

    def test_update_available(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an older installed build reports an update."""
        write_app_manifest(install_path, APP_ID, "1000")
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)

        result = orchestrator.check_for_update(APP_ID, install_path)
        assert result.installed_version == "1000"
        assert result.latest_version == LATEST_BUILD
        assert result.update_available
        assert result.size_estimate == BYTES_TOTAL

    def test_up_to_date(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that the latest installed build reports no update."""
        write_app_manifest(install_path, APP_ID, LATEST_BUILD)
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)

        assert not orchestrator.check_for_update(APP_ID, install_path).update_available

    def test_not_installed(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a missing install always needs work."""
        orchestrator = make_orchestrator(catalog_source, transfer_client, notifications)
        result = orchestrator.check_for_update(APP_ID, install_path)

        assert result.installed_version is None
        assert result.update_available


class TestUninstall:
    """Tests for uninstall jobs."""

    def test_uninstall_removes_path(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        descriptor: AppDescriptor,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that an installed app is removed and the job ends READY without a catalog lookup."""
        write_app_manifest(install_path, APP_ID, LATEST_BUILD)
        descriptor.executable_path(install_path).touch()
        job = make_job(install_path, JobKind.UNINSTALL)

        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        assert job.snapshot().state == JobState.READY
        assert not install_path.exists()
        assert catalog_source.fetch_count == 0
        assert transfer_client.calls == []
        assert [n.final_state for n in notifications] == [JobState.READY]

    def test_uninstall_without_manifest(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a path without the app's appmanifest fails with NotInstalled and is kept."""
        install_path.mkdir(parents=True)
        (install_path / "notes.txt").write_text("keep me")
        job = make_job(install_path, JobKind.UNINSTALL)

        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        snapshot = job.snapshot()
        assert snapshot.state == JobState.FAILED
        assert snapshot.error_kind == "NotInstalled"
        assert snapshot.failed_phase == JobState.REMOVING
        assert (install_path / "notes.txt").exists()

    def test_uninstall_refuses_shared_path(
        self,
        catalog_source: StaticCatalogSource,
        transfer_client: FakeTransferClient,
        notifications: list[JobNotification],
        install_path: Path,
    ) -> None:
        """Test that a path holding another app as well is not deleted."""
        write_app_manifest(install_path, APP_ID, LATEST_BUILD)
        write_app_manifest(install_path, "740", "77")
        job = make_job(install_path, JobKind.UNINSTALL)

        make_orchestrator(catalog_source, transfer_client, notifications).run(job)

        assert job.snapshot().state == JobState.FAILED
        assert "740" in (job.snapshot().last_error or "")
        assert install_path.exists()
