"""Tests for the job scheduler and registry."""

from pathlib import Path
from threading import Barrier, Event, Lock, Thread
from typing import Iterator

import pytest

from hostengine.controllers.job_controller import JobScheduler
from hostengine.models.install_job import InstallJob, JobState
from hostengine.utils.constants import BusyPathPolicy, JobKind
from hostengine.utils.exception import JobNotFound, PathBusy


def ready_runner(job: InstallJob) -> None:
    job.transition(JobState.RESOLVING)
    job.transition(JobState.VERIFYING)
    job.transition(JobState.READY)


class GatedRunner:
    """Runner that blocks until released or cancelled, counting runs."""

    def __init__(self) -> None:
        self.release = Event()
        self.started = Event()
        self.runs = 0
        self._lock = Lock()

    def __call__(self, job: InstallJob) -> None:
        with self._lock:
            self.runs += 1
        job.transition(JobState.RESOLVING)
        self.started.set()
        while not self.release.wait(0.01):
            if job.is_cancelled:
                job.transition(JobState.CANCELLED)
                return
        job.transition(JobState.VERIFYING)
        job.transition(JobState.READY)


@pytest.fixture
def gated() -> GatedRunner:
    return GatedRunner()


@pytest.fixture
def scheduler(gated: GatedRunner) -> Iterator[JobScheduler]:
    scheduler = JobScheduler(gated, max_workers=4, history_limit=10)
    yield scheduler
    gated.release.set()
    scheduler.shutdown()


class TestSubmit:
    """Tests for submitting and completing jobs."""

    def test_submit_and_wait(self, tmp_path: Path) -> None:
        """Test that a submitted job runs to READY and is retained in history."""
        scheduler = JobScheduler(ready_runner)
        job_id = scheduler.submit("900", tmp_path / "srv", JobKind.INSTALL)

        snapshot = scheduler.wait(job_id, timeout=5)
        scheduler.shutdown()

        assert snapshot.state == JobState.READY
        assert [s.job_id for s in scheduler.history()] == [job_id]
        assert scheduler.active_jobs() == []

    def test_attach_to_active_job(
        self, scheduler: JobScheduler, gated: GatedRunner, tmp_path: Path
    ) -> None:
        """Test that the same app on a busy path returns the active job id."""
        first = scheduler.submit("900", tmp_path / "srv")
        second = scheduler.submit("900", tmp_path / "srv" / ".." / "srv")

        assert first == second
        gated.release.set()
        assert scheduler.wait(first, timeout=5).state == JobState.READY
        assert gated.runs == 1

    def test_different_app_on_busy_path(
        self, scheduler: JobScheduler, tmp_path: Path
    ) -> None:
        """Test that another app on a busy path raises PathBusy."""
        scheduler.submit("900", tmp_path / "srv")
        with pytest.raises(PathBusy):
            scheduler.submit("901", tmp_path / "srv")

    def test_uninstall_never_attaches_to_install(
        self, scheduler: JobScheduler, tmp_path: Path
    ) -> None:
        """Test that removing a path an install is running on raises PathBusy, and the reverse."""
        scheduler.submit("900", tmp_path / "srv", JobKind.INSTALL)
        with pytest.raises(PathBusy):
            scheduler.submit("900", tmp_path / "srv", JobKind.UNINSTALL)

        scheduler.submit("900", tmp_path / "other", JobKind.UNINSTALL)
        with pytest.raises(PathBusy):
            scheduler.submit("900", tmp_path / "other", JobKind.INSTALL)

    def test_reject_policy(self, gated: GatedRunner, tmp_path: Path) -> None:
        """Test that the reject policy refuses every busy submit."""
        scheduler = JobScheduler(gated, busy_path_policy=BusyPathPolicy.REJECT)
        try:
            scheduler.submit("900", tmp_path / "srv")
            with pytest.raises(PathBusy):
                scheduler.submit("900", tmp_path / "srv")
        finally:
            gated.release.set()
            scheduler.shutdown()

    def test_concurrent_submits_share_one_job(
        self, scheduler: JobScheduler, gated: GatedRunner, tmp_path: Path
    ) -> None:
        """Test that racing submits for one path converge on one job and one run."""
        barrier = Barrier(8)
        job_ids: list[str] = []
        lock = Lock()

        def submit() -> None:
            barrier.wait()
            job_id = scheduler.submit("900", tmp_path / "srv")
            with lock:
                job_ids.append(job_id)

        threads = [Thread(target=submit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        gated.release.set()

        assert len(set(job_ids)) == 1
        assert scheduler.wait(job_ids[0], timeout=5).state == JobState.READY
        assert gated.runs == 1

    def test_different_paths_run_concurrently(
        self, scheduler: JobScheduler, gated: GatedRunner, tmp_path: Path
    ) -> None:
        """Test that jobs on different paths are both active at once."""
        scheduler.submit("900", tmp_path / "a")
        scheduler.submit("900", tmp_path / "b")

        assert len(scheduler.active_jobs()) == 2


class TestCancel:
    """Tests for cancellation through the scheduler."""

    def test_cancel_releases_path(
        self, scheduler: JobScheduler, gated: GatedRunner, tmp_path: Path
    ) -> None:
        """Test that a cancelled job frees its path for the next submit."""
        job_id = scheduler.submit("900", tmp_path / "srv")
        assert gated.started.wait(5)

        assert scheduler.cancel(job_id) is True
        assert scheduler.wait(job_id, timeout=5).state == JobState.CANCELLED

        next_id = scheduler.submit("900", tmp_path / "srv")
        assert next_id != job_id

    def test_cancel_finished_job(self, tmp_path: Path) -> None:
        """Test that cancelling a terminal job returns False."""
        scheduler = JobScheduler(ready_runner)
        job_id = scheduler.submit("900", tmp_path / "srv")
        scheduler.wait(job_id, timeout=5)

        assert scheduler.cancel(job_id) is False
        scheduler.shutdown()

    def test_unknown_job(self, scheduler: JobScheduler) -> None:
        """Test that unknown ids raise JobNotFound."""
        with pytest.raises(JobNotFound):
            scheduler.status("missing")
        with pytest.raises(JobNotFound):
            scheduler.cancel("missing")


class TestHistory:
    """Tests for the bounded job history."""

    def test_oldest_evicted_first(self, tmp_path: Path) -> None:
        """Test that only the newest history_limit terminal jobs are kept."""
        scheduler = JobScheduler(ready_runner, history_limit=2)
        job_ids = []
        for name in ("a", "b", "c"):
            job_id = scheduler.submit("900", tmp_path / name)
            scheduler.wait(job_id, timeout=5)
            job_ids.append(job_id)
        scheduler.shutdown()

        assert [s.job_id for s in scheduler.history()] == job_ids[1:]
        with pytest.raises(JobNotFound):
            scheduler.status(job_ids[0])

    def test_latest_for_path(self, tmp_path: Path) -> None:
        """Test that latest_for returns the most recent job at a path."""
        scheduler = JobScheduler(ready_runner)
        first = scheduler.submit("900", tmp_path / "srv")
        scheduler.wait(first, timeout=5)
        second = scheduler.submit("900", tmp_path / "srv")
        scheduler.wait(second, timeout=5)
        scheduler.shutdown()

        latest = scheduler.latest_for(tmp_path / "srv")
        assert latest is not None and latest.job_id == second
        assert scheduler.latest_for(tmp_path / "other") is None

    def test_runner_crash_becomes_failed(self, tmp_path: Path) -> None:
        """Test that an exception escaping the runner fails the job, not the scheduler."""

        def crashing_runner(job: InstallJob) -> None:
            raise RuntimeError("runner exploded")

        scheduler = JobScheduler(crashing_runner)
        job_id = scheduler.submit("900", tmp_path / "srv")
        snapshot = scheduler.wait(job_id, timeout=5)
        scheduler.shutdown()

        assert snapshot.state == JobState.FAILED
        assert "runner exploded" in (snapshot.last_error or "")
