"""
Job scheduler and registry.

Tracks in-flight and historical install jobs, hands them to the
orchestrator on a worker pool and enforces at most one active job per
install path.
"""

import os
from collections import OrderedDict, deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from threading import RLock
from typing import Callable, Optional
from uuid import uuid4

from loguru import logger

from hostengine.models.install_job import InstallJob, JobSnapshot
from hostengine.utils.constants import (
    DEFAULT_JOB_HISTORY_LIMIT,
    DEFAULT_MAX_WORKERS,
    BusyPathPolicy,
    JobKind,
)
from hostengine.utils.exception import JobNotFound, PathBusy, ProvisioningError

JobRunner = Callable[[InstallJob], None]


def path_key(install_path: str | Path) -> str:
    """Normalized form of an install path used for the per-path lock."""
    return os.path.normcase(os.path.abspath(install_path))


class JobScheduler:
    """
    Accepts install jobs and runs them on a thread pool.

    Busy-path policy:
    - ATTACH: a submit for the app already being provisioned at a path
      returns the active job's id. A different app on a busy path, or an
      uninstall meeting an install (or the reverse), always raises PathBusy.
    - REJECT: every submit against a busy path raises PathBusy.

    :param runner: Drives one job to a terminal state, usually InstallOrchestrator.run
    :param max_workers: Concurrent jobs
    :param history_limit: Terminal jobs retained for status lookups, oldest evicted first
    :param busy_path_policy: What to do when a path already has an active job
    """

    def __init__(
        self,
        runner: JobRunner,
        max_workers: int = DEFAULT_MAX_WORKERS,
        history_limit: int = DEFAULT_JOB_HISTORY_LIMIT,
        busy_path_policy: BusyPathPolicy = BusyPathPolicy.ATTACH,
    ) -> None:
        self._runner = runner
        self.history_limit = history_limit
        self.busy_path_policy = busy_path_policy
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="hostengine-job"
        )
        self._lock = RLock()
        self._active_by_path: dict[str, InstallJob] = {}
        self._jobs: OrderedDict[str, InstallJob] = OrderedDict()
        self._history: deque[str] = deque()
        self._closed = False

    def submit(
        self, app_id: str, install_path: str | Path, kind: JobKind = JobKind.INSTALL
    ) -> str:
        """
        Submit a job for an app at an install path.

        :return: The id of the new job, or of the active job when attaching
        :raises PathBusy: If the busy-path policy refuses the submit
        """
        key = path_key(install_path)
        with self._lock:
            if self._closed:
                raise RuntimeError("JobScheduler has been shut down")
            active = self._active_by_path.get(key)
            if active is not None:
                if (
                    self.busy_path_policy == BusyPathPolicy.ATTACH
                    and active.app_id == app_id
                    and (active.kind == JobKind.UNINSTALL) == (kind == JobKind.UNINSTALL)
                ):
                    logger.info(
                        f"Attaching to active job {active.job_id} for app {app_id} at {install_path}"
                    )
                    return active.job_id
                raise PathBusy(
                    f"{install_path} is busy with job {active.job_id} (app {active.app_id})"
                )
            job = InstallJob(
                job_id=uuid4().hex,
                app_id=app_id,
                install_path=str(install_path),
                kind=kind,
            )
            self._active_by_path[key] = job
            self._jobs[job.job_id] = job
            logger.info(
                f"Submitted {kind.value} job {job.job_id} for app {app_id} at {install_path}"
            )
            self._executor.submit(self._execute, job, key)
        return job.job_id

    def cancel(self, job_id: str) -> bool:
        """
        Request cooperative cancellation of a job.

        :return: True if the job was still running, False if it already finished
        :raises JobNotFound: If the job is unknown or was evicted from history
        """
        job = self._get(job_id)
        if job.is_terminal:
            return False
        logger.info(f"Cancellation requested for job {job_id}")
        job.request_cancel()
        return True

    def status(self, job_id: str) -> JobSnapshot:
        return self._get(job_id).snapshot()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        """
        Block until a job is terminal and its path is released, or the timeout passes.

        :return: The job's latest snapshot, terminal unless the timeout expired
        """
        job = self._get(job_id)
        job.done_event.wait(timeout)
        return job.snapshot()

    def active_jobs(self) -> list[JobSnapshot]:
        with self._lock:
            return [job.snapshot() for job in self._active_by_path.values()]

    def history(self) -> list[JobSnapshot]:
        """Retained terminal jobs, oldest first."""
        with self._lock:
            return [self._jobs[job_id].snapshot() for job_id in self._history]

    def latest_for(self, install_path: str | Path) -> Optional[JobSnapshot]:
        """The active job at a path, else the most recent retained one."""
        key = path_key(install_path)
        with self._lock:
            active = self._active_by_path.get(key)
            if active is not None:
                return active.snapshot()
            for job_id in reversed(self._history):
                job = self._jobs[job_id]
                if path_key(job.install_path) == key:
                    return job.snapshot()
        return None

    def shutdown(self, cancel_active: bool = True, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            active = list(self._active_by_path.values())
        if cancel_active:
            for job in active:
                job.request_cancel()
        self._executor.shutdown(wait=wait)
        logger.debug("JobScheduler shut down")

    def _get(self, job_id: str) -> InstallJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"No job with id {job_id}")
        return job

    def _execute(self, job: InstallJob, key: str) -> None:
        try:
            self._runner(job)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job.job_id}")
            if not job.is_terminal:
                job.fail(ProvisioningError(f"Unexpected error: {e}"))
        finally:
            with self._lock:
                if self._active_by_path.get(key) is job:
                    del self._active_by_path[key]
                self._archive(job)
            job.done_event.set()

    def _archive(self, job: InstallJob) -> None:
        self._history.append(job.job_id)
        while len(self._history) > self.history_limit:
            evicted = self._history.popleft()
            self._jobs.pop(evicted, None)
            logger.debug(f"Evicted job {evicted} from history")
