"""
Install job models for tracking dedicated server provisioning.

An InstallJob is the mutable record the orchestrator drives through the
provisioning state machine. Readers never see it directly; they receive
frozen JobSnapshot copies.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Event, RLock
from time import monotonic
from typing import Optional

import msgspec

from hostengine.utils.constants import JobKind
from hostengine.utils.exception import InvalidTransition, ProvisioningError


class JobState(str, Enum):
    """State of an install job."""

    PENDING = "pending"  # Created, not started
    RESOLVING = "resolving"  # Catalog lookup in progress
    DOWNLOADING = "downloading"  # Transfer tool running
    VERIFYING = "verifying"  # Checking version markers
    SYNCING_WORKSHOP = "syncing_workshop"  # Fetching workshop dependencies
    REMOVING = "removing"  # Deleting an install
    READY = "ready"  # Installed and verified, or removed for uninstall jobs
    FAILED = "failed"  # Terminal failure, see last_error
    CANCELLED = "cancelled"  # User cancelled

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.READY, JobState.FAILED, JobState.CANCELLED})

# Forward transitions; FAILED and CANCELLED are reachable from any non-terminal state
_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.RESOLVING, JobState.REMOVING}),
    JobState.RESOLVING: frozenset({JobState.DOWNLOADING, JobState.VERIFYING}),
    JobState.DOWNLOADING: frozenset({JobState.VERIFYING}),
    JobState.VERIFYING: frozenset(
        {JobState.DOWNLOADING, JobState.SYNCING_WORKSHOP, JobState.READY}
    ),
    JobState.SYNCING_WORKSHOP: frozenset({JobState.READY}),
    JobState.REMOVING: frozenset({JobState.READY}),
}


class JobSnapshot(msgspec.Struct, frozen=True):
    """Point-in-time, read-only copy of an InstallJob."""

    job_id: str
    app_id: str
    install_path: str
    kind: JobKind
    state: JobState
    started_at: datetime
    finished_at: Optional[datetime] = None
    bytes_total: Optional[int] = None
    bytes_transferred: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    failed_phase: Optional[JobState] = None
    failed_item: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def progress_percent(self) -> float:
        if not self.bytes_total:
            return 0.0
        return (self.bytes_transferred / self.bytes_total) * 100.0


@dataclass
class InstallJob:
    """
    Represents one provisioning run for an (app_id, install_path) pair.

    Owned by the orchestrator for its lifetime. Every mutation goes through
    a method holding the job lock so snapshots are always consistent.
    """

    job_id: str
    app_id: str
    install_path: str
    kind: JobKind
    state: JobState = JobState.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    # Progress tracking, bytes_total stays None until the transfer tool reports it
    bytes_total: Optional[int] = None
    bytes_transferred: int = 0
    attempts: int = 0

    # Error tracking
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    failed_phase: Optional[JobState] = None
    failed_item: Optional[str] = None

    cancel_event: Event = field(default_factory=Event, repr=False)
    done_event: Event = field(default_factory=Event, repr=False)
    _started_monotonic: float = field(default_factory=monotonic, repr=False)
    _finished_monotonic: Optional[float] = field(default=None, repr=False)
    _lock: RLock = field(default_factory=RLock, repr=False)

    def transition(self, state: JobState) -> None:
        """
        Move the job to a new state.

        :param state: Target state
        :raises InvalidTransition: If the state machine does not allow the move
        """
        with self._lock:
            if self.state.is_terminal:
                raise InvalidTransition(
                    f"Job {self.job_id} is already {self.state.value}"
                )
            allowed = _TRANSITIONS.get(self.state, frozenset())
            if state not in allowed and state not in (
                JobState.FAILED,
                JobState.CANCELLED,
            ):
                raise InvalidTransition(
                    f"Job {self.job_id}: {self.state.value} -> {state.value} is not allowed"
                )
            self.state = state
            if state.is_terminal:
                self.finished_at = datetime.now(timezone.utc)
                self._finished_monotonic = monotonic()

    def fail(self, error: ProvisioningError) -> None:
        """Record an error and the phase it occurred in, then mark the job failed."""
        with self._lock:
            self.last_error = str(error)
            self.error_kind = error.kind
            self.failed_phase = self.state
            self.failed_item = getattr(error, "item_id", None)
            self.transition(JobState.FAILED)

    def update_progress(self, bytes_transferred: int, bytes_total: Optional[int]) -> None:
        """
        Record transfer progress.

        bytes_transferred is clamped to bytes_total once the total is known.
        """
        with self._lock:
            if bytes_total is not None:
                self.bytes_total = bytes_total
            if self.bytes_total is not None:
                bytes_transferred = min(bytes_transferred, self.bytes_total)
            self.bytes_transferred = max(0, bytes_transferred)

    def record_attempt(self) -> int:
        with self._lock:
            self.attempts += 1
            return self.attempts

    def request_cancel(self) -> None:
        self.cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_ms(self) -> float:
        end = self._finished_monotonic if self._finished_monotonic is not None else monotonic()
        return (end - self._started_monotonic) * 1000.0

    def snapshot(self) -> JobSnapshot:
        with self._lock:
            return JobSnapshot(
                job_id=self.job_id,
                app_id=self.app_id,
                install_path=self.install_path,
                kind=self.kind,
                state=self.state,
                started_at=self.started_at,
                finished_at=self.finished_at,
                bytes_total=self.bytes_total,
                bytes_transferred=self.bytes_transferred,
                attempts=self.attempts,
                last_error=self.last_error,
                error_kind=self.error_kind,
                failed_phase=self.failed_phase,
                failed_item=self.failed_item,
            )


class JobNotification(msgspec.Struct, frozen=True):
    """Payload published once per job when it reaches a terminal state."""

    job_id: str
    app_id: str
    install_path: str
    final_state: JobState
    duration_ms: float
    error: Optional[str] = None
