"""
install, update, verify and uninstall subcommands.

Each command submits one job to an in-process engine and follows it until
it reaches a terminal state.
"""

import sys
import time
from pathlib import Path
from typing import Optional

import click

from hostengine.controllers.engine_controller import ProvisioningEngine
from hostengine.models.install_job import JobSnapshot, JobState
from hostengine.models.settings import EngineSettings
from hostengine.utils.constants import JobKind
from hostengine.utils.exception import ProvisioningError

# Seconds between progress lines
PROGRESS_INTERVAL = 1.0


def _format_progress(snapshot: JobSnapshot) -> str:
    if snapshot.bytes_total:
        return (
            f"[{snapshot.state.value}] {snapshot.progress_percent:5.1f}% "
            f"({snapshot.bytes_transferred} / {snapshot.bytes_total} bytes)"
        )
    return f"[{snapshot.state.value}]"


def run_job(
    settings: EngineSettings,
    app_id: str,
    path: Path,
    kind: JobKind,
    timeout: Optional[float],
    quiet: bool,
) -> None:
    """Submit a job, report its progress and exit with its outcome."""
    try:
        with ProvisioningEngine(settings) as engine:
            if kind == JobKind.UNINSTALL:
                job_id = engine.uninstall(app_id, path)
            else:
                job_id = engine.ensure_installed(app_id, path, kind)
            if not quiet:
                click.echo(f"Job {job_id}: {kind.value} app {app_id} at {path}", err=True)

            deadline = time.monotonic() + timeout if timeout else None
            last_line = ""
            while True:
                snapshot = engine.wait(job_id, PROGRESS_INTERVAL)
                if snapshot.is_terminal:
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    click.secho(
                        f"Timed out after {timeout:.0f}s, cancelling job {job_id}",
                        fg="yellow",
                        err=True,
                    )
                    engine.cancel(job_id)
                    snapshot = engine.wait(job_id)
                    break
                line = _format_progress(snapshot)
                if not quiet and line != last_line:
                    click.echo(line, err=True)
                    last_line = line
    except KeyboardInterrupt:
        click.echo("\n\nInterrupted by user.", err=True)
        sys.exit(2)
    except ProvisioningError as e:
        click.secho(f"✗ Error: {e}", fg="red", err=True)
        sys.exit(1)

    if snapshot.state == JobState.READY:
        if kind == JobKind.UNINSTALL:
            click.secho(f"✓ App {app_id} was removed from {path}", fg="green", err=True)
        else:
            click.secho(f"✓ App {app_id} is ready at {path}", fg="green", err=True)
        sys.exit(0)
    if snapshot.state == JobState.CANCELLED:
        click.secho(f"✗ Job {job_id} was cancelled", fg="yellow", err=True)
        sys.exit(2)
    click.secho(
        f"✗ {snapshot.error_kind or 'Error'} during "
        f"{snapshot.failed_phase.value if snapshot.failed_phase else 'job'}: {snapshot.last_error}",
        fg="red",
        err=True,
    )
    sys.exit(1)


def _job_command(name: str, kind: JobKind, summary: str) -> click.Command:
    @click.command(name, help=summary)
    @click.argument("app_id")
    @click.argument(
        "path", type=click.Path(path_type=Path, file_okay=False, resolve_path=True)
    )
    @click.option(
        "--timeout",
        type=float,
        default=None,
        help="Cancel the job if it has not finished after this many seconds.",
    )
    @click.option(
        "--quiet",
        is_flag=True,
        help="Suppress progress output (errors still shown).",
    )
    @click.pass_obj
    def command(
        settings: EngineSettings,
        app_id: str,
        path: Path,
        timeout: Optional[float],
        quiet: bool,
    ) -> None:
        run_job(settings, app_id, path, kind, timeout, quiet)

    return command


install = _job_command(
    "install",
    JobKind.INSTALL,
    """Install a dedicated server APP_ID into PATH.

    Skips the download if PATH already holds the latest build.

    \b
      hostengine install 896660 /srv/valheim
    """,
)
update = _job_command(
    "update",
    JobKind.UPDATE,
    """Update the dedicated server APP_ID installed at PATH.""",
)
verify = _job_command(
    "verify",
    JobKind.VERIFY_ONLY,
    """Verify the install of APP_ID at PATH, repairing it with one validated download if needed.""",
)
uninstall = _job_command(
    "uninstall",
    JobKind.UNINSTALL,
    """Delete the install of APP_ID at PATH.

    Refuses when PATH has no appmanifest for APP_ID or also holds other apps.
    """,
)
