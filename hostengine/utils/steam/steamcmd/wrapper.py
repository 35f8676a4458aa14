import os
import platform
import shutil
import subprocess
import tarfile
from io import BytesIO
from pathlib import Path
from queue import Empty, Queue
from threading import Thread
from time import monotonic
from typing import IO, Any, Iterator, Optional
from zipfile import ZipFile

import requests
from loguru import logger

from hostengine.models.transfer import (
    SteamcmdHealth,
    TransferEvent,
    TransferProgress,
    TransferResult,
)
from hostengine.utils.acf_utils import extract_app_info
from hostengine.utils.constants import (
    DEFAULT_TRANSFER_INACTIVITY_TIMEOUT,
    DEFAULT_TRANSFER_POLL_INTERVAL,
    STEAMCMD_URLS,
    TransferMode,
)
from hostengine.utils.steam.steamcmd.output import parse_steamcmd_line


def _pump_lines(stream: IO[str], lines: "Queue[Optional[str]]") -> None:
    """Forward process output to a queue; None marks end of output."""
    try:
        for line in iter(stream.readline, ""):
            lines.put(line.rstrip("\r\n"))
    finally:
        lines.put(None)


class SteamcmdInterface:
    """
    Transfer client driving SteamCMD.

    Every transfer is a lazy, finite sequence of TransferProgress events
    terminated by one TransferResult. Closing the sequence early terminates
    the SteamCMD process; partial files are left in place and SteamCMD
    resumes them on the next run.
    """

    def __init__(
        self,
        steamcmd_prefix: str,
        validate: bool = False,
        poll_interval: float = DEFAULT_TRANSFER_POLL_INTERVAL,
        inactivity_timeout: float = DEFAULT_TRANSFER_INACTIVITY_TIMEOUT,
    ) -> None:
        logger.debug("Initializing SteamcmdInterface")
        self.poll_interval = poll_interval
        self.inactivity_timeout = inactivity_timeout
        self.initialize_prefix(steamcmd_prefix, validate)
        logger.debug("Finished SteamcmdInterface initialization")

    def initialize_prefix(self, steamcmd_prefix: str, validate: bool) -> None:
        self.steamcmd_prefix = steamcmd_prefix
        self.steamcmd_install_path = str(Path(self.steamcmd_prefix) / "steamcmd")
        self.system = platform.system()
        self.validate_downloads = validate

        self.steamcmd_url = STEAMCMD_URLS.get(self.system)
        if self.system == "Windows":
            self.steamcmd = str(Path(self.steamcmd_install_path) / "steamcmd.exe")
        else:
            self.steamcmd = str(Path(self.steamcmd_install_path) / "steamcmd.sh")
        if self.steamcmd_url is None:
            logger.error(
                f"Found platform {self.system}. steamcmd is not supported on this platform."
            )

    @property
    def setup(self) -> bool:
        return self.check_for_steamcmd(self.steamcmd_prefix)

    def check_for_steamcmd(self, prefix: str) -> bool:
        executable_name = os.path.split(self.steamcmd)[1] if self.steamcmd else None
        if executable_name is None:
            return False
        return os.path.exists(str(Path(prefix) / "steamcmd" / executable_name))

    def setup_steamcmd(self, reinstall: bool = False) -> bool:
        """
        Download and extract the SteamCMD bootstrap into the prefix.

        :param reinstall: Delete an existing installation first
        :return: True if SteamCMD is installed afterwards
        """
        if reinstall and os.path.exists(self.steamcmd_install_path):
            logger.info(
                f"Deleting existing installation from: {self.steamcmd_install_path}"
            )
            shutil.rmtree(self.steamcmd_install_path)
        if self.check_for_steamcmd(prefix=self.steamcmd_prefix):
            logger.info(f"A steamcmd runner already exists at: {self.steamcmd}")
            return True
        if self.steamcmd_url is None:
            return False

        os.makedirs(self.steamcmd_install_path, exist_ok=True)
        logger.info(
            f"Downloading & extracting steamcmd release from: {self.steamcmd_url}"
        )
        try:
            response = requests.get(self.steamcmd_url, timeout=60)
            response.raise_for_status()
            if ".zip" in self.steamcmd_url:
                with ZipFile(BytesIO(response.content)) as zipobj:
                    zipobj.extractall(self.steamcmd_install_path)
            elif ".tar.gz" in self.steamcmd_url:
                with tarfile.open(
                    fileobj=BytesIO(response.content), mode="r:gz"
                ) as tarobj:
                    tarobj.extractall(self.steamcmd_install_path)
        except (requests.RequestException, OSError, tarfile.TarError) as e:
            logger.error(
                f"Failed to download steamcmd for {self.system}: {type(e).__name__}: {e}"
            )
            return False
        logger.info("SteamCMD installation completed")
        return True

    def app_update_args(
        self, app_id: str, install_path: str, mode: TransferMode
    ) -> list[str]:
        args = [
            "+force_install_dir",
            install_path,
            "+login",
            "anonymous",
            "+app_update",
            app_id,
        ]
        if mode == TransferMode.VERIFY or self.validate_downloads:
            args.append("validate")
        args.append("+quit")
        return args

    def workshop_download_args(
        self, app_id: str, workshop_id: str, destination: str
    ) -> list[str]:
        args = [
            "+force_install_dir",
            destination,
            "+login",
            "anonymous",
            "+workshop_download_item",
            app_id,
            workshop_id,
        ]
        if self.validate_downloads:
            args.append("validate")
        args.append("+quit")
        return args

    def transfer(
        self, app_id: str, install_path: str, mode: TransferMode
    ) -> Iterator[TransferEvent]:
        """
        Install, update or validate an app into install_path.

        https://developer.valvesoftware.com/wiki/SteamCMD

        :param app_id: Steam AppID of the dedicated server
        :param install_path: Directory passed to force_install_dir
        :param mode: install, update or verify (verify forces "validate")
        :return: Progress events terminated by one TransferResult
        """
        os.makedirs(install_path, exist_ok=True)
        logger.info(f"SteamCMD {mode.value} of app {app_id} into {install_path}")
        return self._run(self.app_update_args(app_id, install_path, mode))

    def workshop_download(
        self, app_id: str, workshop_id: str, destination: str
    ) -> Iterator[TransferEvent]:
        """
        Download one workshop item into the SteamCMD root at destination.

        The content lands in destination/steamapps/workshop/content/<app_id>/<workshop_id>.
        """
        os.makedirs(destination, exist_ok=True)
        logger.info(f"SteamCMD download of workshop item {workshop_id} for {app_id}")
        return self._run(self.workshop_download_args(app_id, workshop_id, destination))

    def app_info(self, app_id: str, timeout: float = 120.0) -> dict[str, Any]:
        """
        Query `app_info_print` for an app.

        :return: The app's KeyValues block, or {} if SteamCMD is unavailable or fails
        """
        if not self.setup:
            logger.warning("SteamCMD was not found, cannot query app_info")
            return {}
        args = [
            self.steamcmd,
            "+login",
            "anonymous",
            "+app_info_update",
            "1",
            "+app_info_print",
            app_id,
            "+quit",
        ]
        try:
            completed = subprocess.run(
                args,
                cwd=self.steamcmd_install_path,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"app_info_print for {app_id} failed: {e}")
            return {}
        return extract_app_info(completed.stdout, app_id)

    def check_health(self, timeout: float = 120.0) -> SteamcmdHealth:
        """
        Start SteamCMD with only `+quit` and report whether it exits cleanly.

        The first run after setup_steamcmd also lets SteamCMD update itself,
        so this doubles as a warm-up.
        """
        if not self.setup:
            return SteamcmdHealth(
                healthy=False,
                steamcmd_path=self.steamcmd,
                error=f"SteamCMD was not found in {self.steamcmd_prefix}",
            )
        try:
            completed = subprocess.run(
                [self.steamcmd, "+quit"],
                cwd=self.steamcmd_install_path,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"SteamCMD health check failed: {e}")
            return SteamcmdHealth(healthy=False, steamcmd_path=self.steamcmd, error=str(e))
        if completed.returncode != 0:
            tail = completed.stdout.strip().splitlines()[-1:] or ["no output"]
            logger.warning(f"SteamCMD exited with code {completed.returncode}: {tail[0]}")
            return SteamcmdHealth(
                healthy=False,
                steamcmd_path=self.steamcmd,
                error=f"SteamCMD exited with code {completed.returncode}: {tail[0]}",
            )
        return SteamcmdHealth(healthy=True, steamcmd_path=self.steamcmd)

    def _run(self, args: list[str]) -> Iterator[TransferEvent]:
        if not self.setup:
            yield TransferResult(
                success=False,
                error=f"SteamCMD was not found in {self.steamcmd_prefix}. Please setup SteamCMD first!",
            )
            return

        logger.debug(f"Executing SteamCMD: {self.steamcmd} {' '.join(args)}")
        try:
            process = subprocess.Popen(
                [self.steamcmd, *args],
                cwd=self.steamcmd_install_path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            yield TransferResult(success=False, error=f"Failed to start SteamCMD: {e}")
            return

        lines: "Queue[Optional[str]]" = Queue()
        assert process.stdout is not None
        Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True).start()

        last_progress = TransferProgress(bytes_transferred=0)
        last_activity = monotonic()
        result: Optional[TransferResult] = None
        try:
            while True:
                try:
                    line = lines.get(timeout=self.poll_interval)
                except Empty:
                    if monotonic() - last_activity > self.inactivity_timeout:
                        yield TransferResult(
                            success=False,
                            error=f"SteamCMD produced no output for {self.inactivity_timeout:.0f}s",
                        )
                        return
                    # Heartbeat, gives consumers a chance to observe cancellation
                    yield last_progress
                    continue
                if line is None:
                    break
                last_activity = monotonic()
                logger.debug(f"[SteamCMD] {line}")
                event = parse_steamcmd_line(line)
                if isinstance(event, TransferProgress):
                    last_progress = event
                    yield event
                elif isinstance(event, TransferResult):
                    # The first error wins over a later success line
                    if result is None or result.success:
                        result = event

            returncode = process.wait()
            if result is None:
                if returncode == 0:
                    result = TransferResult(success=True)
                else:
                    result = TransferResult(
                        success=False, error=f"SteamCMD exited with code {returncode}"
                    )
            yield result
        finally:
            if process.poll() is None:
                logger.info("Terminating SteamCMD process")
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
