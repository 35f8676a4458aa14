"""
Parsing of SteamCMD console output into transfer events.
"""

from re import compile
from typing import Optional

from hostengine.models.transfer import TransferEvent, TransferProgress, TransferResult

# " Update state (0x61) downloading, progress: 45.12 (225600000 / 500000000)"
UPDATE_STATE_PATTERN = compile(
    r"Update state \(0x[0-9a-fA-F]+\) ([\w ]+), progress: ([\d.]+) \((\d+) / (\d+)\)"
)
APP_SUCCESS_PATTERN = compile(r"Success! App '(\d+)' (fully installed|already up to date)")
APP_ERROR_PATTERN = compile(r"(?:Error|ERROR)! (?:App '(\d+)'|Failed to install app '(\d+)')(.*)")
ITEM_SUCCESS_PATTERN = compile(
    r'Success\. Downloaded item (\d+) to "([^"]+)" \((\d+) bytes\)'
)
ITEM_ERROR_PATTERN = compile(r"ERROR! Download item (\d+) failed(?: \((.*)\))?")
LOGIN_ERROR_MARKERS = ("ERROR! Not logged on.", "FAILED (No Connection)", "FAILED login")


def parse_steamcmd_line(line: str) -> Optional[TransferEvent]:
    """
    Turn one SteamCMD output line into a transfer event.

    Returns:
        TransferProgress for update-state lines that report byte counts,
        TransferResult for success/error lines, None for everything else.
    """
    line = line.strip()
    if not line:
        return None

    match = UPDATE_STATE_PATTERN.search(line)
    if match:
        transferred, total = int(match.group(3)), int(match.group(4))
        # SteamCMD reports "0 / 0" until the manifest has been fetched
        return TransferProgress(
            bytes_transferred=transferred, bytes_total=total if total > 0 else None
        )

    match = APP_SUCCESS_PATTERN.search(line)
    if match:
        return TransferResult(success=True)

    match = ITEM_SUCCESS_PATTERN.search(line)
    if match:
        return TransferResult(success=True, destination=match.group(2))

    match = ITEM_ERROR_PATTERN.search(line)
    if match:
        reason = match.group(2) or "unknown reason"
        return TransferResult(
            success=False, error=f"Download of item {match.group(1)} failed: {reason}"
        )

    match = APP_ERROR_PATTERN.search(line)
    if match:
        return TransferResult(success=False, error=line)

    if any(marker in line for marker in LOGIN_ERROR_MARKERS):
        return TransferResult(
            success=False,
            error="SteamCMD reported a login error. Is the host connected to the internet?",
        )

    return None
