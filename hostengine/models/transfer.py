"""
Events produced by the transfer tool.

A transfer is a finite, non-restartable sequence of TransferProgress events
terminated by exactly one TransferResult.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class TransferProgress:
    bytes_transferred: int
    # None until the transfer tool reports a total
    bytes_total: Optional[int] = None


@dataclass(frozen=True)
class TransferResult:
    success: bool
    error: Optional[str] = None
    # Only set for workshop downloads, the directory the item landed in
    destination: Optional[str] = None


TransferEvent = Union[TransferProgress, TransferResult]


@dataclass(frozen=True)
class SteamcmdHealth:
    healthy: bool
    steamcmd_path: str
    error: Optional[str] = None
