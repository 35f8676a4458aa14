from typing import Optional

import msgspec


class WorkshopItemDetails(msgspec.Struct, frozen=True):
    """What the workshop catalog currently declares for an item."""

    workshop_id: str
    app_id: str
    content_version: str
    size_bytes: int = 0
    title: str = ""


class WorkshopItem(msgspec.Struct, frozen=True):
    """
    A fetched and verified workshop item.

    Shared across every job depending on it; only created once the on-disk
    version marker matches the catalog's declared version.
    """

    workshop_id: str
    app_id: str
    size_bytes: int
    content_version: str
    local_path: str


class WorkshopSyncResult(msgspec.Struct, frozen=True):
    workshop_id: str
    success: bool
    item: Optional[WorkshopItem] = None
    error: Optional[str] = None
    # True when an already fetched copy was served without a transfer
    reused: bool = False
