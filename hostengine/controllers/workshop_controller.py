"""
Workshop content synchronisation shared across install jobs.

Fetched items live in one shared SteamCMD root (the workshop cache). An
arena keyed by (app_id, workshop_id) holds, per item, the number of
callers currently depending on it, the last verified WorkshopItem and the
in-flight fetch, so concurrent jobs asking for the same item share a
single transfer.
"""

from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait as futures_wait
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event, RLock
from typing import Iterable, Iterator, Optional, Protocol

from loguru import logger

from hostengine.models.transfer import TransferEvent, TransferResult
from hostengine.models.workshop_item import (
    WorkshopItem,
    WorkshopItemDetails,
    WorkshopSyncResult,
)
from hostengine.utils.acf_utils import read_workshop_item_version, workshop_content_path
from hostengine.utils.constants import (
    DEFAULT_TRANSFER_POLL_INTERVAL,
    DEFAULT_WORKSHOP_MAX_WORKERS,
)
from hostengine.utils.exception import Cancelled, CatalogUnavailable, WorkshopSyncError
from hostengine.utils.steam.webapi.wrapper import WorkshopCatalog

ArenaKey = tuple[str, str]


class WorkshopTransferClient(Protocol):
    def workshop_download(
        self, app_id: str, workshop_id: str, destination: str
    ) -> Iterator[TransferEvent]: ...


@dataclass
class _ArenaEntry:
    refs: int = 0
    item: Optional[WorkshopItem] = None
    # Latest fetch and the content version it downloads. An older fetch may
    # still be finishing when a newer one is chained behind it.
    future: Optional["Future[WorkshopItem]"] = None
    version: Optional[str] = None
    cancel_event: Event = field(default_factory=Event)

    @property
    def fetching(self) -> bool:
        return self.future is not None and not self.future.done()


class WorkshopSyncManager:
    """
    Deduplicating, reference-counted workshop item fetcher.

    :param transfer_client: Downloads single items into a SteamCMD root
    :param catalog: Declares the current content version of items
    :param cache_path: Shared SteamCMD root the items are downloaded into
    :param max_workers: Concurrent item fetches
    :param poll_interval: How often waiters check their cancellation flag
    """

    def __init__(
        self,
        transfer_client: WorkshopTransferClient,
        catalog: WorkshopCatalog,
        cache_path: str | Path,
        max_workers: int = DEFAULT_WORKSHOP_MAX_WORKERS,
        poll_interval: float = DEFAULT_TRANSFER_POLL_INTERVAL,
    ) -> None:
        self.transfer_client = transfer_client
        self.catalog = catalog
        self.cache_path = Path(cache_path)
        self.poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="hostengine-workshop"
        )
        self._lock = RLock()
        self._arena: dict[ArenaKey, _ArenaEntry] = {}

    def sync(
        self,
        app_id: str,
        item_ids: Iterable[str],
        cancel_event: Optional[Event] = None,
    ) -> dict[str, WorkshopSyncResult]:
        """
        Make sure every item is fetched at the catalog's current version.

        A failing item does not abort the others; items already fetched
        stay in place.

        :param app_id: App the items belong to
        :param item_ids: Workshop item ids
        :param cancel_event: Caller's cancellation flag; when set the caller detaches
        :return: One result per item id
        :raises Cancelled: If cancel_event is set before every item settled
        """
        item_ids = list(dict.fromkeys(str(i) for i in item_ids))
        if not item_ids:
            return {}
        try:
            declared = self.catalog.details(app_id, item_ids)
        except CatalogUnavailable as e:
            logger.warning(f"Workshop catalog unavailable for app {app_id}: {e}")
            return {
                wid: WorkshopSyncResult(workshop_id=wid, success=False, error=str(e))
                for wid in item_ids
            }

        results: dict[str, WorkshopSyncResult] = {}
        waiting: list[tuple[WorkshopItemDetails, "Future[WorkshopItem]"]] = []
        attached: list[ArenaKey] = []
        with self._lock:
            for wid in item_ids:
                details = declared.get(wid)
                if details is None:
                    results[wid] = WorkshopSyncResult(
                        workshop_id=wid,
                        success=False,
                        error=f"Workshop item {wid} is not available for app {app_id}",
                    )
                    continue
                key = (app_id, wid)
                entry = self._arena.setdefault(key, _ArenaEntry())
                entry.refs += 1
                attached.append(key)

                reusable = self._reusable_item(entry, details)
                if reusable is not None:
                    entry.item = reusable
                    logger.debug(f"Reusing workshop item {wid} at {reusable.local_path}")
                    results[wid] = WorkshopSyncResult(
                        workshop_id=wid, success=True, item=reusable, reused=True
                    )
                    continue
                if (
                    entry.fetching
                    and entry.version == details.content_version
                    and not entry.cancel_event.is_set()
                ):
                    logger.debug(f"Joining in-flight fetch of workshop item {wid}")
                else:
                    # A running fetch of another version, or one being cancelled,
                    # finishes before the next one starts in the same SteamCMD root
                    previous = entry.future if entry.fetching else None
                    if previous is not None:
                        logger.info(
                            f"Workshop item {wid} is now at version {details.content_version}, "
                            f"fetching it again after the current fetch"
                        )
                    entry.cancel_event = Event()
                    entry.version = details.content_version
                    entry.future = self._executor.submit(
                        self._fetch, details, entry.cancel_event, previous
                    )
                    entry.future.add_done_callback(
                        lambda _, key=key: self._evict_if_idle(key)
                    )
                waiting.append((details, entry.future))

        try:
            for details, future in waiting:
                result = self._wait_for(details, future, cancel_event)
                if result is None:
                    raise Cancelled(f"Workshop sync for app {app_id} was cancelled")
                results[details.workshop_id] = result
        finally:
            self._detach(attached)
        return {wid: results[wid] for wid in item_ids}

    def references(self, app_id: str, workshop_id: str) -> int:
        with self._lock:
            entry = self._arena.get((app_id, workshop_id))
            return entry.refs if entry else 0

    def tracked(self) -> list[ArenaKey]:
        """
        Items the arena currently holds, sorted.

        An entry is evicted once no caller depends on it and no fetch is
        running. Files on disk are kept; a later sync re-discovers them
        through the workshop version marker.
        """
        with self._lock:
            return sorted(self._arena)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for entry in self._arena.values():
                entry.cancel_event.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _reusable_item(
        self, entry: _ArenaEntry, details: WorkshopItemDetails
    ) -> Optional[WorkshopItem]:
        if (
            entry.item is not None
            and entry.item.content_version == details.content_version
            and Path(entry.item.local_path).is_dir()
        ):
            return entry.item
        if entry.fetching:
            return None
        # Fetched by an earlier process
        return self._verified_item(details)

    def _verified_item(self, details: WorkshopItemDetails) -> Optional[WorkshopItem]:
        local_path = workshop_content_path(
            self.cache_path, details.app_id, details.workshop_id
        )
        installed_version = read_workshop_item_version(
            self.cache_path, details.app_id, details.workshop_id
        )
        if installed_version != details.content_version or not local_path.is_dir():
            return None
        return WorkshopItem(
            workshop_id=details.workshop_id,
            app_id=details.app_id,
            size_bytes=details.size_bytes,
            content_version=details.content_version,
            local_path=str(local_path),
        )

    def _fetch(
        self,
        details: WorkshopItemDetails,
        cancel_event: Event,
        previous: Optional["Future[WorkshopItem]"] = None,
    ) -> WorkshopItem:
        wid = details.workshop_id
        if previous is not None:
            futures_wait([previous])
        if cancel_event.is_set():
            raise Cancelled(f"Fetch of workshop item {wid} was cancelled")
        logger.info(f"Fetching workshop item {wid} ({details.title or 'untitled'})")
        result: Optional[TransferResult] = None
        with closing(
            self.transfer_client.workshop_download(
                details.app_id, wid, str(self.cache_path)
            )
        ) as events:
            for event in events:
                if cancel_event.is_set():
                    raise Cancelled(f"Fetch of workshop item {wid} was cancelled")
                if isinstance(event, TransferResult):
                    result = event
        if result is None or not result.success:
            raise WorkshopSyncError(
                wid,
                f"Download of workshop item {wid} failed: "
                f"{result.error if result else 'no result reported'}",
            )

        item = self._verified_item(details)
        if item is None:
            raise WorkshopSyncError(
                wid,
                f"Workshop item {wid} does not match version {details.content_version} after download",
            )
        with self._lock:
            entry = self._arena.get((details.app_id, wid))
            if entry is not None:
                entry.item = item
        logger.info(f"Workshop item {wid} is at version {item.content_version}")
        return item

    def _wait_for(
        self,
        details: WorkshopItemDetails,
        future: "Future[WorkshopItem]",
        cancel_event: Optional[Event],
    ) -> Optional[WorkshopSyncResult]:
        """
        Wait for a shared fetch while watching the caller's cancellation flag.

        :return: The item's result, or None if the caller cancelled
        """
        wid = details.workshop_id
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return None
            try:
                item = future.result(timeout=self.poll_interval)
            except FutureTimeoutError:
                continue
            except (Cancelled, CancelledError):
                return WorkshopSyncResult(
                    workshop_id=wid, success=False, error=f"Fetch of {wid} was cancelled"
                )
            except WorkshopSyncError as e:
                return WorkshopSyncResult(workshop_id=wid, success=False, error=str(e))
            except Exception as e:
                logger.exception(f"Unexpected error fetching workshop item {wid}")
                return WorkshopSyncResult(workshop_id=wid, success=False, error=str(e))
            return WorkshopSyncResult(workshop_id=wid, success=True, item=item)

    def _detach(self, keys: list[ArenaKey]) -> None:
        with self._lock:
            for key in keys:
                entry = self._arena.get(key)
                if entry is None:
                    continue
                entry.refs -= 1
                if entry.refs > 0:
                    continue
                if entry.fetching:
                    # The future stays until SteamCMD exits; the done callback evicts
                    if not entry.cancel_event.is_set():
                        logger.info(
                            f"No job depends on workshop item {key[1]} anymore, cancelling its fetch"
                        )
                        entry.cancel_event.set()
                else:
                    del self._arena[key]

    def _evict_if_idle(self, key: ArenaKey) -> None:
        with self._lock:
            entry = self._arena.get(key)
            if entry is not None and entry.refs == 0 and not entry.fetching:
                del self._arena[key]
                logger.debug(f"Evicted idle workshop item {key[1]} from the arena")
