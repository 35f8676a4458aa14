"""
Catalog resolution with an explicitly owned, time-limited cache.
"""

import time
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

import msgspec
import requests
from loguru import logger

from hostengine.models.app_descriptor import AppDescriptor, CatalogDocument, CatalogEntry
from hostengine.utils.acf_utils import latest_build_id
from hostengine.utils.constants import DEDICATED_SERVER_APPS, DEFAULT_CATALOG_TTL_SECONDS
from hostengine.utils.exception import CatalogUnavailable, UnknownApp
from hostengine.utils.retry import RetryConfig, request_with_retry

if TYPE_CHECKING:
    from hostengine.utils.steam.steamcmd.wrapper import SteamcmdInterface


class CatalogSource(Protocol):
    def fetch(self, app_id: str) -> CatalogEntry:
        """
        :raises UnknownApp: If the source does not recognise the id
        :raises CatalogUnavailable: If the source cannot be reached
        """
        ...


class CatalogCache:
    """
    Time-limited store of resolved catalog entries.

    Expired entries are kept so they can still be served as stale when a
    refresh fails; only `invalidate()` removes them.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CATALOG_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = RLock()
        self._entries: dict[str, tuple[CatalogEntry, float]] = {}

    def get(self, app_id: str) -> Optional[CatalogEntry]:
        with self._lock:
            cached = self._entries.get(app_id)
            return cached[0] if cached else None

    def is_fresh(self, app_id: str) -> bool:
        with self._lock:
            cached = self._entries.get(app_id)
            return cached is not None and self._clock() - cached[1] < self.ttl_seconds

    def put(self, app_id: str, entry: CatalogEntry) -> None:
        with self._lock:
            self._entries[app_id] = (entry, self._clock())

    def invalidate(self, app_id: Optional[str] = None) -> None:
        """Drop one entry, or every entry when app_id is None."""
        with self._lock:
            if app_id is None:
                self._entries.clear()
            else:
                self._entries.pop(app_id, None)


class CatalogResolver:
    """
    Maps an app id to its descriptor and latest published build.
    """

    def __init__(self, source: CatalogSource, cache: Optional[CatalogCache] = None) -> None:
        self.source = source
        self.cache = cache or CatalogCache()

    def resolve(self, app_id: str) -> CatalogEntry:
        """
        Resolve an app through the cache, fetching on a miss or expiry.

        :raises UnknownApp: If the catalog does not recognise the id
        :raises CatalogUnavailable: If the catalog is unreachable and nothing is cached
        """
        if self.cache.is_fresh(app_id):
            entry = self.cache.get(app_id)
            if entry is not None:
                return entry
        return self._fetch(app_id)

    def refresh(self, app_id: str) -> CatalogEntry:
        """Bypass the cache and fetch the current entry."""
        return self._fetch(app_id)

    def _fetch(self, app_id: str) -> CatalogEntry:
        try:
            entry = self.source.fetch(app_id)
        except CatalogUnavailable as e:
            cached = self.cache.get(app_id)
            if cached is None:
                raise
            logger.warning(f"Catalog refresh for {app_id} failed, serving stale entry: {e}")
            return msgspec.structs.replace(cached, stale=True)
        logger.debug(f"Resolved app {app_id}: latest build {entry.latest_version}")
        self.cache.put(app_id, entry)
        return entry


class BuiltinCatalogSource:
    """
    Descriptors from the built-in dedicated server table.

    The latest build id is read from SteamCMD `app_info_print` when a
    SteamCMD interface is available, otherwise it stays unknown.
    """

    def __init__(
        self,
        steamcmd: Optional["SteamcmdInterface"] = None,
        extra: Optional[dict[str, dict[str, Any]]] = None,
    ) -> None:
        self.steamcmd = steamcmd
        self.apps = {**DEDICATED_SERVER_APPS, **(extra or {})}

    def fetch(self, app_id: str) -> CatalogEntry:
        data = self.apps.get(app_id)
        if data is None:
            raise UnknownApp(f"App {app_id} is not a known dedicated server")
        descriptor = AppDescriptor.from_mapping(app_id, data)
        latest_version = None
        if self.steamcmd is not None:
            latest_version = latest_build_id(self.steamcmd.app_info(app_id))
            if latest_version is None:
                logger.warning(f"Could not determine the latest build of app {app_id}")
        return CatalogEntry(
            descriptor=descriptor,
            latest_version=latest_version,
            size_estimate=data.get("size_estimate"),
        )


class HttpCatalogSource:
    """
    Catalog served over HTTP as `GET {base_url}/apps/{app_id}` returning a
    JSON CatalogDocument.
    """

    def __init__(self, base_url: str, retry_config: Optional[RetryConfig] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()

    def fetch(self, app_id: str) -> CatalogEntry:
        url = f"{self.base_url}/apps/{app_id}"
        try:
            response = request_with_retry("GET", url, config=self.retry_config)
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise UnknownApp(f"App {app_id} is not in the catalog") from e
            raise CatalogUnavailable(f"Catalog request to {url} failed: {e}") from e
        except requests.RequestException as e:
            raise CatalogUnavailable(
                f"Catalog at {self.base_url} is unreachable: {e.__class__.__name__}"
            ) from e
        try:
            document = msgspec.json.decode(response.content, type=CatalogDocument)
        except msgspec.DecodeError as e:
            raise CatalogUnavailable(f"Invalid catalog document for {app_id}: {e}") from e
        return document.to_entry()
