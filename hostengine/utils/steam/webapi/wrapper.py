from logging import WARNING, getLogger
from typing import Any, Optional, Protocol

import requests
from loguru import logger

from hostengine.models.workshop_item import WorkshopItemDetails
from hostengine.utils.exception import CatalogUnavailable
from hostengine.utils.generic import chunks
from hostengine.utils.retry import RetryConfig, request_with_retry

# urllib3 logs every retry at DEBUG
getLogger("urllib3").setLevel(WARNING)

PUBLISHED_FILE_DETAILS_URL = (
    "https://api.steampowered.com/ISteamRemoteStorage/GetPublishedFileDetails/v1/"
)
# EResult OK
STEAM_RESULT_OK = 1


class WorkshopCatalog(Protocol):
    def details(
        self, app_id: str, item_ids: list[str]
    ) -> dict[str, WorkshopItemDetails]: ...


def ISteamRemoteStorage_GetPublishedFileDetails(
    publishedfileids: list[str],
    retry_config: Optional[RetryConfig] = None,
) -> list[dict[str, Any]]:
    """
    Given a list of PublishedFileIds, return a list of json data queried
    from Steam WebAPI, containing data to be parsed.

    https://steamapi.xpaw.me/#ISteamRemoteStorage/GetPublishedFileDetails

    :param publishedfileids: a list of 1 or more publishedfileids to lookup metadata for
    :param retry_config: retry behaviour for transient HTTP failures
    :return: the publishedfiledetails entries of the response
    :raises CatalogUnavailable: if the WebAPI cannot be reached or answers garbage
    """
    metadata: list[dict[str, Any]] = []
    for chunk in chunks(_list=publishedfileids, limit=5000):
        logger.debug(f"Querying details for {len(chunk)} item(s) via Steam WebAPI")
        data = {"itemcount": str(len(chunk))}
        for count, publishedfileid in enumerate(chunk):
            data[f"publishedfileids[{count}]"] = publishedfileid
        try:
            response = request_with_retry(
                "POST", PUBLISHED_FILE_DETAILS_URL, data=data, config=retry_config
            )
        except requests.RequestException as e:
            raise CatalogUnavailable(
                f"Unable to complete request! Are you connected to the internet? "
                f"Received exception: {e.__class__.__name__}"
            ) from e
        try:
            json_response = response.json()
        except requests.exceptions.JSONDecodeError as e:
            raise CatalogUnavailable(f"Invalid JSON response: {e}") from e
        logger.debug(f"Received WebAPI response {response.status_code} from query")
        if json_response.get("response", {}).get("resultcount", 0) > 0:
            metadata.extend(json_response["response"]["publishedfiledetails"])
    return metadata


class SteamWorkshopCatalog:
    """
    Workshop catalog backed by the public Steam WebAPI.

    The declared content version of an item is its `time_updated`, which is
    the same value SteamCMD records as `timeupdated` in appworkshop_<appid>.acf.
    """

    def __init__(self, retry_config: Optional[RetryConfig] = None) -> None:
        self.retry_config = retry_config or RetryConfig()

    def details(
        self, app_id: str, item_ids: list[str]
    ) -> dict[str, WorkshopItemDetails]:
        """
        Look up the current details of workshop items.

        Items that Steam does not report as available are missing from the
        result.

        :param app_id: The app the items are expected to belong to
        :param item_ids: Workshop item ids
        :return: Mapping of workshop id to its declared details
        """
        if not item_ids:
            return {}
        found: dict[str, WorkshopItemDetails] = {}
        for entry in ISteamRemoteStorage_GetPublishedFileDetails(
            list(item_ids), retry_config=self.retry_config
        ):
            workshop_id = str(entry.get("publishedfileid", ""))
            if entry.get("result") != STEAM_RESULT_OK:
                logger.warning(
                    f"Steam WebAPI returned result {entry.get('result')} for item {workshop_id}"
                )
                continue
            found[workshop_id] = WorkshopItemDetails(
                workshop_id=workshop_id,
                app_id=app_id,
                content_version=str(entry.get("time_updated", "")),
                size_bytes=int(entry.get("file_size", 0) or 0),
                title=entry.get("title", ""),
            )
        return found
