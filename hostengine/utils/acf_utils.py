"""
ACF Utilities Module

This module reads the ACF (Valve KeyValues) files SteamCMD leaves behind and
uses them as version markers:

- steamapps/appmanifest_<appid>.acf inside an install path records the
  installed build id and install state of a dedicated server.
- steamapps/workshop/appworkshop_<appid>.acf inside a SteamCMD root records
  the "timeupdated" of every downloaded workshop item.
- `app_info_print` console output embeds the app's KeyValues block, which
  carries the latest public build id.

Missing or unparsable files are logged and treated as "nothing installed"
so callers can handle them as a verification mismatch.
"""

from pathlib import Path
from typing import Any, Optional

import vdf  # type: ignore
from loguru import logger

from hostengine.utils.constants import STEAM_STATE_FLAG_FULLY_INSTALLED


def load_acf_from_path(acf_path: str | Path) -> dict[str, Any]:
    """
    Load and parse an ACF file from a given file path.

    Returns an empty dictionary if the file doesn't exist or parsing fails,
    allowing calling code to handle missing files gracefully.

    Args:
        acf_path: Path to the ACF file (string or Path object).

    Returns:
        Parsed ACF data dictionary, or empty dict {} if file not found or parsing fails.

    Example:
        >>> data = load_acf_from_path("/srv/896660/steamapps/appmanifest_896660.acf")
        >>> build_id = data.get("AppState", {}).get("buildid")
    """
    acf_path = Path(acf_path) if isinstance(acf_path, str) else acf_path

    if not acf_path.exists():
        logger.debug(f"ACF file not found: {acf_path}")
        return {}

    try:
        with open(acf_path, "r", encoding="utf-8") as f:
            return vdf.load(f)
    except (OSError, SyntaxError, UnicodeDecodeError) as e:
        logger.error(f"Failed to parse ACF file at {acf_path}: {e}")
        return {}


def app_manifest_path(install_path: str | Path, app_id: str) -> Path:
    return Path(install_path) / "steamapps" / f"appmanifest_{app_id}.acf"


def workshop_acf_path(steam_root: str | Path, app_id: str) -> Path:
    return Path(steam_root) / "steamapps" / "workshop" / f"appworkshop_{app_id}.acf"


def workshop_content_path(steam_root: str | Path, app_id: str, workshop_id: str) -> Path:
    return (
        Path(steam_root) / "steamapps" / "workshop" / "content" / app_id / workshop_id
    )


def read_app_manifest(install_path: str | Path, app_id: str) -> dict[str, Any]:
    """
    Return the AppState section of an install's appmanifest, or {} if absent.
    """
    data = load_acf_from_path(app_manifest_path(install_path, app_id))
    return data.get("AppState", {})


def read_installed_build_id(install_path: str | Path, app_id: str) -> Optional[str]:
    build_id = read_app_manifest(install_path, app_id).get("buildid")
    return str(build_id) if build_id else None


def installed_app_ids(install_path: str | Path) -> list[str]:
    """
    App ids with an appmanifest in an install path, sorted.
    """
    steamapps = Path(install_path) / "steamapps"
    if not steamapps.is_dir():
        return []
    return sorted(
        manifest.stem.removeprefix("appmanifest_")
        for manifest in steamapps.glob("appmanifest_*.acf")
    )


def is_fully_installed(app_state: dict[str, Any]) -> bool:
    """
    Check the StateFlags of an appmanifest AppState section.

    Args:
        app_state: The AppState section of an appmanifest.

    Returns:
        True if the flags report a fully installed app with nothing pending.
    """
    try:
        return int(app_state.get("StateFlags", 0)) == STEAM_STATE_FLAG_FULLY_INSTALLED
    except (ValueError, TypeError):
        return False


def parse_timeupdated(timeupdated_raw: Any) -> int | None:
    """
    Parse and validate a timeupdated value from ACF metadata.

    Args:
        timeupdated_raw: The raw timeupdated value (typically a string in ACF format).

    Returns:
        Parsed integer timestamp (Unix epoch time), or None if value is missing or invalid.

    Example:
        >>> parse_timeupdated("1640995200")
        1640995200
        >>> parse_timeupdated("invalid")
        None
    """
    if timeupdated_raw is None:
        return None
    try:
        return int(timeupdated_raw)
    except (ValueError, TypeError):
        return None


def read_workshop_item_version(
    steam_root: str | Path, app_id: str, workshop_id: str
) -> Optional[str]:
    """
    Return the installed "timeupdated" of a workshop item, or None if the
    item is not recorded in appworkshop_<appid>.acf.
    """
    data = load_acf_from_path(workshop_acf_path(steam_root, app_id))
    installed = data.get("AppWorkshop", {}).get("WorkshopItemsInstalled", {})
    timeupdated = parse_timeupdated(installed.get(workshop_id, {}).get("timeupdated"))
    return str(timeupdated) if timeupdated is not None else None


def extract_app_info(output: str, app_id: str) -> dict[str, Any]:
    """
    Extract the KeyValues block for an app from `app_info_print` output.

    SteamCMD interleaves log lines with the block, so the block is located by
    its quoted app id header and cut at the matching closing brace.

    Returns:
        The parsed block contents, or {} if no block is found.
    """
    lines = output.splitlines()
    header = f'"{app_id}"'
    try:
        start = next(i for i, line in enumerate(lines) if line.strip() == header)
    except StopIteration:
        return {}

    depth = 0
    block: list[str] = []
    for line in lines[start:]:
        block.append(line)
        depth += line.count("{") - line.count("}")
        if depth == 0 and len(block) > 1 and "}" in line:
            break
    try:
        return vdf.loads("\n".join(block)).get(app_id, {})
    except SyntaxError as e:
        logger.error(f"Failed to parse app_info for {app_id}: {e}")
        return {}


def latest_build_id(app_info: dict[str, Any], branch: str = "public") -> Optional[str]:
    build_id = (
        app_info.get("depots", {}).get("branches", {}).get(branch, {}).get("buildid")
    )
    return str(build_id) if build_id else None
