import os
import shutil
from errno import EACCES
from pathlib import Path
from stat import S_IRWXG, S_IRWXO, S_IRWXU
from typing import Any, Callable, Generator

from loguru import logger


def chunks(_list: list[Any], limit: int) -> Generator[list[Any], None, None]:
    """
    Split list into chunks no larger than the configured limit

    :param list: a list to break into chunks
    :param limit: maximum size of the returned list
    """
    for i in range(0, len(_list), limit):
        yield _list[i : i + limit]


def rmtree(path: str | Path, **kwargs: Any) -> bool:
    """Wrapper for improved rmtree error handling.
    Checks if the path exists and is a directory before attempting to delete it.

    :param path: Path to directory to be deleted.
    :type path: str | Path
    :param kwargs: Additional keyword arguments to pass to shutil.rmtree.
    :return: True if the directory was successfully deleted, False otherwise.
    """
    if isinstance(path, str):
        path = Path(path)

    if not path.exists():
        logger.error(f"Tried to delete directory that does not exist: {path}")
        return False

    if not path.is_dir():
        logger.error(f"rmtree path is not a directory: {path}")
        return False

    try:
        shutil.rmtree(path, onexc=attempt_chmod, **kwargs)
    except OSError as e:
        logger.error(
            f"Failed to remove directory: {e.strerror} occurred at {e.filename} "
            f"with error code {e.errno}"
        )
        return False

    return True


def attempt_chmod(
    func: Callable[[str], Any], path: str, excinfo: BaseException
) -> None:
    """
    onexc handler for shutil.rmtree: retry once after making the path writable.

    Re-raises the original error when the retry is not possible or fails.
    """
    if (
        isinstance(excinfo, OSError)
        and func in (os.rmdir, os.remove, os.unlink, os.listdir)
        and excinfo.errno == EACCES
    ):
        os.chmod(path, S_IRWXU | S_IRWXG | S_IRWXO)  # 0777
        try:
            func(path)
            return
        except OSError as e:
            logger.warning(
                f"attempt_chmod for {func.__name__} double failure at {path}: {e}"
            )
    raise excinfo


def directories(path: Path | str) -> list[str]:
    try:
        with os.scandir(path) as it:
            return sorted(entry.path for entry in it if entry.is_dir())
    except OSError as e:
        logger.error(f"Error reading directory {path}: {e}")
        return []


def directory_size(path: Path | str) -> int:
    """
    Total size in bytes of the regular files below a directory.

    Symlinks are not followed; unreadable entries are logged and skipped.
    """
    total = 0
    pending = [str(path)]
    while pending:
        current = pending.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        total += entry.stat(follow_symlinks=False).st_size
        except OSError as e:
            logger.warning(f"os.scandir failed for directory {current}: {e}")
    return total


def format_file_size(size_in_bytes: int) -> str:
    """Format bytes to a human-readable string."""
    if size_in_bytes < 1024:
        return f"{size_in_bytes} B"
    elif size_in_bytes < 1024 * 1024:
        return f"{size_in_bytes / 1024:.1f} KB"
    elif size_in_bytes < 1024 * 1024 * 1024:
        return f"{size_in_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_in_bytes / (1024 * 1024 * 1024):.2f} GB"
