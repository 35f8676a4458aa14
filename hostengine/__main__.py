import sys

import loguru
from loguru import logger

from hostengine.cli.main import cli
from hostengine.utils.app_info import AppInfo
from hostengine.utils.obfuscate_message import obfuscate_message


def formatter(record: "loguru.Record") -> str:
    """Custom formatter for loguru logger"""
    format_string = (
        "[{level}]"
        "[{time:YYYY-MM-DD HH:mm:ss}]"
        "[{process.id}]"
        "[{thread.name}]"
        "[{module}]"
        "[{function}][{line}]"
        " : "
    )

    record["extra"]["obfuscated_message"] = obfuscate_message(record["message"])
    return format_string + "{extra[obfuscated_message]}\n{exception}"


def configure_logging(debug_mode: bool) -> None:
    # We have log_file (foo.log) and old_log_file (foo.old.log). If old_log_file exists,
    # remove it. If log_file exists, rename it to old_log_file. When we pass log_file to
    # the logger as an argument, it will automatically be created.
    log_file = AppInfo().user_log_folder / (AppInfo().app_name + ".log")
    old_log_file = AppInfo().user_log_folder / (AppInfo().app_name + ".old.log")
    if old_log_file.exists() and old_log_file.is_file():
        old_log_file.unlink()
    if log_file.exists() and log_file.is_file():
        log_file.rename(old_log_file)

    # Remove the default stderr logger
    logger.remove()

    # Create the file logger
    logger.add(log_file, level="DEBUG" if debug_mode else "INFO", format=formatter)

    # Add a "WARNING" or higher stderr logger
    logger.add(
        sys.stderr,
        level="WARNING",
        format=formatter,
        colorize=False,
    )


def main() -> None:
    # Set the log level from the presence (or absence) of a "DEBUG" file in the
    # app storage folder, or the --debug global flag (processed before the CLI)
    debug_file_path = AppInfo().app_storage_folder / "DEBUG"
    debug_mode = debug_file_path.is_file()
    if "--debug" in sys.argv:
        debug_mode = True
        while "--debug" in sys.argv:
            sys.argv.remove("--debug")

    configure_logging(debug_mode)
    logger.info(f"Initializing {AppInfo().app_name}: {AppInfo().app_version}")
    cli(prog_name="hostengine")


if __name__ == "__main__":
    main()
