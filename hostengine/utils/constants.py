from enum import Enum
from typing import Any


class JobKind(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    VERIFY_ONLY = "verify_only"
    UNINSTALL = "uninstall"


class TransferMode(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    VERIFY = "verify"


class BusyPathPolicy(str, Enum):
    ATTACH = "attach"
    REJECT = "reject"


JOB_KIND_TRANSFER_MODES = {
    JobKind.INSTALL: TransferMode.INSTALL,
    JobKind.UPDATE: TransferMode.UPDATE,
    JobKind.VERIFY_ONLY: TransferMode.VERIFY,
}

# Catalog
DEFAULT_CATALOG_TTL_SECONDS = 3600
# Transfers
DEFAULT_TRANSFER_ATTEMPTS = 3
DEFAULT_TRANSFER_BACKOFF_FACTOR = 2.0
DEFAULT_TRANSFER_INACTIVITY_TIMEOUT = 30 * 60
DEFAULT_TRANSFER_POLL_INTERVAL = 0.5
# Jobs
DEFAULT_JOB_HISTORY_LIMIT = 100
DEFAULT_MAX_WORKERS = 4
DEFAULT_WORKSHOP_MAX_WORKERS = 2
# Liveness probes
DEFAULT_PROBE_TIMEOUT = 1.5

STEAMCMD_URLS = {
    "Darwin": "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_osx.tar.gz",
    "Linux": "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz",
    "Windows": "https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip",
}

# appmanifest StateFlags value for a fully installed app
STEAM_STATE_FLAG_FULLY_INSTALLED = 4

# A2S (Source engine server query) wire constants
A2S_SIMPLE_HEADER = b"\xff\xff\xff\xff"
A2S_SPLIT_HEADER = b"\xff\xff\xff\xfe"
A2S_INFO_REQUEST = A2S_SIMPLE_HEADER + b"TSource Engine Query\x00"
A2S_INFO_REPLY = 0x49  # 'I'
A2S_GOLDSRC_INFO_REPLY = 0x6D  # 'm'
A2S_CHALLENGE_REPLY = 0x41  # 'A'
# The Ship carries extra fields in its A2S_INFO reply
A2S_THE_SHIP_APP_ID = 2400

# Built-in dedicated server descriptors. Executables are templates relative
# to the install path: "{exe}" expands to ".exe" on Windows, "" elsewhere;
# "executable_overrides" replaces the template for a given platform.
DEDICATED_SERVER_APPS: dict[str, dict[str, Any]] = {
    "896660": {
        "name": "Valheim Dedicated Server",
        "executable": "valheim_server.x86_64",
        "executable_overrides": {"windows": "valheim_server.exe"},
        "default_ports": [("game", 2456), ("query", 2457)],
        "platforms": ["windows", "linux"],
        "query_family": "source",
    },
    "258550": {
        "name": "Rust Dedicated Server",
        "executable": "RustDedicated{exe}",
        "default_ports": [("game", 28015), ("rcon", 28016), ("query", 28017)],
        "platforms": ["windows", "linux"],
        "query_family": "source",
    },
    "730": {
        "name": "Counter-Strike 2 Dedicated Server",
        "executable": "game/bin/linuxsteamrt64/cs2",
        "executable_overrides": {"windows": "game/bin/win64/cs2.exe"},
        "default_ports": [("game", 27015), ("query", 27015), ("rcon", 27015)],
        "platforms": ["windows", "linux"],
        "query_family": "source",
    },
    "294420": {
        "name": "7 Days to Die Dedicated Server",
        "executable": "7DaysToDieServer.x86_64",
        "executable_overrides": {"windows": "7DaysToDieServer.exe"},
        "default_ports": [("game", 26900), ("query", 26900), ("rcon", 8081)],
        "platforms": ["windows", "linux"],
        "query_family": "source",
    },
    "90": {
        "name": "Half-Life Dedicated Server",
        "executable": "hlds_linux",
        "executable_overrides": {"windows": "hlds.exe"},
        "default_ports": [("game", 27015), ("query", 27015)],
        "platforms": ["windows", "linux"],
        "query_family": "goldsrc",
    },
}
