from datetime import datetime
from typing import Optional

import msgspec


class StatusFields(msgspec.Struct, frozen=True):
    """Fields a status decoder extracts from a server's reply."""

    server_name: str
    map: str
    player_count: int
    max_players: int
    game_version: str = ""


class ServerStatusSnapshot(msgspec.Struct, frozen=True):
    """
    Result of one liveness probe.

    Produced fresh on every probe and never mutated. An unreachable server
    only carries its address, the query time and online=False.
    """

    server_address: str
    queried_at: datetime
    online: bool
    server_name: Optional[str] = None
    map: Optional[str] = None
    player_count: Optional[int] = None
    max_players: Optional[int] = None
    game_version: Optional[str] = None
    # Seconds from sending the request to the first valid reply
    round_trip_latency: Optional[float] = None


class UpdateCheckResult(msgspec.Struct, frozen=True):
    app_id: str
    installed_version: Optional[str]
    latest_version: Optional[str]
    size_estimate: Optional[int] = None

    @property
    def update_available(self) -> bool:
        # Without a known latest build only a missing install needs work
        if self.installed_version is None:
            return True
        return self.latest_version is not None and self.installed_version != self.latest_version
