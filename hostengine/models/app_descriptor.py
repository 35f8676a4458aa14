import platform
from pathlib import Path
from typing import Any, Optional

import msgspec


def current_platform() -> str:
    """Lower-cased platform name as used in AppDescriptor.platforms."""
    return platform.system().lower()


class PortRole(msgspec.Struct, frozen=True):
    role: str  # "game", "query", "rcon"
    port: int


class AppDescriptor(msgspec.Struct, frozen=True):
    """
    Immutable description of a dedicated server product.

    Resolved through the catalog and cached with a time-to-live.
    """

    app_id: str
    name: str
    executable: str
    default_ports: tuple[PortRole, ...] = ()
    platforms: frozenset[str] = frozenset()
    workshop_dependencies: frozenset[str] = frozenset()
    query_family: str = "source"
    executable_overrides: dict[str, str] = msgspec.field(default_factory=dict)

    def executable_path(
        self, install_path: str | Path, system: Optional[str] = None
    ) -> Path:
        """
        Expand the executable template for a platform.

        :param install_path: Root of the installation
        :param system: Platform name, defaults to the running platform
        :return: Absolute path of the server executable
        """
        system = system or current_platform()
        template = self.executable_overrides.get(system, self.executable)
        exe = ".exe" if system == "windows" else ""
        return Path(install_path) / template.format(exe=exe, platform=system)

    def port(self, role: str) -> Optional[int]:
        for port_role in self.default_ports:
            if port_role.role == role:
                return port_role.port
        return None

    @property
    def query_port(self) -> Optional[int]:
        # Most Source titles answer queries on the game port
        return self.port("query") or self.port("game")

    def supports(self, system: Optional[str] = None) -> bool:
        return not self.platforms or (system or current_platform()) in self.platforms

    @classmethod
    def from_mapping(cls, app_id: str, data: dict[str, Any]) -> "AppDescriptor":
        """
        Build a descriptor from a plain mapping such as an entry of
        DEDICATED_SERVER_APPS or a decoded catalog document.
        """
        return cls(
            app_id=str(app_id),
            name=data.get("name", f"App {app_id}"),
            executable=data["executable"],
            default_ports=tuple(
                PortRole(role=role, port=int(port))
                for role, port in data.get("default_ports", [])
            ),
            platforms=frozenset(data.get("platforms", [])),
            workshop_dependencies=frozenset(
                str(i) for i in data.get("workshop_dependencies", [])
            ),
            query_family=data.get("query_family", "source"),
            executable_overrides=dict(data.get("executable_overrides", {})),
        )


class CatalogEntry(msgspec.Struct, frozen=True):
    """
    A resolved catalog record: the descriptor plus what the catalog
    currently says about the latest published build.

    `stale` is set when the entry is served from an expired cache entry
    because the catalog could not be refreshed.
    """

    descriptor: AppDescriptor
    latest_version: Optional[str] = None
    size_estimate: Optional[int] = None
    stale: bool = False


class CatalogDocument(msgspec.Struct):
    """Wire format served by an HTTP catalog."""

    app_id: str
    name: str
    executable: str
    default_ports: list[tuple[str, int]] = msgspec.field(default_factory=list)
    platforms: list[str] = msgspec.field(default_factory=list)
    workshop_dependencies: list[str] = msgspec.field(default_factory=list)
    query_family: str = "source"
    executable_overrides: dict[str, str] = msgspec.field(default_factory=dict)
    latest_version: Optional[str] = None
    size_estimate: Optional[int] = None

    def to_entry(self) -> CatalogEntry:
        return CatalogEntry(
            descriptor=AppDescriptor.from_mapping(self.app_id, msgspec.to_builtins(self)),
            latest_version=self.latest_version,
            size_estimate=self.size_estimate,
        )
