"""
Liveness probing of running dedicated servers.

A probe is a stateless, one-shot UDP exchange: one status request, at most
one retry on silence, and an online or offline snapshot as the result.
Unreachability is reported as data, never raised.
"""

import socket
from datetime import datetime, timezone
from time import perf_counter
from typing import TYPE_CHECKING, Optional

from loguru import logger

from hostengine.models.server_status import ServerStatusSnapshot, StatusFields
from hostengine.utils.constants import (
    A2S_CHALLENGE_REPLY,
    A2S_SIMPLE_HEADER,
    A2S_SPLIT_HEADER,
    DEFAULT_PROBE_TIMEOUT,
)
from hostengine.utils.exception import ProbeError
from hostengine.utils.server_query.decoders import StatusDecoder, decoder_for

if TYPE_CHECKING:
    from hostengine.controllers.catalog_controller import CatalogResolver

# One request plus one retry on no reply
PROBE_ATTEMPTS = 2
# Challenge round trips tolerated within a single attempt
MAX_CHALLENGES = 2
RECV_BUFFER_SIZE = 4096

Address = tuple[str, int]


def parse_address(address: "str | Address") -> Address:
    """
    Split "host:port" (or "[v6]:port") into a (host, port) tuple.

    :raises ValueError: If the port is missing or not a number
    """
    if isinstance(address, tuple):
        return address[0], int(address[1])
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Expected host:port, got '{address}'")
    return host.strip("[]"), int(port)


def format_address(address: Address) -> str:
    host, port = address
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class LivenessProber:
    """
    Queries servers with their native status protocol.

    :param timeout: Default per-attempt reply timeout in seconds
    :param resolver: Catalog resolver used to look up an app's query family and port
    """

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        resolver: Optional["CatalogResolver"] = None,
    ) -> None:
        self.timeout = timeout
        self.resolver = resolver

    def probe(
        self,
        address: "str | Address",
        timeout: Optional[float] = None,
        app_id: Optional[str] = None,
        raise_on_malformed: bool = False,
    ) -> ServerStatusSnapshot:
        """
        Probe a server once.

        :param address: "host:port" or a (host, port) tuple of the query port
        :param timeout: Per-attempt timeout, defaults to the prober's timeout
        :param app_id: Selects the status decoder through the catalog, defaults to Source A2S
        :param raise_on_malformed: Raise ProbeError for malformed replies instead of reporting offline
        :return: An online snapshot with the decoded fields, or an offline snapshot
        """
        target = parse_address(address)
        server_address = format_address(target)
        timeout = self.timeout if timeout is None else timeout
        decoder = decoder_for(self._query_family(app_id))
        queried_at = datetime.now(timezone.utc)

        for attempt in range(1, PROBE_ATTEMPTS + 1):
            try:
                fields, latency = self._query_once(target, decoder, timeout)
            except (TimeoutError, ConnectionRefusedError):
                logger.debug(
                    f"No reply from {server_address} (attempt {attempt}/{PROBE_ATTEMPTS})"
                )
                continue
            except ProbeError as e:
                if raise_on_malformed:
                    raise
                logger.warning(f"Malformed reply from {server_address}: {e}")
                break
            except OSError as e:
                # Name resolution or routing failures
                logger.debug(f"Cannot reach {server_address}: {e}")
                break
            return ServerStatusSnapshot(
                server_address=server_address,
                queried_at=queried_at,
                online=True,
                server_name=fields.server_name,
                map=fields.map,
                player_count=fields.player_count,
                max_players=fields.max_players,
                game_version=fields.game_version,
                round_trip_latency=latency,
            )

        return ServerStatusSnapshot(
            server_address=server_address, queried_at=queried_at, online=False
        )

    def probe_app(
        self,
        app_id: str,
        host: str,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ServerStatusSnapshot:
        """
        Probe a server of a known app on its default query port.

        :param app_id: App whose descriptor gives the query port and family
        :param host: Host name or address of the server
        :param port: Overrides the descriptor's query port
        """
        if self.resolver is None:
            raise ValueError("probe_app requires a catalog resolver")
        descriptor = self.resolver.resolve(app_id).descriptor
        port = port or descriptor.query_port
        if port is None:
            raise ProbeError(f"App {app_id} declares no query port")
        return self.probe((host, port), timeout=timeout, app_id=app_id)

    def _query_family(self, app_id: Optional[str]) -> str:
        if app_id is None or self.resolver is None:
            return "source"
        return self.resolver.resolve(app_id).descriptor.query_family

    def _query_once(
        self, target: Address, decoder: StatusDecoder, timeout: float
    ) -> tuple[StatusFields, float]:
        """
        One attempt: send the request and wait for a valid reply until the deadline.

        :return: Decoded fields and the latency from the send that produced them
        :raises TimeoutError: If nothing valid arrives in time
        :raises ProbeError: If the reply cannot be decoded
        """
        family, _, _, _, sockaddr = socket.getaddrinfo(
            target[0], target[1], type=socket.SOCK_DGRAM
        )[0]
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            # Connected UDP sockets surface ICMP port unreachable as ConnectionRefusedError
            sock.connect(sockaddr)
            deadline = perf_counter() + timeout
            sent_at = perf_counter()
            sock.send(decoder.build_request())
            challenges = 0
            while True:
                remaining = deadline - perf_counter()
                if remaining <= 0:
                    raise TimeoutError
                sock.settimeout(remaining)
                data = sock.recv(RECV_BUFFER_SIZE)
                received_at = perf_counter()

                if data.startswith(A2S_SPLIT_HEADER):
                    raise ProbeError("Split status replies are not supported")
                if not data.startswith(A2S_SIMPLE_HEADER) or len(data) < 5:
                    raise ProbeError(f"Reply of {len(data)} bytes without a valid header")
                payload = data[len(A2S_SIMPLE_HEADER) :]

                if payload[0] == A2S_CHALLENGE_REPLY:
                    challenges += 1
                    if challenges > MAX_CHALLENGES or len(payload) < 5:
                        raise ProbeError("Server kept answering with challenges")
                    sent_at = perf_counter()
                    sock.send(decoder.build_request(payload[1:5]))
                    continue
                if payload[0] not in decoder.reply_headers:
                    raise ProbeError(f"Unexpected reply type 0x{payload[0]:02x}")
                return decoder.decode(payload), received_at - sent_at
