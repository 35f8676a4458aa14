"""
Status decoders for the UDP server query families.

Each decoder knows how to build the status request for its family and how
to turn a reply payload (the datagram minus the 0xFFFFFFFF header) into
StatusFields.

https://developer.valvesoftware.com/wiki/Server_queries#A2S_INFO
"""

import struct
from typing import Optional, Protocol

from steam.utils.binary import StructReader  # type: ignore

from hostengine.models.server_status import StatusFields
from hostengine.utils.constants import (
    A2S_GOLDSRC_INFO_REPLY,
    A2S_INFO_REPLY,
    A2S_INFO_REQUEST,
    A2S_THE_SHIP_APP_ID,
)
from hostengine.utils.exception import ProbeError


class StatusDecoder(Protocol):
    """Protocol for a server query family."""

    reply_headers: frozenset[int]

    def build_request(self, challenge: Optional[bytes] = None) -> bytes: ...

    def decode(self, payload: bytes) -> StatusFields: ...


def _cstring(reader: StructReader) -> str:
    return reader.read_cstring().decode("utf-8", "replace")


def _a2s_info_request(challenge: Optional[bytes]) -> bytes:
    # Servers answering with a challenge expect it appended to the same request
    return A2S_INFO_REQUEST + (challenge or b"")


class SourceInfoDecoder:
    """A2S_INFO reply ('I', 0x49) of Source and most modern titles."""

    reply_headers = frozenset({A2S_INFO_REPLY})

    def build_request(self, challenge: Optional[bytes] = None) -> bytes:
        return _a2s_info_request(challenge)

    def decode(self, payload: bytes) -> StatusFields:
        """
        Decode an A2S_INFO reply.

        :param payload: Reply without the simple header, starting at the 0x49 byte
        :raises ProbeError: If the reply is truncated or not an A2S_INFO reply
        """
        reader = StructReader(payload)
        try:
            (header,) = reader.unpack("<B")
            if header != A2S_INFO_REPLY:
                raise ProbeError(f"Unexpected reply header 0x{header:02x}")
            reader.read(1)  # protocol
            server_name = _cstring(reader)
            map_name = _cstring(reader)
            _cstring(reader)  # folder
            _cstring(reader)  # game
            app_id, players, max_players = reader.unpack("<HBB")
            # bots, server type, environment, visibility, VAC
            reader.unpack("<BccBB")
            if app_id == A2S_THE_SHIP_APP_ID:
                reader.unpack("<BBB")  # mode, witnesses, duration
            game_version = _cstring(reader)
        except (RuntimeError, struct.error) as e:
            raise ProbeError(f"Malformed A2S_INFO reply: {e}") from e
        return StatusFields(
            server_name=server_name,
            map=map_name,
            player_count=players,
            max_players=max_players,
            game_version=game_version,
        )


class GoldSrcInfoDecoder:
    """Obsolete GoldSource reply ('m', 0x6D), still sent by old HLDS builds."""

    reply_headers = frozenset({A2S_GOLDSRC_INFO_REPLY, A2S_INFO_REPLY})

    def build_request(self, challenge: Optional[bytes] = None) -> bytes:
        return _a2s_info_request(challenge)

    def decode(self, payload: bytes) -> StatusFields:
        if payload[:1] == bytes([A2S_INFO_REPLY]):
            # Updated HLDS servers answer with the Source format
            return SourceInfoDecoder().decode(payload)
        reader = StructReader(payload)
        try:
            (header,) = reader.unpack("<B")
            if header != A2S_GOLDSRC_INFO_REPLY:
                raise ProbeError(f"Unexpected reply header 0x{header:02x}")
            _cstring(reader)  # address
            server_name = _cstring(reader)
            map_name = _cstring(reader)
            _cstring(reader)  # folder
            _cstring(reader)  # game
            players, max_players = reader.unpack("<BB")
        except (RuntimeError, struct.error) as e:
            raise ProbeError(f"Malformed GoldSource info reply: {e}") from e
        return StatusFields(
            server_name=server_name,
            map=map_name,
            player_count=players,
            max_players=max_players,
        )


DECODERS: dict[str, StatusDecoder] = {
    "source": SourceInfoDecoder(),
    "goldsrc": GoldSrcInfoDecoder(),
}


def decoder_for(query_family: str) -> StatusDecoder:
    try:
        return DECODERS[query_family]
    except KeyError:
        raise ProbeError(f"No status decoder for query family '{query_family}'") from None
