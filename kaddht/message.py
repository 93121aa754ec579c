"""DHT wire messages, peer records and binary multiaddresses."""

from __future__ import annotations

import base64
import ipaddress
import json
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Protocol

log = logging.getLogger("kaddht.pb")


class MessageType(IntEnum):
    """Kind of a DHT RPC message."""

    PUT_VALUE = 0
    GET_VALUE = 1
    ADD_PROVIDER = 2
    GET_PROVIDERS = 3
    FIND_NODE = 4
    PING = 5


class ConnectionType(IntEnum):
    """Connection state of a peer as carried on the wire."""

    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3


class Connectedness(IntEnum):
    """Connection state of a peer as known by the local network."""

    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3
    LIMITED = 4


# protocol code -> (name, size in bits; -1 for length-prefixed values)
_PROTOCOLS: dict[int, tuple[str, int]] = {
    4: ("ip4", 32),
    6: ("tcp", 16),
    33: ("dccp", 16),
    41: ("ip6", 128),
    42: ("ip6zone", -1),
    43: ("ipcidr", 8),
    53: ("dns", -1),
    54: ("dns4", -1),
    55: ("dns6", -1),
    56: ("dnsaddr", -1),
    132: ("sctp", 16),
    273: ("udp", 16),
    276: ("p2p-webrtc-direct", 0),
    280: ("webrtc-direct", 0),
    281: ("webrtc", 0),
    290: ("p2p-circuit", 0),
    301: ("udt", 0),
    302: ("utp", 0),
    400: ("unix", -1),
    421: ("p2p", -1),
    443: ("https", 0),
    444: ("onion", 80),
    445: ("onion3", 296),
    446: ("garlic64", -1),
    448: ("tls", 0),
    449: ("sni", -1),
    454: ("noise", 0),
    460: ("quic", 0),
    461: ("quic-v1", 0),
    465: ("webtransport", 0),
    466: ("certhash", -1),
    477: ("ws", 0),
    478: ("wss", 0),
    480: ("http", 0),
}

_PORT_PROTOCOLS = {"tcp", "udp", "dccp", "sctp"}
_TEXT_PROTOCOLS = {"dns", "dns4", "dns6", "dnsaddr", "unix", "sni", "ip6zone"}
_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint overflows 64 bits")


def _b58encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(_B58_ALPHABET[rem])
    leading = len(data) - len(data.lstrip(b"\0"))
    return "1" * leading + "".join(reversed(digits))


def _parse_components(data: bytes) -> tuple[tuple[str, int, bytes], ...]:
    if not data:
        raise ValueError("empty multiaddr")
    components = []
    pos = 0
    while pos < len(data):
        code, pos = _read_uvarint(data, pos)
        try:
            name, bits = _PROTOCOLS[code]
        except KeyError:
            raise ValueError(f"no protocol with code {code}") from None
        if bits < 0:
            size, pos = _read_uvarint(data, pos)
        else:
            size = bits // 8
        if pos + size > len(data):
            raise ValueError(f"truncated value for protocol {name}")
        components.append((name, bits, data[pos:pos + size]))
        pos += size
    return tuple(components)


def _render_value(name: str, value: bytes) -> str:
    if name == "ip4":
        return str(ipaddress.IPv4Address(value))
    if name == "ip6":
        return str(ipaddress.IPv6Address(value))
    if name in _PORT_PROTOCOLS:
        return str(int.from_bytes(value, "big"))
    if name == "ipcidr":
        return str(value[0])
    if name in _TEXT_PROTOCOLS:
        return value.decode("utf-8", errors="replace")
    if name == "p2p":
        return _b58encode(value)
    return value.hex()


@dataclass(frozen=True)
class Multiaddr:
    """A validated multiaddress in its binary form."""

    raw: bytes
    _components: tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_components", _parse_components(bytes(self.raw)))

    @classmethod
    def from_bytes(cls, data: bytes) -> Multiaddr:
        """Decode a binary multiaddress; raises ValueError if it is malformed."""
        return cls(bytes(data))

    def to_bytes(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        parts = []
        for name, bits, value in self._components:
            parts.append(f"/{name}")
            if bits != 0:
                parts.append(f"/{_render_value(name, value)}")
        return "".join(parts)


@dataclass
class Record:
    """A key/value record stored in the DHT."""

    key: bytes
    value: bytes
    time_received: str = ""


@dataclass
class PeerInfo:
    """A peer identifier together with its known addresses."""

    id: bytes
    addrs: list[Multiaddr] = field(default_factory=list)


@dataclass
class PeerRoutingInfo(PeerInfo):
    """Peer information annotated with the local connection state."""

    connectedness: Connectedness = Connectedness.NOT_CONNECTED


@dataclass
class PBPeer:
    """A peer entry as carried inside a DHT message."""

    id: bytes = b""
    addrs: list[bytes] = field(default_factory=list)
    connection: ConnectionType = ConnectionType.NOT_CONNECTED

    def addresses(self) -> list[Multiaddr]:
        """Decoded addresses; malformed ones are silently left out."""
        result = []
        for addr in self.addrs:
            try:
                result.append(Multiaddr.from_bytes(addr))
            except ValueError as err:
                log.debug("error decoding multiaddr for peer %r: %s", self.id, err)
        return result

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": base64.b64encode(self.id).decode("ascii"),
                "addrs": [base64.b64encode(a).decode("ascii") for a in self.addrs],
                "connection": int(self.connection),
            }
        )

    @classmethod
    def from_json(cls, text: str) -> PBPeer:
        data = json.loads(text)
        return cls(
            id=base64.b64decode(data.get("id") or ""),
            addrs=[base64.b64decode(a) for a in data.get("addrs") or []],
            connection=ConnectionType(data.get("connection", 0)),
        )


@dataclass
class Message:
    """A DHT RPC message."""

    type: MessageType
    key: bytes = b""
    record: Record | None = None
    closer_peers: list[PBPeer] = field(default_factory=list)
    provider_peers: list[PBPeer] = field(default_factory=list)
    cluster_level_raw: int = 0

    @property
    def cluster_level(self) -> int:
        """Cluster level; the raw field is offset by one so that 0 means unset."""
        return max(self.cluster_level_raw - 1, 0)

    @cluster_level.setter
    def cluster_level(self, level: int) -> None:
        self.cluster_level_raw = level + 1


class _Network(Protocol):
    def connectedness(self, peer_id: bytes) -> Connectedness: ...


def new_message(type_: MessageType, key: bytes | None, level: int) -> Message:
    """Build a message of the given type, key and cluster level."""
    message = Message(type=type_, key=bytes(key) if key is not None else b"")
    message.cluster_level = level
    return message


def _peer_info_to_pb_peer(info: PeerInfo) -> PBPeer:
    return PBPeer(id=info.id, addrs=[addr.to_bytes() for addr in info.addrs])


def pb_peer_to_peer_info(pbp: PBPeer) -> PeerInfo:
    return PeerInfo(id=pbp.id, addrs=pbp.addresses())


def raw_peer_infos_to_pb_peers(peers: Iterable[PeerInfo]) -> list[PBPeer]:
    """Convert peers to wire entries without connection information."""
    return [_peer_info_to_pb_peer(p) for p in peers]


def peer_infos_to_pb_peers(network: _Network, peers: Iterable[PeerInfo]) -> list[PBPeer]:
    """Convert peers to wire entries, filling the connection state from the network."""
    result = []
    for info in peers:
        pbp = _peer_info_to_pb_peer(info)
        pbp.connection = connection_type(network.connectedness(info.id))
        result.append(pbp)
    return result


def peer_routing_infos_to_pb_peers(peers: Iterable[PeerRoutingInfo]) -> list[PBPeer]:
    result = []
    for info in peers:
        pbp = _peer_info_to_pb_peer(info)
        pbp.connection = connection_type(info.connectedness)
        result.append(pbp)
    return result


def pb_peers_to_peer_infos(pbps: Iterable[PBPeer]) -> list[PeerInfo]:
    """Convert wire entries to peer information; invalid addresses are dropped."""
    return [pb_peer_to_peer_info(p) for p in pbps]


def connection_type(c: Connectedness) -> ConnectionType:
    if c == Connectedness.CONNECTED:
        return ConnectionType.CONNECTED
    return ConnectionType.NOT_CONNECTED


def connectedness(c: ConnectionType) -> Connectedness:
    if c == ConnectionType.CONNECTED:
        return Connectedness.CONNECTED
    return Connectedness.NOT_CONNECTED