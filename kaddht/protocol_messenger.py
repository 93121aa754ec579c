"""Sending DHT RPC messages to peers and interpreting their responses."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Protocol

from .message import (
    Message,
    MessageType,
    Multiaddr,
    PeerInfo,
    Record,
    new_message,
    pb_peers_to_peer_infos,
    raw_peer_infos_to_pb_peers,
)

logger = logging.getLogger("kaddht")


class MessageSender(Protocol):
    """Transport that delivers DHT messages to a peer."""

    async def send_request(self, p: bytes, message: Message) -> Message:
        """Send a message to p and wait for its response."""
        ...

    async def send_message(self, p: bytes, message: Message) -> None:
        """Send a message to p without waiting for a response."""
        ...


class _Host(Protocol):
    id: bytes
    addrs: Iterable[Multiaddr]


class IncorrectRecordError(Exception):
    """A peer answered with a record for a different key."""

    def __init__(self, message: str = "received incorrect record") -> None:
        super().__init__(message)


def _key_bytes(key: bytes | str) -> bytes:
    return key.encode("utf-8") if isinstance(key, str) else bytes(key)


class ProtocolMessenger:
    """Issues DHT requests through a message sender, independent of routing logic."""

    def __init__(
        self,
        sender: MessageSender,
        *options: Callable[[ProtocolMessenger], None],
    ) -> None:
        self.sender = sender
        for option in options:
            option(self)

    async def put_value(self, p: bytes, record: Record) -> None:
        """Ask p to store the record; raises ValueError if it echoes another value."""
        message = new_message(MessageType.PUT_VALUE, record.key, 0)
        message.record = record
        try:
            response = await self.sender.send_request(p, message)
        except Exception as err:
            logger.debug("failed to put value to peer %r: %s", p, err)
            raise
        if response.record is None or response.record.value != record.value:
            logger.info("value not put correctly: sent %r, got %r", message, response)
            raise ValueError("value not put correctly")

    async def get_value(
        self, p: bytes, key: bytes | str
    ) -> tuple[Record | None, list[PeerInfo]]:
        """Ask p for the record under key; also return the closer peers it knows."""
        key_bytes = _key_bytes(key)
        response = await self.sender.send_request(
            p, new_message(MessageType.GET_VALUE, key_bytes, 0)
        )
        peers = pb_peers_to_peer_infos(response.closer_peers)
        record = response.record
        if record is None:
            return None, peers
        logger.debug("got value")
        if record.key != key_bytes:
            logger.debug("received incorrect record")
            raise IncorrectRecordError()
        return record, peers

    async def get_closest_peers(self, p: bytes, target: bytes | str) -> list[PeerInfo]:
        """Ask p for the DHT server peers closest to target."""
        response = await self.sender.send_request(
            p, new_message(MessageType.FIND_NODE, _key_bytes(target), 0)
        )
        return pb_peers_to_peer_infos(response.closer_peers)

    async def put_provider(self, p: bytes, key: bytes, host: _Host) -> None:
        """Announce the host as a provider of key to p."""
        await self.put_provider_addrs(p, key, PeerInfo(id=host.id, addrs=list(host.addrs)))

    async def put_provider_addrs(self, p: bytes, key: bytes, self_info: PeerInfo) -> None:
        """Ask p to record self_info as a provider of key."""
        if not self_info.addrs:
            raise ValueError("no known addresses for self, cannot put provider")
        message = new_message(MessageType.ADD_PROVIDER, key, 0)
        message.provider_peers = raw_peer_infos_to_pb_peers([self_info])
        await self.sender.send_message(p, message)

    async def get_providers(
        self, p: bytes, key: bytes
    ) -> tuple[list[PeerInfo], list[PeerInfo]]:
        """Ask p for the providers of key and the closer peers it knows."""
        response = await self.sender.send_request(
            p, new_message(MessageType.GET_PROVIDERS, key, 0)
        )
        providers = pb_peers_to_peer_infos(response.provider_peers)
        closer = pb_peers_to_peer_infos(response.closer_peers)
        return providers, closer

    async def ping(self, p: bytes) -> None:
        """Ping p; raises ValueError if it answers with another message type."""
        response = await self.sender.send_request(p, new_message(MessageType.PING, None, 0))
        if response.type != MessageType.PING:
            raise ValueError(f"got unexpected response type: {response.type.name}")