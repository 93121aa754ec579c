"""Per-lookup set of peers labelled with their query state."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Hashable


class PeerState(IntEnum):
    """State of a peer during one lookup."""

    HEARD = 0
    WAITING = 1
    QUERIED = 2
    UNREACHABLE = 3


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def xor_key(data: bytes | str) -> bytes:
    """Map an identifier into the XOR key space (its SHA-256 digest)."""
    return hashlib.sha256(_as_bytes(data)).digest()


def key_distance(a: bytes, b: bytes) -> int:
    """XOR distance between two keys of the key space."""
    if len(a) != len(b):
        raise ValueError("keys of different lengths are not comparable")
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


@dataclass
class _PeerEntry:
    peer: Hashable
    distance: int
    state: PeerState
    referred_by: Hashable


class QueryPeerset:
    """The peers known to a lookup, each labelled with a state."""

    def __init__(self, key: bytes | str) -> None:
        self.key = xor_key(key)
        self._entries: dict[Hashable, _PeerEntry] = {}
        self._ordered: list[_PeerEntry] = []
        self._sorted = True

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, p: object) -> bool:
        return p in self._entries

    def _entry(self, p: Hashable) -> _PeerEntry:
        try:
            return self._entries[p]
        except KeyError:
            raise KeyError(f"peer {p!r} is not in the query peerset") from None

    def try_add(self, p: Hashable, referred_by: Hashable) -> bool:
        """Add p in state HEARD; return False if it was already present."""
        if p in self._entries:
            return False
        entry = _PeerEntry(p, key_distance(xor_key(p), self.key), PeerState.HEARD, referred_by)
        self._entries[p] = entry
        self._ordered.append(entry)
        self._sorted = False
        return True

    def set_state(self, p: Hashable, state: PeerState) -> None:
        self._entry(p).state = state

    def get_state(self, p: Hashable) -> PeerState:
        return self._entry(p).state

    def get_referrer(self, p: Hashable) -> Hashable:
        return self._entry(p).referred_by

    def closest_n_in_states(self, n: int, *args: PeerState) -> list:
        """Up to n peers in any of the given states, closest to the key first."""
        if n < 0:
            raise ValueError("n must not be negative")
        if not self._sorted:
            self._ordered.sort(key=lambda e: e.distance)
            self._sorted = True
        wanted = set(args)
        return [e.peer for e in self._ordered if e.state in wanted][:n]

    def closest_in_states(self, *args: PeerState) -> list:
        """All peers in any of the given states, closest to the key first."""
        return self.closest_n_in_states(len(self._ordered), *args)

    def num_heard(self) -> int:
        return len(self.closest_in_states(PeerState.HEARD))

    def num_waiting(self) -> int:
        return len(self.closest_in_states(PeerState.WAITING))