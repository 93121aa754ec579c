"""Routing-table diversity filter limiting peers per IP group."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Protocol


@dataclass(frozen=True)
class PeerGroupInfo:
    """A peer's common prefix length and the IP group it belongs to."""

    cpl: int
    ip_group_key: str
    peer_id: bytes = b""


class _Connection(Protocol):
    remote_multiaddr: Any


class _Network(Protocol):
    def conns_to_peer(self, p: bytes) -> Iterable[_Connection]: ...


class _Host(Protocol):
    network: _Network


class RTPeerDiversityFilter:
    """Caps how many routing-table peers share an IP group, per cpl and in total."""

    def __init__(self, host: _Host, max_per_cpl: int, max_for_table: int) -> None:
        self._host = host
        self.max_per_cpl = max_per_cpl
        self.max_for_table = max_for_table
        self._lock = threading.Lock()
        self._cpl_counts: dict[int, Counter[str]] = {}
        self._table_counts: Counter[str] = Counter()

    def allow(self, group: PeerGroupInfo) -> bool:
        """Whether a peer of this group may be added to the table."""
        key = group.ip_group_key
        with self._lock:
            if self._table_counts[key] >= self.max_for_table:
                return False
            per_cpl = self._cpl_counts.get(group.cpl)
            return per_cpl is None or per_cpl[key] < self.max_per_cpl

    def increment(self, group: PeerGroupInfo) -> None:
        key = group.ip_group_key
        with self._lock:
            self._table_counts[key] += 1
            self._cpl_counts.setdefault(group.cpl, Counter())[key] += 1

    def decrement(self, group: PeerGroupInfo) -> None:
        """Forget one peer of this group; raises ValueError if none is tracked."""
        key = group.ip_group_key
        with self._lock:
            per_cpl = self._cpl_counts.get(group.cpl)
            if per_cpl is None or per_cpl[key] <= 0 or self._table_counts[key] <= 0:
                raise ValueError(f"no peer tracked for group {key!r} at cpl {group.cpl}")
            self._table_counts[key] -= 1
            if self._table_counts[key] == 0:
                del self._table_counts[key]
            per_cpl[key] -= 1
            if per_cpl[key] == 0:
                del per_cpl[key]
            if not per_cpl:
                del self._cpl_counts[group.cpl]

    def peer_addresses(self, p: bytes) -> list:
        """Remote addresses of all open connections to peer p."""
        return [conn.remote_multiaddr for conn in self._host.network.conns_to_peer(p)]