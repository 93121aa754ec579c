"""Provider records: which peers can supply the content behind a key."""

from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Hashable, Iterable, Protocol

from .message import Multiaddr, PeerInfo

log = logging.getLogger("kaddht.providers")

PROVIDERS_KEY_PREFIX = "/providers/"
"""Namespace of every provider record key in the datastore."""

PROVIDE_VALIDITY = 48 * 60 * 60
"""Seconds a provider record stays valid."""

PROVIDER_ADDR_TTL = 24 * 60 * 60
"""Seconds the addresses of a provider are kept in the peerstore."""

DEFAULT_CLEANUP_INTERVAL = 60 * 60
"""Seconds between two garbage collections of the datastore."""

DEFAULT_CACHE_SIZE = 256

_NS_PER_SECOND = 1_000_000_000


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").rstrip("=")


def _b32decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 8)
    try:
        return base64.b32decode(padded)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"invalid base32 text {text!r}: {err}") from None


def _encode_varint(value: int) -> bytes:
    if not -(1 << 63) <= value < (1 << 63):
        raise ValueError("value does not fit in 64 bits")
    zigzag = value << 1 if value >= 0 else ((-value) << 1) - 1
    out = bytearray()
    while zigzag >= 0x80:
        out.append((zigzag & 0x7F) | 0x80)
        zigzag >>= 7
    out.append(zigzag)
    return bytes(out)


def read_time_value(data: bytes) -> int:
    """Decode a stored timestamp (signed varint of Unix nanoseconds)."""
    result = 0
    shift = 0
    for index, byte in enumerate(data):
        if index == 10 or (index == 9 and byte > 1):
            raise ValueError("failed to parse time")
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            value = result >> 1
            return ~value if result & 1 else value
        shift += 7
    raise ValueError("failed to parse time")


def _provider_key_prefix(key: bytes) -> str:
    return PROVIDERS_KEY_PREFIX + _b32encode(bytes(key))


def make_provider_key(key: bytes, p: bytes) -> str:
    """Datastore key of the record saying that p provides key."""
    return _provider_key_prefix(key) + "/" + _b32encode(bytes(p))


@dataclass
class ProviderSet:
    """Providers of one key in insertion order, with the time each was last seen."""

    providers: list = field(default_factory=list)
    times: dict = field(default_factory=dict)

    def add(self, p: Hashable) -> None:
        self.set_val(p, time.time_ns())

    def set_val(self, p: Hashable, t: int) -> None:
        if p not in self.times:
            self.providers.append(p)
        self.times[p] = t


class _Datastore(Protocol):
    def put(self, key: str, value: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def query(self, prefix: str) -> list[tuple[str, bytes]]: ...


class _Peerstore(Protocol):
    def add_addrs(self, p: bytes, addrs: Iterable[Multiaddr], ttl: float) -> None: ...

    def peer_info(self, p: bytes) -> PeerInfo: ...


class MapDatastore:
    """Thread-safe in-memory key/value datastore with hierarchical keys."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def get(self, key: str) -> bytes:
        """Value under key; raises KeyError if there is none."""
        with self._lock:
            return self._data[key]

    def delete(self, key: str) -> None:
        """Remove key; raises KeyError if there is none."""
        with self._lock:
            del self._data[key]

    def query(self, prefix: str) -> list[tuple[str, bytes]]:
        """Entries whose key is prefix or lies below it, sorted by key."""
        base = prefix.rstrip("/")
        below = base + "/"
        with self._lock:
            return sorted(
                (key, value)
                for key, value in self._data.items()
                if not base or key == base or key.startswith(below)
            )


class MemoryPeerstore:
    """In-memory peer address book with per-address expiry."""

    def __init__(self) -> None:
        self._addrs: dict[bytes, dict[Multiaddr, float]] = {}
        self._lock = threading.Lock()

    def add_addrs(self, p: bytes, addrs: Iterable[Multiaddr], ttl: float) -> None:
        """Remember addrs for p for ttl seconds; an existing longer expiry is kept."""
        if ttl <= 0:
            return
        expiry = time.monotonic() + ttl
        with self._lock:
            known = self._addrs.setdefault(p, {})
            for addr in addrs:
                known[addr] = max(known.get(addr, expiry), expiry)

    def peer_info(self, p: bytes) -> PeerInfo:
        """The peer with its addresses that have not expired."""
        now = time.monotonic()
        with self._lock:
            known = self._addrs.get(p, {})
            for addr in [a for a, expiry in known.items() if expiry <= now]:
                del known[addr]
            return PeerInfo(id=p, addrs=list(known))


def _delete_quietly(datastore: _Datastore, key: str) -> None:
    try:
        datastore.delete(key)
    except KeyError:
        pass


def write_provider_entry(datastore: _Datastore, key: bytes, p: bytes, t: int) -> None:
    """Store that p provided key at time t (Unix nanoseconds)."""
    datastore.put(make_provider_key(key, p), _encode_varint(t))


def _load_provider_set(
    datastore: _Datastore, key: bytes, validity: float, now: int
) -> ProviderSet:
    validity_ns = validity * _NS_PER_SECOND
    result = ProviderSet()
    for entry_key, value in datastore.query(_provider_key_prefix(key)):
        try:
            t = read_time_value(value)
        except ValueError as err:
            log.error("parsing providers record from disk: %s", err)
            _delete_quietly(datastore, entry_key)
            continue
        if now - t > validity_ns:
            _delete_quietly(datastore, entry_key)
            continue
        try:
            pid = _b32decode(entry_key.rpartition("/")[2])
        except ValueError as err:
            log.error("base32 decoding error: %s", err)
            _delete_quietly(datastore, entry_key)
            continue
        result.set_val(pid, t)
    return result


def load_provider_set(datastore: _Datastore, key: bytes) -> ProviderSet:
    """Read the unexpired providers of key, deleting expired or corrupt entries."""
    return _load_provider_set(datastore, key, PROVIDE_VALIDITY, time.time_ns())


class ProviderManager:
    """Stores provider records in a datastore, caching recently used sets."""

    def __init__(
        self,
        local: bytes,
        peerstore: _Peerstore,
        datastore: _Datastore,
        *,
        cleanup_interval: float | None = DEFAULT_CLEANUP_INTERVAL,
        cache_size: int = DEFAULT_CACHE_SIZE,
        provide_validity: float = PROVIDE_VALIDITY,
    ) -> None:
        if cache_size <= 0:
            raise ValueError("cache size must be positive")
        self.self_id = local
        self.peerstore = peerstore
        self.datastore = datastore
        self.cleanup_interval = cleanup_interval
        self.provide_validity = provide_validity
        self._cache_size = cache_size
        self._cache: OrderedDict[bytes, ProviderSet] = OrderedDict()
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._closed = False
        self._gc_thread: threading.Thread | None = None
        if cleanup_interval is not None:
            self._gc_thread = threading.Thread(
                target=self._gc_loop, name="provider-gc", daemon=True
            )
            self._gc_thread.start()

    def __enter__(self) -> ProviderManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def cached_keys(self) -> list[bytes]:
        """Keys whose provider sets are currently cached, least recent first."""
        with self._lock:
            return list(self._cache)

    def _gc_loop(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            try:
                self.collect_garbage()
            except Exception:
                log.exception("provider record GC failed")

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("provider manager is closed")

    def _cache_get(self, key: bytes) -> ProviderSet | None:
        pset = self._cache.get(key)
        if pset is not None:
            self._cache.move_to_end(key)
        return pset

    def _cache_add(self, key: bytes, pset: ProviderSet) -> None:
        self._cache[key] = pset
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def add_provider(self, key: bytes, prov: PeerInfo) -> None:
        """Record prov as a provider of key; its addresses go to the peerstore."""
        key = bytes(key)
        with self._lock:
            self._check_open()
            if prov.id != self.self_id:
                self.peerstore.add_addrs(prov.id, prov.addrs, PROVIDER_ADDR_TTL)
            now = time.time_ns()
            cached = self._cache_get(key)
            if cached is not None:
                cached.set_val(prov.id, now)
            write_provider_entry(self.datastore, key, prov.id, now)

    def _provider_set(self, key: bytes) -> ProviderSet:
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        pset = _load_provider_set(
            self.datastore, key, self.provide_validity, time.time_ns()
        )
        if pset.providers:
            self._cache_add(key, pset)
        return pset

    def get_providers(self, key: bytes) -> list[PeerInfo]:
        """The providers of key with the addresses the peerstore knows for them."""
        with self._lock:
            self._check_open()
            providers = list(self._provider_set(bytes(key)).providers)
        return [self.peerstore.peer_info(p) for p in providers]

    def collect_garbage(self) -> int:
        """Drop the cache and delete expired or unreadable records; return how many."""
        with self._lock:
            self._check_open()
            self._cache.clear()
            gc_time = time.time_ns()
            validity_ns = self.provide_validity * _NS_PER_SECOND
            removed = 0
            for entry_key, value in self.datastore.query(PROVIDERS_KEY_PREFIX):
                try:
                    expired = gc_time - read_time_value(value) > validity_ns
                except ValueError as err:
                    log.error("parsing providers record from disk: %s", err)
                    expired = True
                if expired:
                    _delete_quietly(self.datastore, entry_key)
                    removed += 1
            return removed

    def close(self) -> None:
        """Stop background collection; later calls raise RuntimeError."""
        with self._lock:
            self._closed = True
        self._stop.set()
        if self._gc_thread is not None:
            self._gc_thread.join()
            self._gc_thread = None