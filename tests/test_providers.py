import hashlib
import time

import pytest

from kaddht.message import Multiaddr, PeerInfo
from kaddht.providers import (
    PROVIDERS_KEY_PREFIX,
    MapDatastore,
    MemoryPeerstore,
    ProviderManager,
    ProviderSet,
    load_provider_set,
    make_provider_key,
    read_time_value,
    write_provider_entry,
)

HOUR_NS = 3600 * 1_000_000_000


def mh_hash(data: bytes) -> bytes:
    return b"\x12\x20" + hashlib.sha256(data).digest()


def make_manager(local=b"testing", **kwargs):
    return ProviderManager(local, MemoryPeerstore(), MapDatastore(), cleanup_interval=None, **kwargs)


def test_provider_manager():
    pm = make_manager()
    a = mh_hash(b"test")
    pm.add_provider(a, PeerInfo(id=b"testingprovider"))
    assert len(pm.get_providers(a)) == 1
    assert len(pm.get_providers(a)) == 1
    pm.add_provider(a, PeerInfo(id=b"testingprovider2"))
    pm.add_provider(a, PeerInfo(id=b"testingprovider3"))
    resp = pm.get_providers(a)
    assert [p.id for p in resp] == [b"testingprovider", b"testingprovider2", b"testingprovider3"]
    pm.close()


def test_providers_datastore():
    with make_manager(cache_size=10) as pm:
        friend = b"friend"
        hashes = [mh_hash(str(i).encode()) for i in range(100)]
        for h in hashes:
            pm.add_provider(h, PeerInfo(id=friend))
        for h in hashes:
            resp = pm.get_providers(h)
            assert len(resp) == 1
            assert resp[0].id == friend
        assert len(pm.cached_keys) == 10


def test_providers_serialization():
    dstore = MapDatastore()
    k = mh_hash(b"my key!")
    pt1 = time.time_ns()
    pt2 = pt1 + HOUR_NS
    write_provider_entry(dstore, k, b"peer one", pt1)
    write_provider_entry(dstore, k, b"peer two", pt2)
    pset = load_provider_set(dstore, k)
    assert pset.times[b"peer one"] == pt1
    assert pset.times[b"peer two"] == pt2


def test_upon_cache_miss_providers_are_read_from_datastore():
    pm = make_manager(local=b"a", cache_size=1)
    h1, h2 = mh_hash(b"1"), mh_hash(b"2")
    pm.add_provider(h1, PeerInfo(id=b"a"))
    pm.add_provider(h2, PeerInfo(id=b"a"))
    pm.add_provider(h1, PeerInfo(id=b"b"))
    assert len(pm.get_providers(h1)) == 2
    pm.close()


def test_write_updates_cache():
    pm = make_manager(local=b"a")
    h1 = mh_hash(b"1")
    pm.add_provider(h1, PeerInfo(id=b"a"))
    pm.get_providers(h1)
    assert pm.cached_keys == [h1]
    pm.add_provider(h1, PeerInfo(id=b"b"))
    assert len(pm.get_providers(h1)) == 2
    pm.close()


def test_expired_records_are_dropped_on_load():
    dstore = MapDatastore()
    pm = ProviderManager(b"me", MemoryPeerstore(), dstore, cleanup_interval=None, provide_validity=60)
    k = mh_hash(b"old")
    write_provider_entry(dstore, k, b"stale", time.time_ns() - HOUR_NS)
    write_provider_entry(dstore, k, b"fresh", time.time_ns())
    assert [p.id for p in pm.get_providers(k)] == [b"fresh"]
    assert [key for key, _ in dstore.query(PROVIDERS_KEY_PREFIX)] == [make_provider_key(k, b"fresh")]
    pm.close()


def test_background_gc_runs():
    dstore = MapDatastore()
    pm = ProviderManager(b"me", MemoryPeerstore(), dstore, cleanup_interval=0.05, provide_validity=60)
    write_provider_entry(dstore, mh_hash(b"x"), b"dead", time.time_ns() - HOUR_NS)
    deadline = time.monotonic() + 5
    while len(dstore) and time.monotonic() < deadline:
        time.sleep(0.02)
    pm.close()
    assert len(dstore) == 0


def test_corrupt_peer_key_is_deleted_on_load():
    dstore = MapDatastore()
    k = mh_hash(b"k")
    bad_key = PROVIDERS_KEY_PREFIX + "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"[:0]
    bad_key = make_provider_key(k, b"x").rpartition("/")[0] + "/!!!"
    write_provider_entry(dstore, k, b"ok", time.time_ns())
    dstore.put(bad_key, b"\x02")
    pset = load_provider_set(dstore, k)
    assert pset.providers == [b"ok"]
    with pytest.raises(KeyError):
        dstore.get(bad_key)


def test_provider_addresses_come_from_peerstore():
    addr = Multiaddr.from_bytes(bytes([4, 127, 0, 0, 1, 6, 0x0F, 0xA1]))
    pm = make_manager(local=b"me")
    k = mh_hash(b"addr")
    pm.add_provider(k, PeerInfo(id=b"other", addrs=[addr]))
    pm.add_provider(k, PeerInfo(id=b"me", addrs=[addr]))
    infos = {p.id: p.addrs for p in pm.get_providers(k)}
    assert infos == {b"other": [addr], b"me": []}
    pm.close()


def test_closed_manager_rejects_calls():
    pm = make_manager()
    pm.close()
    with pytest.raises(RuntimeError):
        pm.add_provider(mh_hash(b"a"), PeerInfo(id=b"p"))
    with pytest.raises(RuntimeError):
        pm.get_providers(mh_hash(b"a"))


def test_invalid_cache_size():
    with pytest.raises(ValueError):
        make_manager(cache_size=0)


def test_make_provider_key():
    assert make_provider_key(b"\x00", b"a") == "/providers/AA/ME"


@pytest.mark.parametrize(
    "data, expected",
    [(b"\x00", 0), (b"\x02", 1), (b"\x01", -1), (b"\x80\x01", 64)],
)
def test_read_time_value(data, expected):
    assert read_time_value(data) == expected


@pytest.mark.parametrize("data", [b"", b"\x80", b"\xff" * 11])
def test_read_time_value_errors(data):
    with pytest.raises(ValueError):
        read_time_value(data)


def test_time_value_round_trip():
    dstore = MapDatastore()
    t = -123456789
    write_provider_entry(dstore, b"k", b"p", t)
    assert read_time_value(dstore.get(make_provider_key(b"k", b"p"))) == t


def test_provider_set_keeps_first_insertion_order():
    pset = ProviderSet()
    pset.set_val(b"a", 1)
    pset.set_val(b"b", 2)
    pset.set_val(b"a", 3)
    pset.add(b"c")
    assert pset.providers == [b"a", b"b", b"c"]
    assert pset.times[b"a"] == 3


def test_map_datastore_query_is_path_aware():
    dstore = MapDatastore()
    dstore.put("/foo/a", b"1")
    dstore.put("/foobar", b"2")
    dstore.put("/foo", b"3")
    assert dstore.query("/foo") == [("/foo", b"3"), ("/foo/a", b"1")]
    dstore.delete("/foo/a")
    with pytest.raises(KeyError):
        dstore.delete("/foo/a")


def test_memory_peerstore_expiry():
    addr = Multiaddr.from_bytes(bytes([4, 10, 0, 0, 1, 6, 0x00, 0x50]))
    ps = MemoryPeerstore()
    ps.add_addrs(b"p", [addr], 0.05)
    assert ps.peer_info(b"p").addrs == [addr]
    time.sleep(0.1)
    assert ps.peer_info(b"p").addrs == []
    assert ps.peer_info(b"unknown") == PeerInfo(id=b"unknown", addrs=[])