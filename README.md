# kaddht

Building blocks for a Kademlia distributed hash table, in pure Python with no
third-party dependencies. The lookup engine, the protocol messenger and the
routing-table refresher are built on `asyncio`.

## What is inside

### `kaddht.message`

DHT wire messages and the peer descriptions they carry.

- `Message` with a `MessageType` (`PUT_VALUE`, `GET_VALUE`, `ADD_PROVIDER`,
  `GET_PROVIDERS`, `FIND_NODE`, `PING`), a key, an optional `Record`, and
  lists of closer and provider peers. Its `cluster_level` property stores the
  level offset by one in `cluster_level_raw`, so that 0 means "unset".
- `new_message(type_, key, level)` builds a message.
- `PBPeer` is a peer entry as it appears in a message: raw id, raw address
  bytes and a `ConnectionType`. `addresses()` decodes the addresses and
  silently drops malformed ones; `to_json()` / `from_json()` round-trip it
  with base64-encoded bytes.
- `PeerInfo` (id plus decoded addresses) and `PeerRoutingInfo` (adds a
  `Connectedness`).
- `Multiaddr` validates a binary multiaddress (`from_bytes`, `to_bytes`) for
  a fixed table of common protocols (ip4, ip6, tcp, udp, dns*, p2p, quic,
  ws, ...) and renders it as text with `str()`.
- Conversions: `pb_peer_to_peer_info`, `pb_peers_to_peer_infos`,
  `raw_peer_infos_to_pb_peers`, `peer_infos_to_pb_peers` (asks a network
  object for each peer's `connectedness`), `peer_routing_infos_to_pb_peers`,
  `connection_type` and `connectedness`. Only "connected" maps to connected;
  every other state maps to not connected.

### `kaddht.qpeerset`

`QueryPeerset` tracks every peer of one lookup with a `PeerState` (`HEARD`,
`WAITING`, `QUERIED`, `UNREACHABLE`) and the peer that referred it. Peers are
ordered by XOR distance between `xor_key(peer)` (the SHA-256 digest) and the
key of the target; `key_distance(a, b)` gives that distance. Methods:
`try_add`, `set_state`, `get_state`, `get_referrer`, `closest_n_in_states`,
`closest_in_states`, `num_heard`, `num_waiting`. Asking for a peer that is
not in the set raises `KeyError`.

### `kaddht.diversity_filter`

`RTPeerDiversityFilter(host, max_per_cpl, max_for_table)` limits how many
routing-table peers may share an IP group, both per common-prefix length and
across the whole table. `allow(group)` answers for a `PeerGroupInfo`;
`increment` and `decrement` keep the counts (`decrement` raises `ValueError`
for a group that is not tracked). `peer_addresses(p)` lists the remote
addresses of the host's open connections to `p`.

### `kaddht.protocol_messenger`

`ProtocolMessenger(sender)` sends requests through any object that provides
the `MessageSender` coroutines `send_request` and `send_message`:

- `put_value(p, record)` raises `ValueError` if the peer does not echo the
  same value back.
- `get_value(p, key)` returns `(record or None, closer peers)` and raises
  `IncorrectRecordError` if the record is for another key.
- `get_closest_peers(p, target)`, `get_providers(p, key)`
  (returns `(providers, closer peers)`).
- `put_provider(p, key, host)` and `put_provider_addrs(p, key, self_info)`;
  the latter raises `ValueError` when there are no addresses to announce.
- `ping(p)` raises `ValueError` if the reply is not a PING.

### `kaddht.providers`

`ProviderManager(local, peerstore, datastore, *, cleanup_interval=3600,
cache_size=256, provide_validity=172800)` stores provider records in a
datastore with an LRU cache in front of it.

- `add_provider(key, prov)` records the provider and, unless it is the local
  peer, gives its addresses to the peerstore for `PROVIDER_ADDR_TTL` seconds.
- `get_providers(key)` returns `PeerInfo`s with the addresses the peerstore
  knows.
- `collect_garbage()` empties the cache and deletes expired or unreadable
  records, returning how many it removed. A background thread calls it every
  `cleanup_interval` seconds; pass `cleanup_interval=None` to turn it off.
- `close()` stops the thread; the manager is also a context manager. Calls
  after closing raise `RuntimeError`.

In-memory helpers: `MapDatastore` (`put`, `get`, `delete`, `query(prefix)`)
and `MemoryPeerstore` (`add_addrs`, `peer_info`, with per-address expiry).
Lower-level functions: `make_provider_key`, `write_provider_entry`,
`load_provider_set`, `read_time_value`; timestamps are stored as signed
varints of Unix nanoseconds, and `ProviderSet` holds the providers of one key.

### `kaddht.rt_refresh`

`RtRefreshManager` keeps a routing table fresh. It queries for the node's own
id and then for each tracked common-prefix length, using the `key_gen`,
`query_fn` and `ping_fn` callables it is given; refresh queries that run out
of `query_timeout` count as success. Before each triggered refresh it pings
peers not heard from within the grace period and removes those that fail.

- `start()` runs the loop on the current event loop (with `auto_refresh`, it
  refreshes at once and then every `refresh_interval` seconds).
- `refresh(force=False)` returns a future that completes when the refresh
  has run, or fails with `RefreshError`.
- `refresh_no_wait()` queues a refresh only when the loop is idle.
- `do_refresh(force)` performs one refresh directly.
- `await close()` stops the loop.
- `loggable_raw_key(key)` gives the unpadded base32 form of a key.

### `kaddht.query`

The asynchronous lookup engine.

- `run_query(node, target, query_fn, stop_fn)` seeds a `Query` with the
  routing table's nearest peers, queries up to `alpha` peers at a time and
  stops when `stop_fn` says so, when no peers are left to ask, or when the
  closest `beta` reachable peers have all been queried. It returns a
  `LookupResult` and the `QueryPeerset`, and raises `LookupFailureError` when
  the routing table is empty.
- `run_lookup_with_followup(...)` additionally queries the top peers that
  were not yet queried.
- `dial_peer(node, p)` connects unless already connected.

`node` is any object with `self_id`, `bucket_size`, `alpha`, `beta`,
`routing_table` (`nearest_peers`, `update_last_useful_at`), `host`
(`connectedness`, `connect`), `peerstore` (`peer_info`), `query_peer_filter`,
`maybe_add_addrs`, `valid_peer_found` and `peer_stopped_dht`.

## What it does not do

The package is a set of components, not a running DHT node. It has no
network transport or stream handling, no routing table (k-buckets) of its
own, no value store or record validation, and no command-line program. The
routing table, host, peerstore and message sender are supplied by the
caller; the only storage provided is the in-memory `MapDatastore`.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from kaddht.qpeerset import PeerState, QueryPeerset

qp = QueryPeerset(b"target-key")
qp.try_add(b"peer-a", b"seed")
qp.try_add(b"peer-b", b"seed")
qp.set_state(b"peer-a", PeerState.WAITING)

print(qp.closest_in_states(PeerState.HEARD))  # [b'peer-b']
print(qp.num_waiting())  # 1
```

Provider records:

```python
from kaddht.message import PeerInfo
from kaddht.providers import MapDatastore, MemoryPeerstore, ProviderManager

with ProviderManager(b"self", MemoryPeerstore(), MapDatastore()) as manager:
    manager.add_provider(b"some-key", PeerInfo(b"provider"))
    print(manager.get_providers(b"some-key"))
```