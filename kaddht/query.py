"""Iterative Kademlia lookups driven from the peers of the routing table."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Hashable, Iterable, Protocol, Union

from .message import Connectedness, Multiaddr, PeerInfo
from .qpeerset import PeerState, QueryPeerset, key_distance, xor_key

logger = logging.getLogger("kaddht.query")

TEMP_ADDR_TTL = 120.0
"""Seconds the addresses of peers heard of during a lookup are kept."""

QueryFn = Callable[[bytes], Awaitable[Iterable[PeerInfo]]]
StopFn = Callable[[QueryPeerset], bool]


class LookupTerminationReason(Enum):
    """Why a lookup ended."""

    STOPPED = "Stopped"
    CANCELLED = "Cancelled"
    STARVATION = "Starvation"
    COMPLETED = "Completed"

    def __str__(self) -> str:
        return self.value


class LookupFailureError(Exception):
    """The routing table holds no peer to start a lookup from."""

    def __init__(self, message: str = "failed to find any peer in table") -> None:
        super().__init__(message)


class _RoutingTable(Protocol):
    def nearest_peers(self, key: bytes, count: int) -> list[bytes]: ...

    def update_last_useful_at(self, p: bytes, t: float) -> bool: ...


class _Host(Protocol):
    def connectedness(self, p: bytes) -> Connectedness: ...

    async def connect(self, p: bytes) -> None: ...


class _Peerstore(Protocol):
    def peer_info(self, p: bytes) -> PeerInfo: ...


class _Node(Protocol):
    self_id: bytes
    bucket_size: int
    alpha: int
    beta: int
    routing_table: _RoutingTable
    host: _Host
    peerstore: _Peerstore
    query_peer_filter: Callable[[Any, PeerInfo], bool]

    def maybe_add_addrs(self, p: bytes, addrs: list[Multiaddr], ttl: float) -> None: ...

    def valid_peer_found(self, p: bytes) -> None: ...

    def peer_stopped_dht(self, p: bytes) -> None: ...


@dataclass
class LookupResult:
    """Outcome of a lookup.

    peers are the closest peers that did not prove unreachable, with their
    final states in states; closest are the closest peers in any state;
    completed tells whether the lookup ended on its own rather than being
    stopped or cancelled.
    """

    peers: list = field(default_factory=list)
    states: list[PeerState] = field(default_factory=list)
    closest: list = field(default_factory=list)
    completed: bool = True


@dataclass
class _Update:
    cause: Hashable
    heard: list = field(default_factory=list)
    queried: list = field(default_factory=list)
    unreachable: list = field(default_factory=list)
    duration: float = 0.0


_Message = Union[_Update, BaseException]


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


async def dial_peer(node: _Node, p: bytes) -> None:
    """Connect to p unless already connected; connection errors propagate."""
    if node.host.connectedness(p) == Connectedness.CONNECTED:
        return
    logger.debug("not connected. dialing.")
    try:
        await node.host.connect(p)
    except Exception as err:
        logger.debug("error connecting: %s", err)
        raise
    logger.debug("connected. dial success.")


class Query:
    """One lookup for a target key, querying up to alpha peers at a time."""

    def __init__(
        self,
        node: _Node,
        target: bytes | str,
        seed_peers: Iterable[bytes],
        query_fn: QueryFn,
        stop_fn: StopFn,
    ) -> None:
        self.id = uuid.uuid4()
        self.node = node
        self.key = _as_bytes(target)
        self.seed_peers = list(seed_peers)
        self.peer_times: dict[Hashable, float] = {}
        self.query_peers = QueryPeerset(self.key)
        self.terminated = False
        self.termination_reason: LookupTerminationReason | None = None
        self._query_fn = query_fn
        self._stop_fn = stop_fn
        self._tasks: set[asyncio.Task] = set()

    async def run(self) -> None:
        """Drive the lookup until it terminates; outstanding queries are cancelled."""
        if self.terminated:
            raise RuntimeError("query has already run")
        updates: asyncio.Queue[_Message] = asyncio.Queue()
        updates.put_nowait(_Update(cause=self.node.self_id, heard=list(self.seed_peers)))
        try:
            while True:
                update = await updates.get()
                if isinstance(update, BaseException):
                    raise update
                self._update_state(update)
                max_to_spawn = self.node.alpha - self.query_peers.num_waiting()
                ready, reason, to_query = self._ready_to_terminate(max_to_spawn)
                if ready:
                    self._terminate(reason)
                    return
                for p in to_query:
                    self._spawn_query(update.cause, p, updates)
        except asyncio.CancelledError:
            self._terminate(LookupTerminationReason.CANCELLED)
            raise
        finally:
            await self._cancel_outstanding()

    async def _cancel_outstanding(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def record_valuable_peers(self) -> list:
        """Mark seed peers that answered within twice the fastest time as useful.

        Returns the peers whose routing-table entry was updated.
        """
        times = [self.peer_times[p] for p in self.seed_peers if p in self.peer_times]
        if not times:
            return []
        mvp = min(times)
        now = time.time()
        recorded = []
        for p in self.seed_peers:
            duration = self.peer_times.get(p)
            if duration is not None and duration < mvp * 2:
                if self.node.routing_table.update_last_useful_at(p, now):
                    recorded.append(p)
        return recorded

    def lookup_result(self) -> LookupResult:
        """The closest peers found so far with their states."""
        completed = self._is_lookup_termination() or self._is_starvation_termination()
        size = self.node.bucket_size
        candidates = self.query_peers.closest_n_in_states(
            size, PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED
        )
        states = {p: self.query_peers.get_state(p) for p in candidates}
        target = self.query_peers.key
        peers = sorted(candidates, key=lambda p: key_distance(xor_key(p), target))[:size]
        closest = self.query_peers.closest_n_in_states(
            size,
            PeerState.HEARD,
            PeerState.WAITING,
            PeerState.QUERIED,
            PeerState.UNREACHABLE,
        )
        return LookupResult(
            peers=peers,
            states=[states[p] for p in peers],
            closest=closest,
            completed=completed,
        )

    def _spawn_query(self, cause: Hashable, p: bytes, updates: asyncio.Queue) -> None:
        logger.debug(
            "lookup %s: querying %r (cause %r, referrer %r)",
            self.id,
            p,
            cause,
            self.query_peers.get_referrer(p),
        )
        self.query_peers.set_state(p, PeerState.WAITING)
        task = asyncio.get_running_loop().create_task(self._query_peer(p, updates))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _ready_to_terminate(
        self, n_to_query: int
    ) -> tuple[bool, LookupTerminationReason | None, list]:
        if self._stop_fn(self.query_peers):
            return True, LookupTerminationReason.STOPPED, []
        if self._is_starvation_termination():
            return True, LookupTerminationReason.STARVATION, []
        if self._is_lookup_termination():
            return True, LookupTerminationReason.COMPLETED, []
        if n_to_query <= 0:
            return False, None, []
        return False, None, self.query_peers.closest_in_states(PeerState.HEARD)[:n_to_query]

    def _is_lookup_termination(self) -> bool:
        """Whether the closest beta peers that are not unreachable were all queried."""
        peers = self.query_peers.closest_n_in_states(
            self.node.beta, PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED
        )
        return all(self.query_peers.get_state(p) == PeerState.QUERIED for p in peers)

    def _is_starvation_termination(self) -> bool:
        return self.query_peers.num_heard() == 0 and self.query_peers.num_waiting() == 0

    def _terminate(self, reason: LookupTerminationReason | None) -> None:
        if self.terminated:
            return
        logger.debug("lookup %s terminated: %s", self.id, reason)
        self.terminated = True
        self.termination_reason = reason

    async def _query_peer(self, p: bytes, updates: asyncio.Queue) -> None:
        try:
            message: _Message = await self._contact(p)
        except Exception as err:
            message = err
        updates.put_nowait(message)

    async def _contact(self, p: bytes) -> _Update:
        node = self.node
        try:
            await dial_peer(node, p)
        except Exception:
            node.peer_stopped_dht(p)
            return _Update(cause=p, unreachable=[p])

        start = time.monotonic()
        try:
            new_peers = await self._query_fn(p)
        except Exception as err:
            logger.debug("query to %r failed: %s", p, err)
            node.peer_stopped_dht(p)
            return _Update(cause=p, unreachable=[p])
        duration = time.monotonic() - start

        node.valid_peer_found(p)

        saw = []
        for found in new_peers or ():
            if found.id == node.self_id:
                logger.debug("peers closer -- worker for %r found self", p)
                continue
            addrs = list(found.addrs) + list(node.peerstore.peer_info(found.id).addrs)
            # The target itself is always kept, even when the filter rejects it.
            is_target = found.id == self.key
            if is_target or node.query_peer_filter(node, PeerInfo(id=found.id, addrs=addrs)):
                node.maybe_add_addrs(found.id, addrs, TEMP_ADDR_TTL)
                saw.append(found.id)
        return _Update(cause=p, heard=saw, queried=[p], duration=duration)

    def _update_state(self, update: _Update) -> None:
        if self.terminated:
            raise RuntimeError("update should not be invoked after the logical lookup termination")
        self_id = self.node.self_id
        for p in update.heard:
            if p != self_id:
                self.query_peers.try_add(p, update.cause)
        for p in update.queried:
            if p == self_id:
                continue
            state = self.query_peers.get_state(p)
            if state != PeerState.WAITING:
                raise RuntimeError(
                    "kademlia protocol error: tried to transition to the queried "
                    f"state from state {state.name}"
                )
            self.query_peers.set_state(p, PeerState.QUERIED)
            self.peer_times[p] = update.duration
        for p in update.unreachable:
            if p == self_id:
                continue
            state = self.query_peers.get_state(p)
            if state != PeerState.WAITING:
                raise RuntimeError(
                    "kademlia protocol error: tried to transition to the unreachable "
                    f"state from state {state.name}"
                )
            self.query_peers.set_state(p, PeerState.UNREACHABLE)


async def run_query(
    node: _Node, target: bytes | str, query_fn: QueryFn, stop_fn: StopFn
) -> tuple[LookupResult, QueryPeerset]:
    """Run a lookup seeded with the closest routing-table peers to target."""
    seeds = node.routing_table.nearest_peers(xor_key(target), node.bucket_size)
    if not seeds:
        raise LookupFailureError()
    query = Query(node, target, seeds, query_fn, stop_fn)
    await query.run()
    query.record_valuable_peers()
    return query.lookup_result(), query.query_peers


async def _followup(query_fn: QueryFn, p: bytes) -> None:
    try:
        await query_fn(p)
    except Exception as err:
        logger.debug("followup query to %r failed: %s", p, err)


async def run_lookup_with_followup(
    node: _Node, target: bytes | str, query_fn: QueryFn, stop_fn: StopFn
) -> LookupResult:
    """Run a lookup, then query every top peer not yet queried.

    The followup stops early once stop_fn returns true; the result is then
    marked as not completed.
    """
    result, peerset = await run_query(node, target, query_fn, stop_fn)

    to_query = [
        p
        for p, state in zip(result.peers, result.states)
        if state in (PeerState.HEARD, PeerState.WAITING)
    ]
    if not to_query:
        return result

    if stop_fn(peerset):
        result.completed = False
        return result

    loop = asyncio.get_running_loop()
    pending = {loop.create_task(_followup(query_fn, p)) for p in to_query}
    finished = 0
    try:
        stopped = False
        while pending and not stopped:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for _ in done:
                finished += 1
                if stop_fn(peerset):
                    if finished < len(to_query):
                        result.completed = False
                    stopped = True
                    break
    finally:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    return result