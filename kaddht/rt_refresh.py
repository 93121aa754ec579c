"""Periodic and on-demand refreshing of the routing table."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Iterable, Protocol

logger = logging.getLogger("kaddht.rtrefresh")

PEER_PING_TIMEOUT = 10.0
"""Seconds allowed for connecting to and pinging one routing-table peer."""


class RefreshError(Exception):
    """A refresh of the routing table failed, in whole or in part."""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


class _PeerInfo(Protocol):
    id: Hashable
    last_successful_outbound_query_at: float


class _RoutingTable(Protocol):
    def __len__(self) -> int: ...

    def get_peer_infos(self) -> list[_PeerInfo]: ...

    def remove_peer(self, p: Hashable) -> None: ...

    def get_tracked_cpls_for_refresh(self) -> list[float]: ...

    def n_peers_for_cpl(self, cpl: int) -> int: ...


class _Host(Protocol):
    id: Any

    async def connect(self, p: Hashable) -> None: ...


KeyGen = Callable[[int], Any]
QueryFn = Callable[[Any], Awaitable[None]]
PingFn = Callable[[Hashable], Awaitable[None]]


@dataclass
class _TriggerRequest:
    future: asyncio.Future | None
    force: bool


def loggable_raw_key(key: bytes | str) -> str:
    """Unpadded base32 form of a raw key, for log output."""
    data = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if not data:
        return ""
    return base64.b32encode(data).decode("ascii").rstrip("=")


def _closed_error() -> RuntimeError:
    return RuntimeError("refresh manager is closed")


class RtRefreshManager:
    """Keeps the routing table fresh by querying the network for each bucket.

    Times handed over by the routing table are Unix timestamps in seconds;
    durations are seconds.
    """

    def __init__(
        self,
        host: _Host,
        routing_table: _RoutingTable,
        auto_refresh: bool,
        key_gen: KeyGen,
        query_fn: QueryFn,
        ping_fn: PingFn,
        query_timeout: float | None,
        refresh_interval: float,
        successful_outbound_query_grace_period: float,
        on_refresh_done: Callable[[], None] | None = None,
    ) -> None:
        self.host = host
        self.self_id = host.id
        self.routing_table = routing_table
        self.auto_refresh = auto_refresh
        self.key_gen = key_gen
        self.query_fn = query_fn
        self.ping_fn = ping_fn
        self.query_timeout = query_timeout
        self.refresh_interval = refresh_interval
        self.successful_outbound_query_grace_period = successful_outbound_query_grace_period
        self.on_refresh_done = on_refresh_done
        self._queue: asyncio.Queue[_TriggerRequest] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._idle = False
        self._closed = False

    def start(self) -> None:
        """Start the refresh loop on the running event loop."""
        if self._closed:
            raise _closed_error()
        if self._task is not None:
            raise RuntimeError("refresh manager already started")
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def close(self) -> None:
        """Stop the refresh loop; pending refresh requests fail."""
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        while not self._queue.empty():
            request = self._queue.get_nowait()
            if request.future is not None and not request.future.done():
                request.future.set_exception(_closed_error())

    def refresh(self, force: bool = False) -> asyncio.Future:
        """Request a refresh; the returned future completes when it has run.

        With force, every bucket is refreshed regardless of when it last was.
        The future raises RefreshError if the refresh failed.
        """
        future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(_closed_error())
            return future
        self._queue.put_nowait(_TriggerRequest(future, force))
        return future

    def refresh_no_wait(self) -> None:
        """Request a refresh only if the loop is idle and can take it right away."""
        if self._idle and not self._closed and self._queue.empty():
            self._queue.put_nowait(_TriggerRequest(None, False))

    async def _next_trigger(self, next_tick: float | None) -> _TriggerRequest | None:
        if not self._queue.empty():
            return self._queue.get_nowait()
        self._idle = True
        try:
            if next_tick is None:
                return await self._queue.get()
            timeout = max(0.0, next_tick - asyncio.get_running_loop().time())
            try:
                return await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                return None
        finally:
            self._idle = False

    async def _loop(self) -> None:
        waiting: list[asyncio.Future] = []
        loop = asyncio.get_running_loop()
        try:
            next_tick: float | None = None
            if self.auto_refresh:
                try:
                    await self.do_refresh(True)
                except RefreshError as err:
                    logger.warning("failed when refreshing routing table: %s", err)
                next_tick = loop.time() + self.refresh_interval

            while True:
                forced = False
                request = await self._next_trigger(next_tick)
                if request is None:
                    assert next_tick is not None
                    next_tick += self.refresh_interval
                    now = loop.time()
                    if next_tick <= now:
                        next_tick = now + self.refresh_interval
                else:
                    if request.future is not None:
                        waiting.append(request.future)
                    forced = forced or request.force

                # Batch the requests that are already waiting.
                while not self._queue.empty():
                    request = self._queue.get_nowait()
                    if request.future is not None:
                        waiting.append(request.future)
                    forced = forced or request.force

                await self._ping_and_evict_peers()

                error: RefreshError | None = None
                try:
                    await self.do_refresh(forced)
                except RefreshError as err:
                    error = err
                    logger.warning("failed when refreshing routing table: %s", err)
                for future in waiting:
                    if future.done():
                        continue
                    if error is None:
                        future.set_result(None)
                    else:
                        future.set_exception(error)
                waiting = []
        finally:
            for future in waiting:
                if not future.done():
                    future.set_exception(_closed_error())

    async def _check_peer(self, p: Hashable) -> None:
        try:
            await self.host.connect(p)
        except Exception as err:
            logger.debug("evicting peer %r after failed connection: %s", p, err)
            raise
        try:
            await self.ping_fn(p)
        except Exception as err:
            logger.debug("evicting peer %r after failed ping: %s", p, err)
            raise

    async def _check_or_evict(self, p: Hashable) -> bool:
        try:
            await asyncio.wait_for(self._check_peer(p), PEER_PING_TIMEOUT)
        except Exception:
            self.routing_table.remove_peer(p)
            return False
        return True

    async def _ping_and_evict_peers(self) -> int:
        """Ping peers not heard from within the grace period; evict the silent ones."""
        now = time.time()
        stale = [
            info.id
            for info in self.routing_table.get_peer_infos()
            if now - info.last_successful_outbound_query_at
            > self.successful_outbound_query_grace_period
        ]
        results = await asyncio.gather(*(self._check_or_evict(p) for p in stale))
        alive = sum(results)
        logger.debug("checked %d peers, %d alive", len(stale), alive)
        return alive

    async def do_refresh(self, force: bool) -> None:
        """Query for self, then refresh the buckets that need it.

        Raises RefreshError holding every failure that occurred.
        """
        errors: list[RefreshError] = []
        try:
            await self._query_for_self()
        except RefreshError as err:
            errors.append(err)

        refresh_cpls = self.routing_table.get_tracked_cpls_for_refresh()

        async def refresh_one(cpl: int) -> None:
            if force:
                await self._refresh_cpl(cpl)
            else:
                await self._refresh_cpl_if_eligible(cpl, refresh_cpls[cpl])

        for cpl in range(len(refresh_cpls)):
            try:
                await refresh_one(cpl)
            except RefreshError as err:
                errors.append(err)
                continue
            # On a gap, refresh only up to 2 * (cpl + 1) or the highest tracked cpl.
            if self.routing_table.n_peers_for_cpl(cpl) == 0:
                last_cpl = min(2 * (cpl + 1), len(refresh_cpls) - 1)
                for gap_cpl in range(cpl + 1, last_cpl + 1):
                    try:
                        await refresh_one(gap_cpl)
                    except RefreshError as err:
                        errors.append(err)
                self._raise_if_any(errors)
                return

        if self.on_refresh_done is not None:
            self.on_refresh_done()
        self._raise_if_any(errors)

    @staticmethod
    def _raise_if_any(errors: list[RefreshError]) -> None:
        if errors:
            raise RefreshError("; ".join(str(e) for e in errors), errors)

    async def _refresh_cpl_if_eligible(self, cpl: int, last_refreshed_at: float) -> None:
        if time.time() - last_refreshed_at <= self.refresh_interval:
            logger.debug(
                "not running refresh for cpl %d as time since last refresh not above interval",
                cpl,
            )
            return
        await self._refresh_cpl(cpl)

    async def _refresh_cpl(self, cpl: int) -> None:
        try:
            key = self.key_gen(cpl)
        except Exception as err:
            raise RefreshError(
                f"failed to generated query key for cpl={cpl}, err={err}"
            ) from err

        logger.info(
            "starting refreshing cpl %d with key %s (routing table size was %d)",
            cpl,
            loggable_raw_key(key),
            len(self.routing_table),
        )
        try:
            await self._run_refresh_query(key)
        except Exception as err:
            raise RefreshError(f"failed to refresh cpl={cpl}, err={err}") from err
        logger.info(
            "finished refreshing cpl %d, routing table size is now %d",
            cpl,
            len(self.routing_table),
        )

    async def _query_for_self(self) -> None:
        try:
            await self._run_refresh_query(self.self_id)
        except Exception as err:
            raise RefreshError(f"failed to query for self, err={err}") from err

    async def _run_refresh_query(self, key: Any) -> None:
        # Running out of time is a normal end for a refresh query.
        if self.query_timeout is None:
            await self.query_fn(key)
            return
        try:
            await asyncio.wait_for(self.query_fn(key), self.query_timeout)
        except asyncio.TimeoutError:
            return