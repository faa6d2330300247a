"""
Flow Cache — TTL cache of compiled flow graphs and per-connection catalogs.

Read-mostly and shared by every session:

  - Miss:   the first reader awaits the repository; concurrent readers of
            the SAME key wait on that key's lock, readers of other keys
            never wait.
  - Fresh:  served straight from the dict.
  - Stale:  served immediately, and a background task reloads the key and
            swaps in a new entry (copy-on-write; entries are never mutated).

A FlowGraph handed out to a turn stays valid for that turn even if the
entry is swapped underneath it. The cache is constructed and injected
explicitly; there is no module-level instance.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from engine.errors import FlowNotFound
from flows.compiler import FlowGraph
from flows.repository import FlowRepository
from models.schemas import Flow

logger = structlog.get_logger()


@dataclass(frozen=True)
class _Entry:
    value: Any
    loaded_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    refreshes: int = 0
    refresh_failures: int = 0


class FlowCache:

    def __init__(
        self,
        repository: FlowRepository,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], _Entry] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._refreshing: dict[tuple[str, str], asyncio.Task] = {}
        self.stats = CacheStats()

    # ── Public API ────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> FlowGraph:
        return await self._get(("flow", flow_id),
                               lambda: self._repository.load_flow(flow_id))

    async def get_catalog(self, connection_id: str) -> tuple[Flow, ...]:
        async def load() -> tuple[Flow, ...]:
            return tuple(await self._repository.list_flows(connection_id))
        return await self._get(("catalog", connection_id), load)

    def invalidate(self, flow_id: str) -> None:
        """Drop a flow and every cached catalog that lists it (or owns it)."""
        owners = set()
        graph = self.peek(flow_id)
        if graph is not None:
            owners.add(graph.flow.connection_id)
        for (kind, key), entry in list(self._entries.items()):
            if kind == "catalog" and any(f.id == flow_id for f in entry.value):
                owners.add(key)
        self._drop(("flow", flow_id))
        for connection_id in owners:
            self._drop(("catalog", connection_id))
        logger.info("flow_cache_invalidated", flow_id=flow_id, catalogs=sorted(owners))

    def invalidate_connection(self, connection_id: str) -> None:
        self._drop(("catalog", connection_id))
        logger.info("flow_catalog_invalidated", connection_id=connection_id)

    def peek(self, flow_id: str) -> Optional[FlowGraph]:
        """Cached graph without loading (None on miss)."""
        entry = self._entries.get(("flow", flow_id))
        return entry.value if entry else None

    async def close(self) -> None:
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._refreshing.clear()

    # ── Internals ─────────────────────────────────────────

    def _is_fresh(self, entry: _Entry) -> bool:
        return self._clock() - entry.loaded_at < self.ttl

    def _drop(self, key: tuple[str, str]) -> None:
        self._entries.pop(key, None)
        task = self._refreshing.pop(key, None)
        if task:
            task.cancel()

    async def _get(self, key: tuple[str, str], loader: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.get(key)
        if entry is not None:
            if self._is_fresh(entry):
                self.stats.hits += 1
            else:
                self.stats.stale_hits += 1
                self._schedule_refresh(key, loader)
            return entry.value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._entries.get(key)
            if entry is not None:
                self.stats.hits += 1
                return entry.value
            self.stats.misses += 1
            value = await loader()
            self._entries[key] = _Entry(value, self._clock())
            logger.debug("flow_cache_loaded", kind=key[0], key=key[1])
            return value

    def _schedule_refresh(self, key: tuple[str, str], loader: Callable[[], Awaitable[Any]]) -> None:
        if key in self._refreshing:
            return
        task = asyncio.create_task(self._refresh(key, loader))
        self._refreshing[key] = task
        task.add_done_callback(lambda t, k=key: self._refreshing.pop(k, None)
                               if self._refreshing.get(k) is t else None)

    async def _refresh(self, key: tuple[str, str], loader: Callable[[], Awaitable[Any]]) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                value = await loader()
            except FlowNotFound:
                self._entries.pop(key, None)
                logger.info("flow_cache_entry_removed", kind=key[0], key=key[1])
                return
            except Exception as e:
                # keep serving the stale snapshot
                self.stats.refresh_failures += 1
                logger.warning("flow_cache_refresh_failed", kind=key[0], key=key[1], error=str(e))
                return
            self._entries[key] = _Entry(value, self._clock())
            self.stats.refreshes += 1
            logger.debug("flow_cache_refreshed", kind=key[0], key=key[1])
