"""Tiered memory store.

Tiers:
1) Cache: in-process dict, always present, authoritative for "recent".
2) Durable: key-value store with per-key TTL (Redis or PostgreSQL), optional.
3) Index: semantic/full-text collection (Chroma), optional.

Writes go to every present tier; only the cache write can fail the call.
Reads degrade tier by tier: retrieve falls back to cache-only, search falls
back to a case-insensitive substring scan over the cache.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from uuid import uuid4

from .models import Memory, utc_now

DEFAULT_MEMORY_TTL_S = 60 * 60 * 24 * 7


class DurableTier(Protocol):
    name: str
    enabled: bool

    async def connect(self) -> None: ...

    async def put(self, memory: Memory, *, ttl_s: int) -> None: ...

    async def get(self, memory_id: str) -> Memory | None: ...

    async def delete(self, memory_id: str) -> None: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...


class IndexTier(Protocol):
    name: str
    enabled: bool

    async def connect(self) -> None: ...

    async def add(self, memory: Memory) -> None: ...

    async def search(self, query: str, *, limit: int) -> list[Memory]: ...

    async def delete(self, memory_id: str) -> None: ...

    async def clear(self) -> None: ...


class NullDurableTier:
    """Stand-in used when no durable store is configured or reachable."""

    name = "none"
    enabled = False

    async def connect(self) -> None:
        return None

    async def put(self, memory: Memory, *, ttl_s: int) -> None:
        return None

    async def get(self, memory_id: str) -> Memory | None:
        return None

    async def delete(self, memory_id: str) -> None:
        return None

    async def clear(self) -> None:
        return None

    async def close(self) -> None:
        return None


class NullIndexTier:
    """Stand-in used when no search index is configured or reachable."""

    name = "none"
    enabled = False

    async def connect(self) -> None:
        return None

    async def add(self, memory: Memory) -> None:
        return None

    async def search(self, query: str, *, limit: int) -> list[Memory]:
        return []

    async def delete(self, memory_id: str) -> None:
        return None

    async def clear(self) -> None:
        return None


class KnowledgeStore:
    """Write-through memory recording across cache, durable, and index tiers."""

    def __init__(
        self,
        agent_name: str,
        *,
        durable: DurableTier | None = None,
        index: IndexTier | None = None,
        ttl_s: int = DEFAULT_MEMORY_TTL_S,
        logger: logging.Logger | None = None,
    ) -> None:
        self.agent_name = agent_name
        self.ttl_s = ttl_s
        self.logger = logger or logging.getLogger(__name__)
        self.durable: DurableTier = durable or NullDurableTier()
        self.index: IndexTier = index or NullIndexTier()
        self._cache: dict[str, Memory] = {}

    @property
    def tiers(self) -> dict[str, Any]:
        return {
            "cache": True,
            "durable": self.durable.name if self.durable.enabled else None,
            "index": self.index.name if self.index.enabled else None,
        }

    def __len__(self) -> int:
        return len(self._cache)

    async def initialize(self) -> None:
        """Connect optional tiers; any tier that fails is logged and disabled."""
        self.logger.info("knowledge event=initializing agent=%s", self.agent_name)
        if self.index.enabled:
            try:
                await self.index.connect()
                self.logger.info("knowledge event=tier_ready tier=index backend=%s", self.index.name)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "knowledge event=tier_unavailable tier=index backend=%s reason=%s",
                    self.index.name,
                    exc,
                )
                self.index = NullIndexTier()
        if self.durable.enabled:
            try:
                await self.durable.connect()
                self.logger.info(
                    "knowledge event=tier_ready tier=durable backend=%s", self.durable.name
                )
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "knowledge event=tier_unavailable tier=durable backend=%s reason=%s",
                    self.durable.name,
                    exc,
                )
                self.durable = NullDurableTier()

    async def store_memory(self, content: str, metadata: dict[str, Any] | None = None) -> str:
        memory = Memory(
            id=str(uuid4()),
            content=content,
            metadata={**(metadata or {}), "agent": self.agent_name},
            timestamp=utc_now(),
        )
        self._cache[memory.id] = memory

        if self.index.enabled:
            try:
                await self.index.add(memory)
            except Exception:  # noqa: BLE001
                self.logger.exception("knowledge event=index_write_failed memory_id=%s", memory.id)

        if self.durable.enabled:
            try:
                await self.durable.put(memory, ttl_s=self.ttl_s)
            except Exception:  # noqa: BLE001
                self.logger.exception(
                    "knowledge event=durable_write_failed memory_id=%s", memory.id
                )

        self.logger.debug("knowledge event=stored memory_id=%s", memory.id)
        return memory.id

    async def retrieve_memory(self, memory_id: str) -> Memory | None:
        cached = self._cache.get(memory_id)
        if cached is not None:
            return cached
        if not self.durable.enabled:
            return None
        try:
            memory = await self.durable.get(memory_id)
        except Exception:  # noqa: BLE001
            self.logger.exception("knowledge event=durable_read_failed memory_id=%s", memory_id)
            return None
        if memory is not None:
            self._cache[memory.id] = memory
        return memory

    async def search_memories(self, query: str, limit: int = 10) -> list[Memory]:
        limit = max(limit, 1)
        if self.index.enabled:
            try:
                hits = await self.index.search(query, limit=limit)
            except Exception:  # noqa: BLE001
                self.logger.exception("knowledge event=index_search_failed query=%r", query)
            else:
                # Cached copies keep full-fidelity metadata.
                return [self._cache.get(hit.id, hit) for hit in hits[:limit]]

        needle = query.lower()
        matches = [memory for memory in self._cache.values() if needle in memory.content.lower()]
        return matches[:limit]

    async def get_recent_memories(self, limit: int = 10) -> list[Memory]:
        ordered = sorted(self._cache.values(), key=lambda memory: memory.timestamp, reverse=True)
        return ordered[: max(limit, 0)]

    async def delete_memory(self, memory_id: str) -> bool:
        self._cache.pop(memory_id, None)
        for tier in (self.index, self.durable):
            if not tier.enabled:
                continue
            try:
                await tier.delete(memory_id)
            except Exception:  # noqa: BLE001
                self.logger.exception(
                    "knowledge event=delete_failed backend=%s memory_id=%s", tier.name, memory_id
                )
        self.logger.debug("knowledge event=deleted memory_id=%s", memory_id)
        return True

    async def clear_all_memories(self) -> None:
        self._cache.clear()
        for tier in (self.index, self.durable):
            if not tier.enabled:
                continue
            try:
                await tier.clear()
            except Exception:  # noqa: BLE001
                self.logger.exception("knowledge event=clear_failed backend=%s", tier.name)
        self.logger.info("knowledge event=cleared agent=%s", self.agent_name)

    async def close(self) -> None:
        if not self.durable.enabled:
            return
        try:
            await self.durable.close()
        except Exception:  # noqa: BLE001
            self.logger.exception("knowledge event=close_failed backend=%s", self.durable.name)
