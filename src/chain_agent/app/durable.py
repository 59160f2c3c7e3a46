"""Durable memory tiers with per-key expiry.

Two backends share one contract (see `knowledge.DurableTier`):
- Redis: `SET memory:<id> <json> EX <ttl>`; expiry handled by the server.
- PostgreSQL: one row per memory with an `expires_at` column; expired rows are
  invisible to reads and purged on connect.

Both store the JSON-serialized Memory.
"""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as redis

from .models import Memory, utc_now

KEY_PREFIX = "memory:"


class RedisDurableTier:
    """Redis-backed durable tier."""

    name = "redis"
    enabled = True

    def __init__(
        self,
        url: str = "",
        *,
        key_prefix: str = KEY_PREFIX,
        client: redis.Redis | None = None,
    ) -> None:
        if not url and client is None:
            raise ValueError("Redis URL is required")
        self.url = url
        self.key_prefix = key_prefix
        # A caller-supplied client must be created with decode_responses=True.
        self._injected = client
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        client = self._injected
        if client is None:
            client = redis.from_url(self.url, decode_responses=True)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._client = client

    async def put(self, memory: Memory, *, ttl_s: int) -> None:
        await self._require_client().set(self._key(memory.id), memory.model_dump_json(), ex=ttl_s)

    async def get(self, memory_id: str) -> Memory | None:
        raw = await self._require_client().get(self._key(memory_id))
        if raw is None:
            return None
        return Memory.model_validate_json(raw)

    async def delete(self, memory_id: str) -> None:
        await self._require_client().delete(self._key(memory_id))

    async def clear(self) -> None:
        client = self._require_client()
        keys = [key async for key in client.scan_iter(match=f"{self.key_prefix}*")]
        if keys:
            await client.delete(*keys)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _key(self, memory_id: str) -> str:
        return f"{self.key_prefix}{memory_id}"

    def _require_client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis tier is not connected")
        return self._client


class PostgresDurableTier:
    """PostgreSQL-backed durable tier with row-level expiry."""

    name = "postgres"
    enabled = True

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this tier instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    async def connect(self) -> None:
        await asyncio.to_thread(self.migrate)

    def migrate(self) -> None:
        """Create the memories table if needed and drop expired rows."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_memories (
                    memory_id TEXT PRIMARY KEY,
                    payload JSONB NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_memories_expires_at
                ON agent_memories(expires_at)
                """)
            conn.execute("DELETE FROM agent_memories WHERE expires_at <= now()")
            conn.commit()

    async def put(self, memory: Memory, *, ttl_s: int) -> None:
        await asyncio.to_thread(self._put_sync, memory, ttl_s)

    async def get(self, memory_id: str) -> Memory | None:
        return await asyncio.to_thread(self._get_sync, memory_id)

    async def delete(self, memory_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM agent_memories WHERE memory_id = %s", (memory_id,)
        )

    async def clear(self) -> None:
        await asyncio.to_thread(self._execute, "DELETE FROM agent_memories", ())

    async def close(self) -> None:
        # Connections are opened per operation.
        return None

    def _put_sync(self, memory: Memory, ttl_s: int) -> None:
        expires_at = utc_now() + timedelta(seconds=ttl_s)
        self._execute(
            """
            INSERT INTO agent_memories (memory_id, payload, expires_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (memory_id) DO UPDATE
            SET payload = EXCLUDED.payload,
                expires_at = EXCLUDED.expires_at
            """,
            (memory.id, self._json_wrapper(memory.model_dump(mode="json")), expires_at),
        )

    def _get_sync(self, memory_id: str) -> Memory | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT payload
                FROM agent_memories
                WHERE memory_id = %s AND expires_at > now()
                """,
                (memory_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_memory(row)

    def _execute(self, query: str, params: tuple[Any, ...]) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(query, params)
            conn.commit()

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL memory tier requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _row_to_memory(row: Any) -> Memory:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Memory.model_validate(payload)


def build_durable_tier(url: str) -> RedisDurableTier | PostgresDurableTier | None:
    """Pick a durable backend from the URL scheme; empty URL disables the tier."""
    if not url:
        return None
    scheme = urlparse(url).scheme.lower()
    if scheme in {"redis", "rediss", "unix"}:
        return RedisDurableTier(url)
    if scheme in {"postgres", "postgresql"}:
        return PostgresDurableTier(url)
    raise ValueError(f"Unsupported durable store URL scheme: {scheme!r}")
