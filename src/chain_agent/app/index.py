"""Chroma-backed search index for agent memories."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import chromadb

from .models import Memory, utc_now

# Metadata keys reserved by the index; stripped before memories are returned.
TIMESTAMP_KEY = "_timestamp"
JSON_KEYS_KEY = "_json_keys"


class ChromaIndexTier:
    """Semantic search over memory contents in one Chroma collection per agent."""

    name = "chroma"
    enabled = True

    def __init__(
        self,
        host: str = "",
        *,
        collection_name: str,
        client: Any = None,
        embedding_function: Any = None,
    ) -> None:
        if not host and client is None:
            raise ValueError("Chroma host is required")
        self.host = host
        self.collection_name = collection_name
        # None keeps the collection default.
        self.embedding_function = embedding_function
        self._client: Any = client
        self._collection: Any = None

    async def connect(self) -> None:
        await asyncio.to_thread(self._connect_sync)

    async def add(self, memory: Memory) -> None:
        metadata = _flatten_metadata(memory.metadata)
        metadata[TIMESTAMP_KEY] = memory.timestamp.isoformat()
        await asyncio.to_thread(
            self._require_collection().add,
            ids=[memory.id],
            documents=[memory.content],
            metadatas=[metadata],
        )

    async def search(self, query: str, *, limit: int) -> list[Memory]:
        raw = await asyncio.to_thread(
            self._require_collection().query,
            query_texts=[query],
            n_results=max(limit, 1),
            include=["documents", "metadatas"],
        )
        ids = _first_list(raw.get("ids"))
        docs = _first_list(raw.get("documents"))
        metadatas = _first_list(raw.get("metadatas"))

        memories: list[Memory] = []
        for idx, memory_id in enumerate(ids):
            metadata_raw = metadatas[idx] if idx < len(metadatas) else {}
            metadata = dict(metadata_raw) if isinstance(metadata_raw, dict) else {}
            timestamp = _parse_timestamp(metadata.pop(TIMESTAMP_KEY, None))
            memories.append(
                Memory(
                    id=str(memory_id),
                    content=str(docs[idx] if idx < len(docs) and docs[idx] else ""),
                    metadata=_unflatten_metadata(metadata),
                    timestamp=timestamp,
                )
            )
        return memories

    async def delete(self, memory_id: str) -> None:
        await asyncio.to_thread(self._require_collection().delete, ids=[memory_id])

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear_sync)

    def _connect_sync(self) -> None:
        if self._client is None:
            parsed = urlparse(self.host if "://" in self.host else f"http://{self.host}")
            self._client = chromadb.HttpClient(
                host=parsed.hostname or "localhost",
                port=parsed.port or 8000,
                ssl=parsed.scheme == "https",
            )
        self._collection = self._open_collection()

    def _clear_sync(self) -> None:
        if self._collection is None:
            raise RuntimeError("Chroma tier is not connected")
        self._client.delete_collection(name=self.collection_name)
        self._collection = self._open_collection()

    def _open_collection(self) -> Any:
        if self.embedding_function is None:
            return self._client.get_or_create_collection(name=self.collection_name)
        return self._client.get_or_create_collection(
            name=self.collection_name, embedding_function=self.embedding_function
        )

    def _require_collection(self) -> Any:
        if self._collection is None:
            raise RuntimeError("Chroma tier is not connected")
        return self._collection


def _flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Chroma metadata values must be scalars; JSON-encode everything else."""
    flat: dict[str, Any] = {}
    json_keys: list[str] = []
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
            continue
        flat[key] = json.dumps(value, default=str, ensure_ascii=True)
        json_keys.append(key)
    if json_keys:
        flat[JSON_KEYS_KEY] = ",".join(json_keys)
    return flat


def _unflatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    json_keys = str(metadata.pop(JSON_KEYS_KEY, "") or "")
    for key in filter(None, json_keys.split(",")):
        value = metadata.get(key)
        if isinstance(value, str):
            try:
                metadata[key] = json.loads(value)
            except json.JSONDecodeError:
                pass
    return metadata


def _first_list(value: Any) -> list[Any]:
    if isinstance(value, list) and value:
        first = value[0]
        if isinstance(first, list):
            return first
    return []


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return utc_now()
    return utc_now()
