"""
Embedding Cache & Generator
===========================
Turns a captured request into a canonical text and the text into a
vector, through a two-tier cache:

1. in-memory dict keyed by the SHA-256 of the text
2. the persistent ``embedding_cache`` table (survives process epochs)
3. the external embedding function

Any failure of the external call yields a deterministic local vector so
retrieval degrades instead of failing.  Fallback vectors are never cached.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import time
from array import array
from typing import Awaitable, Callable, Dict, List, Optional

from .models import NetworkCall
from .patterns import is_ga_host
from .storage import ReconStore
from .utils import compact_json, content_hash

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Awaitable[List[float]]]

FALLBACK_DIMS = 768
GA_BODY_PREVIEW = 2000
BODY_PREVIEW = 500
SIGNATURE_BODY_PREFIX = 200
TEXT_HEADERS = ("user-agent", "referer", "content-type", "authorization")


def request_text(call: NetworkCall) -> str:
    """Canonical text rendering of a request, used for embedding."""
    parts = [
        f"Host: {call.host}",
        f"Path: {call.pathname}",
        f"Method: {call.method}",
    ]
    if call.query_params:
        parts.append(f"Query: {compact_json(call.query_params)}")
    if call.post_data:
        limit = GA_BODY_PREVIEW if is_ga_host(call.host) else BODY_PREVIEW
        parts.append(f"Body: {call.post_data[:limit]}")
    headers = [f"{k}: {call.headers[k]}" for k in TEXT_HEADERS if call.headers.get(k)]
    if headers:
        parts.append(f"Headers: {', '.join(headers)}")
    return " | ".join(parts)


def query_text(query: str) -> str:
    """Render a topic query the same way a request is rendered."""
    return f"Host: {query} | Path:  | Method: GET"


def request_signature(call: NetworkCall) -> str:
    """Idempotency key: host + path + method + query + body prefix."""
    body = (call.post_data or "")[:SIGNATURE_BODY_PREFIX]
    return f"{call.host}{call.pathname}{call.method}{compact_json(call.query_params)}{body}"


def fallback_embedding(text: str, dims: int = FALLBACK_DIMS) -> List[float]:
    """Character codes folded into ``dims`` buckets, unit length."""
    vec = [0.0] * dims
    for i, ch in enumerate(text):
        vec[i % dims] += ord(ch)
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0:
        return vec
    return [v / norm for v in vec]


def pack_vector(vector: List[float]) -> bytes:
    return array("d", vector).tobytes()


def unpack_vector(blob: bytes) -> List[float]:
    arr = array("d")
    arr.frombytes(blob)
    return arr.tolist()


class EmbeddingGenerator:
    """
    Usage::

        gen = EmbeddingGenerator(store, client.embed)
        vec = await gen.embed_request(call)
    """

    def __init__(self, store: Optional[ReconStore], embed_fn: Optional[EmbedFn]):
        self._store = store
        self._embed_fn = embed_fn
        self._memory: Dict[str, List[float]] = {}
        self.stats = {"memory_hits": 0, "store_hits": 0, "api_calls": 0, "fallbacks": 0}

    async def embed_text(self, text: str) -> List[float]:
        key = content_hash(text)

        cached = self._memory.get(key)
        if cached is not None:
            self.stats["memory_hits"] += 1
            return cached

        stored = self._load(key)
        if stored is not None:
            self.stats["store_hits"] += 1
            self._memory[key] = stored
            return stored

        if self._embed_fn is None:
            self.stats["fallbacks"] += 1
            return fallback_embedding(text)

        try:
            self.stats["api_calls"] += 1
            vector = await self._embed_fn(text)
            if not vector:
                raise ValueError("empty embedding")
        except Exception as e:
            self.stats["fallbacks"] += 1
            logger.warning(f"[EMBED] Embedding call failed, using local fallback: {e}")
            return fallback_embedding(text)

        self._memory[key] = vector
        self._save(key, vector, text)
        return vector

    async def embed_request(self, call: NetworkCall) -> List[float]:
        return await self.embed_text(request_text(call))

    def _load(self, key: str) -> Optional[List[float]]:
        if self._store is None:
            return None
        try:
            row = self._store.execute(
                "SELECT vector FROM embedding_cache WHERE text_hash = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            logger.debug(f"[EMBED] Cache read failed: {e}")
            return None
        return unpack_vector(row["vector"]) if row else None

    def _save(self, key: str, vector: List[float], text: str) -> None:
        if self._store is None:
            return
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO embedding_cache "
                    "(text_hash, dims, vector, text_preview, created_at) VALUES (?, ?, ?, ?, ?)",
                    (key, len(vector), pack_vector(vector), text[:500], time.time()),
                )
        except sqlite3.Error as e:
            logger.debug(f"[EMBED] Cache write failed: {e}")
