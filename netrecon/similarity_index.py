"""
Similarity Index
================
Session-scoped vector store with exact top-K cosine search.

Search streams the session's rows in fixed-size batches and keeps a
bounded min-heap of ``2 * k`` candidates, so memory stays proportional
to ``k`` rather than to the number of indexed vectors.  The loop yields
to the event loop between batches.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
import math
import sqlite3
import time
from typing import List, Optional, Sequence, Set

from .embeddings import pack_vector, request_signature, unpack_vector
from .models import EmbeddingRecord, NetworkCall, ScoredCall
from .storage import ReconStore

logger = logging.getLogger(__name__)

SEARCH_BATCH_SIZE = 1000


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class SimilarityIndex:
    """
    Usage::

        index = SimilarityIndex(store)
        index.index(session_id, call, vector)
        hits = await index.search(session_id, query_vector, k=50)
    """

    def __init__(self, store: ReconStore, batch_size: int = SEARCH_BATCH_SIZE):
        self._store = store
        self._batch_size = batch_size

    def index(self, session_id: str, call: NetworkCall, vector: Sequence[float]) -> bool:
        """Add a vector; returns False if the signature was already indexed."""
        record = EmbeddingRecord(session_id, request_signature(call), list(vector), call)
        return self.add(record)

    def add(self, record: EmbeddingRecord) -> bool:
        with self._store.transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO embeddings "
                "(session_id, signature, dims, vector, request, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.session_id, record.signature, len(record.vector), pack_vector(record.vector),
                    json.dumps(record.call.to_dict(), ensure_ascii=False), time.time(),
                ),
            )
            if cur.rowcount <= 0:
                return False
            record.id = cur.lastrowid
            return True

    def get(self, session_id: str, signature: str) -> Optional[EmbeddingRecord]:
        row = self._store.execute(
            "SELECT id, signature, vector, request FROM embeddings WHERE session_id = ? AND signature = ?",
            (session_id, signature),
        ).fetchone()
        if row is None:
            return None
        return EmbeddingRecord(
            session_id=session_id,
            signature=row["signature"],
            vector=unpack_vector(row["vector"]),
            call=NetworkCall.from_dict(json.loads(row["request"])),
            id=row["id"],
        )

    def signatures(self, session_id: str) -> Set[str]:
        rows = self._store.execute(
            "SELECT signature FROM embeddings WHERE session_id = ?", (session_id,)
        ).fetchall()
        return {r["signature"] for r in rows}

    def count(self, session_id: str) -> int:
        return self._store.count("embeddings", session_id)

    def clear(self, session_id: str) -> None:
        with self._store.transaction() as conn:
            conn.execute("DELETE FROM embeddings WHERE session_id = ?", (session_id,))
        logger.info(f"[INDEX] Cleared embeddings for {session_id}")

    async def search(self, session_id: str, query_vector: Sequence[float], k: int) -> List[ScoredCall]:
        """Top ``k`` rows by cosine similarity, highest first."""
        if k <= 0:
            return []
        capacity = 2 * k
        heap: list = []
        tiebreak = itertools.count()

        # A dedicated cursor so other writers don't disturb the stream.
        cursor = self._store.connection.cursor()
        try:
            cursor.execute(
                "SELECT id, signature, vector, request FROM embeddings "
                "WHERE session_id = ? ORDER BY id",
                (session_id,),
            )
            while True:
                rows = cursor.fetchmany(self._batch_size)
                if not rows:
                    break
                for row in rows:
                    score = cosine_similarity(query_vector, unpack_vector(row["vector"]))
                    entry = (score, next(tiebreak), row["signature"], row["request"])
                    if len(heap) < capacity:
                        heapq.heappush(heap, entry)
                    elif score > heap[0][0]:
                        heapq.heapreplace(heap, entry)
                await asyncio.sleep(0)
        except sqlite3.Error as e:
            logger.error(f"[INDEX] Search failed for {session_id}: {e}")
        finally:
            cursor.close()

        best = heapq.nlargest(k, heap)
        return [
            ScoredCall(call=NetworkCall.from_dict(json.loads(request)), score=score, signature=sig)
            for score, _, sig, request in best
        ]
