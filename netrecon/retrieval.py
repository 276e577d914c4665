"""
Retrieval Orchestrator
======================
Indexes a session's captured requests and pulls back the ones most
relevant to a fixed menu of topic queries.

Indexing
  - pre-check the signatures already indexed for the session
  - keep every analytics / tech-stack call, plus up to ``MAX_OTHER_CALLS``
    others
  - embed in concurrent waves of ``EMBED_WAVE_SIZE``

Retrieval
  - all topic queries run concurrently
  - K is generous for analytics queries, smaller for the rest
  - the similarity threshold is looser for analytics hosts
  - hits are bucketed by the first matching host pattern, then deduped
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .embeddings import EmbeddingGenerator, query_text, request_signature
from .models import NetworkCall, ScoredCall
from .patterns import (
    ANALYTICS,
    CDN,
    TECH_STACK,
    PatternTable,
    indexing_table,
    retrieval_table,
)
from .similarity_index import SimilarityIndex
from .utils import compact_json

logger = logging.getLogger(__name__)

EMBED_WAVE_SIZE = 15
MAX_OTHER_CALLS = 5000
ANALYTICS_K = 500
DEFAULT_K = 50
ANALYTICS_THRESHOLD = 0.1
DEFAULT_THRESHOLD = 0.4
TECH_STACK_LIMIT = 200
ALL_RELEVANT_LIMIT = 300

DEFAULT_QUERIES = [
    "google analytics 4 GA4 events tracking",
    "analytics tracking events button clicks",
    "analytics scroll events user interactions",
    "analytics form submission events",
    "analytics page view events",
    "analytics custom events tracking",
    "tech stack framework hosting",
    "google analytics gtm segment",
    "hubspot form submission",
    "CDN hosting provider",
    "event tracking user interactions",
    "analytics collect gtag events",
    "analytics measurement protocol",
    "analytics event parameters",
]

ProgressFn = Callable[[int, int], None]


@dataclass
class IndexingResult:
    processed: int = 0
    total: int = 0
    new: int = 0
    skipped: int = 0


@dataclass
class RetrievalResult:
    analytics: List[NetworkCall] = field(default_factory=list)
    tech_stack: List[NetworkCall] = field(default_factory=list)
    all_relevant: List[NetworkCall] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.analytics) + len(self.tech_stack) + len(self.all_relevant)


def analytics_dedup_key(call: NetworkCall) -> str:
    return f"{call.host}{call.pathname}{compact_json(call.query_params)}{(call.post_data or '')[:100]}"


def tech_dedup_key(call: NetworkCall) -> str:
    return f"{call.host}{call.pathname}"


def _dedup(calls: Iterable[NetworkCall], key_fn) -> List[NetworkCall]:
    seen: Set[str] = set()
    out: List[NetworkCall] = []
    for call in calls:
        key = key_fn(call)
        if key not in seen:
            seen.add(key)
            out.append(call)
    return out


class RetrievalOrchestrator:
    """
    Usage::

        rag = RetrievalOrchestrator(generator, index)
        await rag.index_session(session_id, captures.flat)
        result = await rag.retrieve(session_id)
    """

    def __init__(
        self,
        generator: EmbeddingGenerator,
        index: SimilarityIndex,
        retrieval_patterns: Optional[PatternTable] = None,
        indexing_patterns: Optional[PatternTable] = None,
        wave_size: int = EMBED_WAVE_SIZE,
        max_other_calls: int = MAX_OTHER_CALLS,
    ):
        self.generator = generator
        self.index = index
        self.retrieval_patterns = retrieval_patterns or retrieval_table()
        self.indexing_patterns = indexing_patterns or indexing_table()
        self.wave_size = max(1, wave_size)
        self.max_other_calls = max_other_calls

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def _select_for_indexing(self, calls: Sequence[NetworkCall]) -> List[NetworkCall]:
        selected: List[NetworkCall] = []
        others = 0
        for call in calls:
            category = self.indexing_patterns.classify(call.host)
            if category in (ANALYTICS, TECH_STACK):
                selected.append(call)
            elif others < self.max_other_calls:
                others += 1
                selected.append(call)
        return selected

    async def index_session(
        self,
        session_id: str,
        calls: Sequence[NetworkCall],
        progress: Optional[ProgressFn] = None,
    ) -> IndexingResult:
        existing = self.index.signatures(session_id)
        candidates = self._select_for_indexing(calls)

        pending: List[NetworkCall] = []
        skipped = 0
        for call in candidates:
            sig = request_signature(call)
            if sig in existing:
                skipped += 1
                continue
            existing.add(sig)
            pending.append(call)

        result = IndexingResult(total=len(candidates), skipped=skipped, processed=skipped)
        logger.info(
            f"[RAG] Indexing {len(pending)} new calls "
            f"({skipped} already indexed, {len(calls) - len(candidates)} not selected)"
        )

        for start in range(0, len(pending), self.wave_size):
            wave = pending[start:start + self.wave_size]
            vectors = await asyncio.gather(
                *(self.generator.embed_request(c) for c in wave),
                return_exceptions=True,
            )
            for call, vector in zip(wave, vectors):
                result.processed += 1
                if isinstance(vector, BaseException):
                    logger.warning(f"[RAG] Embedding failed for {call.url[:80]}: {vector}")
                    continue
                if self.index.index(session_id, call, vector):
                    result.new += 1
            if progress:
                progress(result.processed, result.total)

        logger.info(f"[RAG] Indexed {result.new} new vectors (session total {self.index.count(session_id)})")
        return result

    async def reindex_session(
        self,
        session_id: str,
        calls: Sequence[NetworkCall],
        progress: Optional[ProgressFn] = None,
    ) -> IndexingResult:
        self.index.clear(session_id)
        return await self.index_session(session_id, calls, progress)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def _run_query(self, session_id: str, query: str) -> Dict[str, List[NetworkCall]]:
        buckets: Dict[str, List[NetworkCall]] = {"analytics": [], "tech_stack": [], "all_relevant": []}
        try:
            vector = await self.generator.embed_text(query_text(query))
            k = ANALYTICS_K if "analytics" in query.lower() else DEFAULT_K
            hits: List[ScoredCall] = await self.index.search(session_id, vector, k)
        except Exception as e:
            logger.warning(f"[RAG] Query failed ({query!r}): {e}")
            return buckets

        for hit in hits:
            category = self.retrieval_patterns.classify(hit.call.host)
            threshold = ANALYTICS_THRESHOLD if category == ANALYTICS else DEFAULT_THRESHOLD
            if hit.score <= threshold:
                continue
            if category == ANALYTICS:
                buckets["analytics"].append(hit.call)
            elif category in (TECH_STACK, CDN):
                buckets["tech_stack"].append(hit.call)
            buckets["all_relevant"].append(hit.call)
        return buckets

    async def retrieve(self, session_id: str, queries: Optional[Sequence[str]] = None) -> RetrievalResult:
        queries = list(queries or DEFAULT_QUERIES)
        per_query = await asyncio.gather(*(self._run_query(session_id, q) for q in queries))

        analytics: List[NetworkCall] = []
        tech: List[NetworkCall] = []
        relevant: List[NetworkCall] = []
        for buckets in per_query:
            analytics.extend(buckets["analytics"])
            tech.extend(buckets["tech_stack"])
            relevant.extend(buckets["all_relevant"])

        result = RetrievalResult(
            analytics=_dedup(analytics, analytics_dedup_key),
            tech_stack=_dedup(tech, tech_dedup_key)[:TECH_STACK_LIMIT],
            all_relevant=_dedup(relevant, request_signature)[:ALL_RELEVANT_LIMIT],
        )
        logger.info(
            f"[RAG] Retrieved analytics={len(result.analytics)} "
            f"tech={len(result.tech_stack)} relevant={len(result.all_relevant)}"
        )
        return result
