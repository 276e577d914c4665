"""
Recon Service
=============
One object wiring the crawl, the capture store, retrieval and analysis
together, used by the CLI (and by anything embedding netrecon).

User-facing problems (no API key, nothing captured yet, no session)
come back as ``ServiceResult(ok=False, error=...)`` instead of being
raised.

Usage::

    cfg = ReconRunConfig(max_depth=1)
    service = ReconService(cfg, transport=transport)
    crawl = await service.crawl("https://example.com/")
    analysis = await service.analyze(mode="rag")
    exported = service.export()
    await service.close()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .analysis import AnalysisRunner, ClassificationStore, CompleteFn
from .batching import BatchPayloadBuilder
from .capture_store import CaptureStore
from .embeddings import EmbedFn, EmbeddingGenerator
from .exporter import (
    export_analytics_csv,
    export_network_csv,
    export_network_json,
    export_tech_stack_csv,
)
from .llm_client import GeminiClient
from .models import CaptureSet
from .retrieval import RetrievalOrchestrator
from .run_config import ReconRunConfig
from .scheduler import CrawlScheduler
from .session import SessionManager
from .similarity_index import SimilarityIndex
from .storage import ReconStore
from .transport import BrowserTransport

logger = logging.getLogger(__name__)

ANALYSIS_MODES = ("batch", "rag")


@dataclass
class ServiceResult:
    ok: bool
    error: Optional[str] = None
    data: Any = None

    @classmethod
    def success(cls, data: Any = None) -> "ServiceResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "ServiceResult":
        logger.warning(f"[SERVICE] {error}")
        return cls(ok=False, error=error)


class ReconService:

    def __init__(
        self,
        config: Optional[ReconRunConfig] = None,
        transport: Optional[BrowserTransport] = None,
        store: Optional[ReconStore] = None,
        embed_fn: Optional[EmbedFn] = None,
        complete_fn: Optional[CompleteFn] = None,
    ):
        self.config = config or ReconRunConfig()
        self.transport = transport
        self.store = store or ReconStore(self.config.db_path)
        self.sessions = SessionManager(self.store)
        if self.config.wipe_on_start:
            self.sessions.begin_epoch()

        self._client: Optional[GeminiClient] = None
        if self.config.api_key and (embed_fn is None or complete_fn is None):
            self._client = GeminiClient(
                self.config.api_key,
                embedding_model=self.config.embedding_model,
                completion_model=self.config.completion_model,
            )
        if embed_fn is None and self._client is not None:
            embed_fn = self._client.embed
        if complete_fn is None and self._client is not None:
            complete_fn = self._client.complete
        self._complete_fn = complete_fn

        self.captures = CaptureStore(self.store, self.config.max_post_data_chars)
        self.index = SimilarityIndex(self.store)
        self.generator = EmbeddingGenerator(self.store, embed_fn)
        self.orchestrator = RetrievalOrchestrator(self.generator, self.index)
        self.builder = BatchPayloadBuilder(self.config.to_batch_config())
        self.classifications = ClassificationStore(self.store)
        self.scheduler: Optional[CrawlScheduler] = None
        if transport is not None:
            self.scheduler = CrawlScheduler(
                transport, self.captures, self.sessions, self.config.to_scheduler_config()
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self.store.close()

    @property
    def session_id(self) -> Optional[str]:
        return self.sessions.current

    # ------------------------------------------------------------------
    # Crawl
    # ------------------------------------------------------------------

    async def crawl(self, seed_url: str, max_depth: Optional[int] = None,
                    page_limit: Optional[int] = None,
                    progress: Optional[Callable] = None) -> ServiceResult:
        if self.scheduler is None:
            return ServiceResult.failure("No browser transport configured")
        if progress:
            self.scheduler.set_progress_callback(progress)
        summary = await self.scheduler.start(seed_url, max_depth, page_limit)
        if summary is None:
            return ServiceResult.failure(f"Not an http(s) page: {seed_url}")
        return ServiceResult.success(summary)

    def stop_crawl(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()

    def get_captures(self) -> ServiceResult:
        if not self.session_id:
            return ServiceResult.failure("No active session")
        return ServiceResult.success(self.captures.get_all(self.session_id))

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(
        self,
        mode: str = "batch",
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> ServiceResult:
        if mode not in ANALYSIS_MODES:
            return ServiceResult.failure(f"Unknown analysis mode: {mode!r}")
        if self._complete_fn is None:
            return ServiceResult.failure("Missing API key: set GEMINI_API_KEY")
        session_id = self.session_id
        if not session_id:
            return ServiceResult.failure("No active session: crawl a site first")

        captures: CaptureSet = self.captures.get_all(session_id)
        if not captures.flat:
            return ServiceResult.failure("No captured network data for this session")

        if mode == "rag":
            await self.orchestrator.index_session(session_id, captures.flat)
            retrieved = await self.orchestrator.retrieve(session_id)
            logger.info(
                f"[RAG] Retrieved {len(retrieved.analytics)} analytics, "
                f"{len(retrieved.tech_stack)} tech-stack, {len(retrieved.all_relevant)} relevant calls"
            )
            payloads = self.builder.build_rag(retrieved.analytics, retrieved.tech_stack, retrieved.all_relevant)
        else:
            payloads = self.builder.build(captures.flat)

        if not payloads:
            return ServiceResult.failure("Nothing left to analyze after filtering")

        runner = AnalysisRunner(self.store, self._complete_fn, self.config.to_analysis_config())
        report = await runner.run(session_id, payloads, cancel_event=cancel_event, progress=progress)
        if not report.ok:
            return ServiceResult(ok=False, error=f"All {report.total_batches} batches failed", data=report)
        return ServiceResult.success(report)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self, output_dir: Optional[str] = None) -> ServiceResult:
        session_id = self.session_id
        if not session_id:
            return ServiceResult.failure("No active session: crawl a site first")
        out = Path(output_dir or self.config.output_dir)
        captures = self.captures.get_all(session_id)
        if not captures.flat:
            return ServiceResult.failure("No captured network data for this session")

        paths: Dict[str, str] = {
            "network_csv": export_network_csv(captures.flat, str(out / "network_calls.csv")),
            "network_json": export_network_json(captures.flat, str(out / "network_calls.json")),
        }
        result = self.classifications.load(session_id)
        if result.tech_stack:
            paths["tech_stack_csv"] = export_tech_stack_csv(result.tech_stack, str(out / "tech_stack.csv"))
        if result.analytics_events:
            paths["analytics_csv"] = export_analytics_csv(result.analytics_events, str(out / "analytics_events.csv"))
        if result.summary_markdown:
            summary_path = out / "summary.md"
            summary_path.write_text(result.summary_markdown, encoding="utf-8")
            paths["summary_md"] = str(summary_path.absolute())
        return ServiceResult.success(paths)
