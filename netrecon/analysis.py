"""
Analysis Runner
===============
Sends payload batches to the completion model one at a time, persists
each batch's classifications as soon as it succeeds, then consolidates
everything stored for the session.

- Response parsing strips Markdown fences and validates the object with
  pydantic; malformed items are dropped, a non-object reply fails only
  that batch.
- Transport errors are retried with exponential backoff (longer for
  network-class errors).  Parse errors are not retried.
- A cooperative ``asyncio.Event`` is checked before every batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ModelResponseError
from .models import AnalyticsEvent, Classification, TechStackItem
from .storage import ReconStore
from .utils import RetryHandler

logger = logging.getLogger(__name__)

CompleteFn = Callable[[str, Any], Awaitable[str]]

NETWORK_ERRORS: Tuple[type, ...] = (
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
    ConnectionError,
)

SYSTEM_PROMPT = """
You are CAST, a web reconnaissance analyst.

You will receive JSON describing network requests captured while crawling a
single website. Each request includes host, pathname, method, requestId,
pageUrl, query parameters, essential header values, a hasBody flag and the
(possibly truncated) POST body.

From ONLY that evidence, infer:

1) The web technology stack: frameworks, hosting/CDN, CMS or content
   platforms, and other notable infrastructure or APIs.

2) Analytics and tracking tools and the events they send. For GA4, read
   "en" (event name), "ep.*" (event parameters) and "_p" (page). GA4 often
   batches several events in one POST body separated by spaces or newlines;
   list each "en=..." segment as its own event.

Respond with valid JSON ONLY, matching exactly:

{
  "summary_markdown": string,
  "tech_stack": [
    {"name": string, "category": "framework" | "cdn" | "cms" | "analytics" | "infrastructure" | "other",
     "confidence": number between 0.0 and 1.0, "evidence": [string]}
  ],
  "analytics_events": [
    {"provider": string, "event_name": string | null, "page_url": string | null,
     "request_url": string | null, "notes": string | null}
  ]
}

Rules:
- Do NOT report technologies you cannot tie to evidence.
- Evidence should quote hostnames, URL paths, or header/query keys and values.
- List every distinct event; do not group similar events.
- Return ONLY a single JSON object, no prose before or after.
""".strip()


# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------

class _TechStackSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    category: str = "other"
    confidence: float = 0.0
    evidence: List[str] = []

    @field_validator("name")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty name")
        return v

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> str:
        return str(v).strip().lower() if v else "other"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(1.0, max(0.0, value))

    @field_validator("evidence", mode="before")
    @classmethod
    def _evidence(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(e) for e in v if e is not None]


class _AnalyticsEventSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    provider: str
    event_name: Optional[str] = None
    page_url: Optional[str] = None
    request_url: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty provider")
        return v


class _ReconResultSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary_markdown: str = ""
    tech_stack: List[Dict[str, Any]] = []
    analytics_events: List[Dict[str, Any]] = []

    @field_validator("summary_markdown", mode="before")
    @classmethod
    def _summary(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @field_validator("tech_stack", "analytics_events", mode="before")
    @classmethod
    def _list_of_objects(cls, v: Any) -> List[Dict[str, Any]]:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]


_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_model_response(text: str) -> Classification:
    """Parse and validate one completion reply."""
    cleaned = strip_code_fences(text or "")
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ModelResponseError(f"Failed to parse model JSON ({e.msg})", cleaned[:200]) from e
    if not isinstance(raw, dict):
        raise ModelResponseError("Model JSON is not an object", cleaned[:200])

    try:
        envelope = _ReconResultSchema.model_validate(raw)
    except ValidationError as e:
        raise ModelResponseError("Model JSON has the wrong shape", cleaned[:200]) from e

    result = Classification(summary_markdown=envelope.summary_markdown)
    dropped = 0
    for item in envelope.tech_stack:
        try:
            t = _TechStackSchema.model_validate(item)
        except ValidationError:
            dropped += 1
            continue
        result.tech_stack.append(TechStackItem(
            name=t.name, category=t.category, confidence=t.confidence, evidence=t.evidence,
        ))
    for item in envelope.analytics_events:
        try:
            a = _AnalyticsEventSchema.model_validate(item)
        except ValidationError:
            dropped += 1
            continue
        result.analytics_events.append(AnalyticsEvent(
            provider=a.provider,
            event_name=a.event_name or "",
            page_url=a.page_url or "",
            request_url=a.request_url or "",
            notes=a.notes or "",
        ))
    if dropped:
        logger.warning(f"[ANALYSIS] Dropped {dropped} malformed item(s) from model response")
    return result


# ---------------------------------------------------------------------------
# Persistence + consolidation
# ---------------------------------------------------------------------------

class ClassificationStore:
    """Per-session classification rows in the ``classifications`` table."""

    def __init__(self, store: ReconStore):
        self._store = store

    @staticmethod
    def _insert(conn: sqlite3.Connection, session_id: str, batch_index: int, result: Classification) -> None:
        now = time.time()
        rows = [("tech", t.to_dict()) for t in result.tech_stack]
        rows += [("analytics", a.to_dict()) for a in result.analytics_events]
        if result.summary_markdown:
            rows.append(("summary", {"text": result.summary_markdown}))
        conn.executemany(
            "INSERT INTO classifications (session_id, kind, batch_index, payload, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [(session_id, kind, batch_index, json.dumps(p, ensure_ascii=False), now) for kind, p in rows],
        )

    def save_batch(self, session_id: str, batch_index: int, result: Classification) -> None:
        with self._store.transaction() as conn:
            self._insert(conn, session_id, batch_index, result)

    def load(self, session_id: str) -> Classification:
        rows = self._store.execute(
            "SELECT kind, payload FROM classifications WHERE session_id = ? ORDER BY id",
            (session_id,),
        ).fetchall()
        result = Classification()
        summaries = []
        for row in rows:
            data = json.loads(row["payload"])
            if row["kind"] == "tech":
                result.tech_stack.append(TechStackItem(**data))
            elif row["kind"] == "analytics":
                result.analytics_events.append(AnalyticsEvent(**data))
            elif row["kind"] == "summary" and data.get("text"):
                summaries.append(data["text"])
        result.summary_markdown = "\n\n".join(summaries)
        return result

    def clear(self, session_id: str) -> None:
        with self._store.transaction() as conn:
            conn.execute("DELETE FROM classifications WHERE session_id = ?", (session_id,))

    def replace(self, session_id: str, result: Classification) -> None:
        """Swap the session's rows for ``result`` in one transaction."""
        with self._store.transaction() as conn:
            conn.execute("DELETE FROM classifications WHERE session_id = ?", (session_id,))
            self._insert(conn, session_id, -1, result)


def merge_classifications(result: Classification) -> Classification:
    """Collapse tech items and analytics events by their natural keys."""
    tech: Dict[Tuple[str, str], TechStackItem] = {}
    for item in result.tech_stack:
        key = (item.name.strip().lower(), item.category.strip().lower())
        existing = tech.get(key)
        if existing is None:
            tech[key] = TechStackItem(
                name=item.name, category=item.category, confidence=item.confidence,
                evidence=list(dict.fromkeys(item.evidence)), occurrences=item.occurrences,
            )
            continue
        existing.confidence = max(existing.confidence, item.confidence)
        existing.occurrences += item.occurrences
        for ev in item.evidence:
            if ev not in existing.evidence:
                existing.evidence.append(ev)

    events: Dict[Tuple[str, str, str], AnalyticsEvent] = {}
    for ev in result.analytics_events:
        key = (ev.provider.strip().lower(), ev.event_name.strip().lower(), ev.request_url.strip())
        existing = events.get(key)
        if existing is None:
            events[key] = AnalyticsEvent(
                provider=ev.provider, event_name=ev.event_name, page_url=ev.page_url,
                request_url=ev.request_url, notes=ev.notes, occurrences=ev.occurrences,
            )
            continue
        existing.occurrences += ev.occurrences
        if not existing.page_url and ev.page_url:
            existing.page_url = ev.page_url
        if not existing.notes and ev.notes:
            existing.notes = ev.notes

    merged_tech = sorted(tech.values(), key=lambda t: (-t.confidence, t.name.lower()))
    return Classification(
        tech_stack=merged_tech,
        analytics_events=list(events.values()),
        summary_markdown=result.summary_markdown,
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

@dataclass
class AnalysisConfig:
    max_attempts: int = 3
    base_delay_s: float = 2.0
    network_delay_s: float = 5.0
    max_delay_s: float = 60.0
    system_prompt: str = SYSTEM_PROMPT


@dataclass
class BatchFailure:
    batch_index: int
    error: str


@dataclass
class AnalysisReport:
    total_batches: int = 0
    completed_batches: int = 0
    cancelled: bool = False
    failures: List[BatchFailure] = field(default_factory=list)
    result: Classification = field(default_factory=Classification)

    @property
    def ok(self) -> bool:
        return self.completed_batches > 0 or self.total_batches == 0


class AnalysisRunner:
    """
    Usage::

        runner = AnalysisRunner(store, client.complete)
        report = await runner.run(session_id, payloads)
        report.result.tech_stack
    """

    def __init__(
        self,
        store: ReconStore,
        complete_fn: CompleteFn,
        config: Optional[AnalysisConfig] = None,
        retry: Optional[RetryHandler] = None,
    ):
        self.config = config or AnalysisConfig()
        self.classifications = ClassificationStore(store)
        self._complete = complete_fn
        self._retry = retry or RetryHandler(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.base_delay_s,
            network_base_delay=self.config.network_delay_s,
            max_delay=self.config.max_delay_s,
            network_errors=NETWORK_ERRORS,
            fatal_errors=(ModelResponseError,),
        )

    async def _analyze_batch(self, payload: Dict[str, Any]) -> Classification:
        text = await self._complete(self.config.system_prompt, payload)
        return parse_model_response(text)

    async def run(
        self,
        session_id: str,
        payloads: Sequence[Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> AnalysisReport:
        report = AnalysisReport(total_batches=len(payloads))
        try:
            self.classifications.clear(session_id)
        except sqlite3.Error as e:
            logger.error(f"[ANALYSIS] Could not reset stored results for {session_id}: {e}")
            report.failures.append(BatchFailure(-1, f"reset failed: {e}"))
            return report

        collected = Classification()
        for idx, payload in enumerate(payloads):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(f"[ANALYSIS] Cancelled after {report.completed_batches}/{len(payloads)} batches")
                break

            logger.info(f"[ANALYSIS] Batch {idx + 1}/{len(payloads)} ({len(payload.get('requests', []))} calls)")
            try:
                batch_result = await self._retry.execute(self._analyze_batch, payload)
            except ModelResponseError as e:
                logger.error(f"[ANALYSIS] Batch {idx + 1} returned unparseable JSON: {e}")
                report.failures.append(BatchFailure(idx, str(e)))
                continue
            except Exception as e:
                logger.error(f"[ANALYSIS] Batch {idx + 1} failed after retries: {e}")
                report.failures.append(BatchFailure(idx, str(e)))
                continue

            try:
                self.classifications.save_batch(session_id, idx, batch_result)
            except sqlite3.Error as e:
                logger.error(f"[ANALYSIS] Could not persist batch {idx + 1}: {e}")
                report.failures.append(BatchFailure(idx, f"persist failed: {e}"))
                continue
            collected.tech_stack.extend(batch_result.tech_stack)
            collected.analytics_events.extend(batch_result.analytics_events)
            if batch_result.summary_markdown:
                collected.summary_markdown = "\n\n".join(
                    s for s in (collected.summary_markdown, batch_result.summary_markdown) if s
                )
            report.completed_batches += 1
            if progress:
                progress(report.completed_batches, len(payloads))

        try:
            report.result = self.consolidate(session_id)
        except sqlite3.Error as e:
            logger.error(f"[ANALYSIS] Consolidation could not be stored, keeping per-batch rows: {e}")
            report.result = merge_classifications(collected)
        return report

    def consolidate(self, session_id: str) -> Classification:
        merged = merge_classifications(self.classifications.load(session_id))
        self.classifications.replace(session_id, merged)
        logger.info(
            f"[ANALYSIS] Consolidated: {len(merged.tech_stack)} technologies, "
            f"{len(merged.analytics_events)} analytics events"
        )
        return merged
