"""
Recon Data Model
================
Dataclasses shared by the crawler, the capture store and the analysis
pipeline.

- ``CrawlTask``       one queued page visit
- ``VisitRecord``     what a visit produced (DOM snapshot, links, traffic)
- ``NetworkCall``     one intercepted outgoing request, immutable
- ``EmbeddingRecord`` one indexed vector for a request signature
- ``TechStackItem`` / ``AnalyticsEvent``  model classifications
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CrawlTask:
    """A page waiting in the BFS queue."""
    url: str
    depth: int = 0


@dataclass
class ScanReport:
    """What the page-interaction collaborator reports after a scan."""
    url: str = ""
    dom: str = ""
    links: List[str] = field(default_factory=list)
    clicks: int = 0


@dataclass
class VisitRecord:
    """Per-page result, keyed by normalized URL in the scheduler."""
    url: str
    depth: int = 0
    dom: str = ""
    links: List[str] = field(default_factory=list)
    network: List[Dict[str, Any]] = field(default_factory=list)
    clicks: int = 0
    status: str = "scanned"   # capturing | scanned | timeout | failed

    @classmethod
    def empty(cls, url: str, depth: int, status: str) -> "VisitRecord":
        return cls(url=url, depth=depth, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "depth": self.depth,
            "dom_chars": len(self.dom),
            "links": list(self.links),
            "network_events": len(self.network),
            "clicks": self.clicks,
            "status": self.status,
        }


@dataclass(frozen=True)
class NetworkCall:
    """
    One outgoing request captured while a page was current.

    Frozen: records are never mutated once captured.
    """
    session_id: str
    page_url: str
    url: str
    method: str = "GET"
    host: str = ""
    pathname: str = "/"
    query_params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    post_data: Optional[str] = None
    request_id: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def has_post_data(self) -> bool:
        return bool(self.post_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dict for JSON export."""
        return {
            "session_id": self.session_id,
            "page_url": self.page_url,
            "url": self.url,
            "method": self.method,
            "host": self.host,
            "pathname": self.pathname,
            "query_params": dict(self.query_params),
            "headers": dict(self.headers),
            "post_data": self.post_data,
            "request_id": self.request_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkCall":
        return cls(
            session_id=data.get("session_id", ""),
            page_url=data.get("page_url", ""),
            url=data.get("url", ""),
            method=data.get("method", "GET"),
            host=data.get("host", ""),
            pathname=data.get("pathname", "/"),
            query_params=dict(data.get("query_params") or {}),
            headers=dict(data.get("headers") or {}),
            post_data=data.get("post_data"),
            request_id=data.get("request_id", ""),
            timestamp=data.get("timestamp") or time.time(),
        )


@dataclass
class CaptureSet:
    """All calls of one session, flat and grouped by page URL."""
    flat: List[NetworkCall] = field(default_factory=list)
    by_page: Dict[str, List[NetworkCall]] = field(default_factory=dict)

    @classmethod
    def from_calls(cls, calls: List[NetworkCall]) -> "CaptureSet":
        by_page: Dict[str, List[NetworkCall]] = {}
        for call in calls:
            by_page.setdefault(call.page_url, []).append(call)
        return cls(flat=list(calls), by_page=by_page)


@dataclass
class EmbeddingRecord:
    """An indexed vector plus the request it was computed from."""
    session_id: str
    signature: str
    vector: List[float]
    call: NetworkCall
    id: Optional[int] = None


@dataclass
class ScoredCall:
    """A search hit."""
    call: NetworkCall
    score: float
    signature: str = ""


@dataclass
class TechStackItem:
    name: str
    category: str = "other"
    confidence: float = 0.0
    evidence: List[str] = field(default_factory=list)
    occurrences: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "occurrences": self.occurrences,
        }


@dataclass
class AnalyticsEvent:
    provider: str
    event_name: str
    page_url: str = ""
    request_url: str = ""
    notes: str = ""
    occurrences: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "event_name": self.event_name,
            "page_url": self.page_url,
            "request_url": self.request_url,
            "notes": self.notes,
            "occurrences": self.occurrences,
        }


@dataclass
class Classification:
    """Parsed model output for one batch (or a consolidated session)."""
    tech_stack: List[TechStackItem] = field(default_factory=list)
    analytics_events: List[AnalyticsEvent] = field(default_factory=list)
    summary_markdown: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary_markdown": self.summary_markdown,
            "tech_stack": [t.to_dict() for t in self.tech_stack],
            "analytics_events": [a.to_dict() for a in self.analytics_events],
        }
