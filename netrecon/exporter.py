"""
Exporters
=========
CSV and JSON output for a finished session.

Every CSV field is quoted and embedded quotes are doubled, so values
containing commas, quotes or newlines survive a round trip through any
standard CSV reader.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from pathlib import Path
from typing import Iterable, List, Sequence

from .models import AnalyticsEvent, NetworkCall, TechStackItem
from .utils import compact_json

logger = logging.getLogger(__name__)

TECH_STACK_HEADERS = ["Technology", "Category", "Top Confidence", "Occurrences", "Evidence"]
ANALYTICS_HEADERS = ["Provider", "Event Name", "Page URL", "Request URL", "Notes", "Occurrences"]
NETWORK_HEADERS = [
    "Page URL", "Request URL", "Method", "Host", "Pathname",
    "Query Params", "Has POST Data", "POST Data Preview",
]
POST_PREVIEW_CHARS = 500


def to_csv_text(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue()


def tech_stack_rows(items: Iterable[TechStackItem]) -> List[List[object]]:
    return [
        [t.name, t.category, f"{t.confidence:.2f}", t.occurrences, " | ".join(t.evidence)]
        for t in items
    ]


def analytics_rows(events: Iterable[AnalyticsEvent]) -> List[List[object]]:
    return [
        [e.provider, e.event_name, e.page_url, e.request_url, e.notes, e.occurrences]
        for e in events
    ]


def network_rows(calls: Iterable[NetworkCall]) -> List[List[object]]:
    return [
        [
            c.page_url, c.url, c.method, c.host, c.pathname,
            compact_json(c.query_params) if c.query_params else "",
            "Yes" if c.has_post_data else "No",
            (c.post_data or "")[:POST_PREVIEW_CHARS],
        ]
        for c in calls
    ]


def _write(filepath: str, text: str) -> str:
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    logger.info(f"[EXPORT] Wrote {path}")
    return str(path.absolute())


def export_tech_stack_csv(items: Iterable[TechStackItem], filepath: str) -> str:
    return _write(filepath, to_csv_text(TECH_STACK_HEADERS, tech_stack_rows(items)))


def export_analytics_csv(events: Iterable[AnalyticsEvent], filepath: str) -> str:
    return _write(filepath, to_csv_text(ANALYTICS_HEADERS, analytics_rows(events)))


def export_network_csv(calls: Iterable[NetworkCall], filepath: str) -> str:
    return _write(filepath, to_csv_text(NETWORK_HEADERS, network_rows(calls)))


def export_network_json(calls: Iterable[NetworkCall], filepath: str) -> str:
    """Raw calls as a JSON array (full POST bodies, all headers)."""
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump([c.to_dict() for c in calls], f, indent=2, ensure_ascii=False)
    logger.info(f"[EXPORT] Wrote {path}")
    return str(path.absolute())
