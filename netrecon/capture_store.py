"""
Capture Store
=============
Append-only log of intercepted requests, scoped by session and grouped by
the page that was current when each request was sent.

Only ``Network.requestWillBeSent`` events are recorded.  Every event
produces exactly one row; duplicates are collapsed later, logically, by
the analysis stages.  A failed durable write keeps the call in an
in-memory fallback list so the crawl is never interrupted by storage.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qsl, urlparse

from .models import CaptureSet, NetworkCall
from .storage import ReconStore

logger = logging.getLogger(__name__)

REQUEST_SENT = "Network.requestWillBeSent"
DEFAULT_MAX_POST_DATA_CHARS = 100_000


def parse_request_event(
    session_id: str,
    page_url: str,
    raw_event: Dict[str, Any],
    max_post_data_chars: int = DEFAULT_MAX_POST_DATA_CHARS,
) -> Optional[NetworkCall]:
    """Turn a raw transport event into a ``NetworkCall`` (or None)."""
    if not isinstance(raw_event, dict) or raw_event.get("method") != REQUEST_SENT:
        return None
    params = raw_event.get("params") or {}
    request = params.get("request") or {}
    url = request.get("url")
    if not url:
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None

    post_data = request.get("postData")
    if post_data is not None and not isinstance(post_data, str):
        post_data = json.dumps(post_data, ensure_ascii=False)
    if post_data and len(post_data) > max_post_data_chars:
        post_data = post_data[:max_post_data_chars]

    headers = {str(k).lower(): str(v) for k, v in (request.get("headers") or {}).items()}

    return NetworkCall(
        session_id=session_id,
        page_url=page_url,
        url=url,
        method=(request.get("method") or "GET").upper(),
        host=parsed.hostname,
        pathname=parsed.path or "/",
        query_params=dict(parse_qsl(parsed.query, keep_blank_values=True)),
        headers=headers,
        post_data=post_data,
        request_id=str(params.get("requestId") or ""),
        timestamp=params.get("wallTime") or time.time(),
    )


class CaptureStore:
    """
    Session-scoped request log over a ``ReconStore``.

    Usage::

        captures = CaptureStore(store)
        captures.append(session_id, page_url, event)
        result = captures.get_all(session_id)
        result.flat, result.by_page
    """

    def __init__(self, store: ReconStore, max_post_data_chars: int = DEFAULT_MAX_POST_DATA_CHARS):
        self._store = store
        self._max_post = max_post_data_chars
        self._fallback: Dict[str, List[NetworkCall]] = {}
        self._warned: Set[str] = set()

    def append(self, session_id: str, page_url: str, raw_event: Dict[str, Any]) -> Optional[NetworkCall]:
        call = parse_request_event(session_id, page_url, raw_event, self._max_post)
        if call is None:
            return None
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    "INSERT INTO network_calls (session_id, page_url, url, method, host, "
                    "pathname, query_params, headers, post_data, request_id, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        call.session_id, call.page_url, call.url, call.method, call.host,
                        call.pathname,
                        json.dumps(call.query_params, ensure_ascii=False),
                        json.dumps(call.headers, ensure_ascii=False),
                        call.post_data, call.request_id, call.timestamp,
                    ),
                )
        except sqlite3.Error as e:
            if session_id not in self._warned:
                self._warned.add(session_id)
                logger.warning(f"[CAPTURE] Durable write failed, keeping calls in memory: {e}")
            self._fallback.setdefault(session_id, []).append(call)
        return call

    def get_all(self, session_id: str) -> CaptureSet:
        calls: List[NetworkCall] = []
        try:
            rows = self._store.execute(
                "SELECT * FROM network_calls WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
            calls.extend(_row_to_call(r) for r in rows)
        except sqlite3.Error as e:
            logger.error(f"[CAPTURE] Read failed for {session_id}: {e}")
        calls.extend(self._fallback.get(session_id, []))
        return CaptureSet.from_calls(calls)

    def count(self, session_id: str) -> int:
        return self._store.count("network_calls", session_id) + len(self._fallback.get(session_id, []))

    def clear(self, session_id: str) -> None:
        self._fallback.pop(session_id, None)
        self._warned.discard(session_id)
        with self._store.transaction() as conn:
            conn.execute("DELETE FROM network_calls WHERE session_id = ?", (session_id,))
        logger.debug(f"[CAPTURE] Cleared {session_id}")


def _row_to_call(row: sqlite3.Row) -> NetworkCall:
    return NetworkCall(
        session_id=row["session_id"],
        page_url=row["page_url"],
        url=row["url"],
        method=row["method"],
        host=row["host"],
        pathname=row["pathname"],
        query_params=json.loads(row["query_params"] or "{}"),
        headers=json.loads(row["headers"] or "{}"),
        post_data=row["post_data"],
        request_id=row["request_id"] or "",
        timestamp=row["timestamp"],
    )
