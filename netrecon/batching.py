"""
Batch Payload Builder
=====================
Splits an unbounded list of captured requests into JSON payloads that
each fit a token budget for one model call.

Pipeline:
    1. drop static assets (images, fonts, stylesheets, scripts, media)
    2. slim every call: cap POST bodies, keep only essential headers
    3. greedy partition under ``batch_token_ceiling`` (prompt included)
    4. safety valve: any payload above ``hard_token_ceiling`` is re-trimmed
       to ``trim_token_budget``, analytics calls first

Token counts are estimated as ``ceil(chars / 4)`` of the serialized JSON.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import NetworkCall
from .patterns import ANALYTICS, CDN, TECH_STACK, PatternTable, indexing_table, is_analytics_host, is_static_asset
from .utils import compact_json, estimate_tokens

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[truncated]"
ESSENTIAL_HEADERS = ("user-agent", "referer", "content-type", "authorization", "x-forwarded-for")

# Room for '{"batch_index": N, "total_batches": N, "requests": [' + ']}'
_WRAPPER_CHARS = 96
_ITEM_SEPARATOR_CHARS = 2


@dataclass
class BatchConfig:
    batch_token_ceiling: int = 100_000
    hard_token_ceiling: int = 700_000
    trim_token_budget: int = 50_000
    prompt_overhead_tokens: int = 3_000
    post_cap: int = 5_000
    analytics_post_cap: int = 20_000
    trim_post_chars: int = 200
    trim_query_chars: int = 200
    trim_query_keys: int = 50


def truncate_post(post_data: Optional[str], cap: int) -> Optional[str]:
    if post_data and len(post_data) > cap:
        return post_data[:cap] + TRUNCATION_MARKER
    return post_data


def slim_call(call: NetworkCall, config: BatchConfig) -> Dict[str, Any]:
    """Model-facing view of one call, with the truncation policy applied."""
    cap = config.analytics_post_cap if is_analytics_host(call.host) else config.post_cap
    return {
        "pageUrl": call.page_url,
        "requestId": call.request_id,
        "host": call.host,
        "pathname": call.pathname,
        "method": call.method,
        "queryParams": dict(call.query_params),
        "headerValues": {k: call.headers[k] for k in ESSENTIAL_HEADERS if call.headers.get(k)},
        "hasBody": call.has_post_data,
        "postData": truncate_post(call.post_data, cap),
    }


def aggressive_trim(item: Dict[str, Any], config: BatchConfig) -> Dict[str, Any]:
    trimmed = dict(item)
    trimmed["postData"] = truncate_post(item.get("postData"), config.trim_post_chars)
    trimmed["headerValues"] = {}
    query = list((item.get("queryParams") or {}).items())[:config.trim_query_keys]
    trimmed["queryParams"] = {
        k: (v[:config.trim_query_chars] if isinstance(v, str) else v) for k, v in query
    }
    return trimmed


def item_chars(item: Dict[str, Any]) -> int:
    return len(json.dumps(item, ensure_ascii=False)) + _ITEM_SEPARATOR_CHARS


def make_payload(items: List[Dict[str, Any]], batch_index: int, total_batches: int) -> Dict[str, Any]:
    return {"batch_index": batch_index, "total_batches": total_batches, "requests": items}


def payload_tokens(payload: Dict[str, Any], config: BatchConfig) -> int:
    return estimate_tokens(json.dumps(payload, ensure_ascii=False)) + config.prompt_overhead_tokens


class BatchPayloadBuilder:
    """
    Usage::

        builder = BatchPayloadBuilder(BatchConfig(batch_token_ceiling=50_000))
        payloads = builder.build(captures.flat)
        for payload in payloads:
            ...
    """

    def __init__(self, config: Optional[BatchConfig] = None, patterns: Optional[PatternTable] = None):
        self.config = config or BatchConfig()
        self.patterns = patterns or indexing_table()

    # ------------------------------------------------------------------
    # Pre-filter + slimming
    # ------------------------------------------------------------------

    def prefilter(self, calls: Iterable[NetworkCall]) -> List[NetworkCall]:
        kept = [c for c in calls if not is_static_asset(c.pathname)]
        return kept

    def slim(self, calls: Iterable[NetworkCall]) -> List[Dict[str, Any]]:
        return [slim_call(c, self.config) for c in calls]

    # ------------------------------------------------------------------
    # Partitioning
    # ------------------------------------------------------------------

    def partition(self, items: Sequence[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
        """Greedy split so each batch's estimate stays under the ceiling."""
        ceiling_chars = max(0, self.config.batch_token_ceiling - self.config.prompt_overhead_tokens) * 4
        batches: List[List[Dict[str, Any]]] = []
        current: List[Dict[str, Any]] = []
        current_chars = _WRAPPER_CHARS

        for item in items:
            size = item_chars(item)
            if current and current_chars + size > ceiling_chars:
                batches.append(current)
                current = []
                current_chars = _WRAPPER_CHARS
            current.append(item)
            current_chars += size

        if current:
            batches.append(current)
        return batches

    def _priority(self, item: Dict[str, Any]) -> int:
        category = self.patterns.classify(item.get("host", ""))
        if category == ANALYTICS:
            return 0
        if category in (TECH_STACK, CDN):
            return 1
        return 2

    def enforce_hard_ceiling(self, items: List[Dict[str, Any]], batch_index: int, total: int) -> List[Dict[str, Any]]:
        """Re-trim a batch whose payload exceeds the hard ceiling."""
        payload = make_payload(items, batch_index, total)
        tokens = payload_tokens(payload, self.config)
        if tokens <= self.config.hard_token_ceiling:
            return items

        logger.warning(
            f"[BATCH] Batch {batch_index + 1}/{total} is ~{tokens:,} tokens "
            f"(hard ceiling {self.config.hard_token_ceiling:,}); trimming"
        )
        trimmed = [aggressive_trim(i, self.config) for i in items]
        trimmed.sort(key=self._priority)

        budget_chars = max(0, self.config.trim_token_budget - self.config.prompt_overhead_tokens) * 4
        kept: List[Dict[str, Any]] = []
        used = _WRAPPER_CHARS
        for item in trimmed:
            size = item_chars(item)
            if kept and used + size > budget_chars:
                break
            kept.append(item)
            used += size
        if len(kept) < len(items):
            logger.warning(f"[BATCH] Dropped {len(items) - len(kept)} lower-priority calls from batch {batch_index + 1}")
        return kept

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def build_from_items(self, items: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        groups = self.partition(items)
        total = len(groups)
        payloads = []
        for idx, group in enumerate(groups):
            group = self.enforce_hard_ceiling(group, idx, total)
            payloads.append(make_payload(group, idx, total))
        logger.info(f"[BATCH] {len(items)} calls → {total} batch(es)")
        return payloads

    def build(self, calls: Sequence[NetworkCall]) -> List[Dict[str, Any]]:
        """Full-capture payloads: prefilter, slim, partition."""
        kept = self.prefilter(calls)
        dropped = len(calls) - len(kept)
        if dropped:
            logger.info(f"[BATCH] Skipped {dropped} static-asset calls")
        return self.build_from_items(self.slim(kept))

    def build_rag(self, analytics: Sequence[NetworkCall], tech_stack: Sequence[NetworkCall],
                  all_relevant: Sequence[NetworkCall]) -> List[Dict[str, Any]]:
        """Payloads from retrieved calls, deduped before partitioning."""
        seen = set()
        unique: List[NetworkCall] = []
        for call in [*analytics, *tech_stack, *all_relevant]:
            body = (call.post_data or "")[:200] if is_analytics_host(call.host) else ""
            key = f"{call.host}{call.pathname}{compact_json(call.query_params)}{body}"
            if key in seen:
                continue
            seen.add(key)
            unique.append(call)
        return self.build_from_items(self.slim(unique))
