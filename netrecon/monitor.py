"""
Crawl Monitor
=============
Progress metrics for a crawl run.

Tracks:
- Pages scanned / timed out / failed
- Requests captured
- Queue size and peak
- Per-page timing (navigate, scan)

Async-safe: page records go through an asyncio.Lock.  ``record_request``
and ``record_enqueue`` are called from synchronous callbacks on the same
loop and do not await, so they update the counters directly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class PageTiming:
    """Timing breakdown for a single page visit."""
    url: str = ""
    navigate_ms: float = 0.0
    scan_ms: float = 0.0
    total_ms: float = 0.0
    link_count: int = 0
    status: str = "scanned"   # scanned | timeout | failed


@dataclass
class CrawlMetrics:
    """Snapshot of crawl metrics at a point in time."""
    pages_scanned: int = 0
    pages_timed_out: int = 0
    pages_failed: int = 0
    requests_captured: int = 0
    links_enqueued: int = 0
    queue_size: int = 0
    queue_peak: int = 0
    avg_page_ms: float = 0.0
    avg_navigate_ms: float = 0.0
    avg_scan_ms: float = 0.0
    elapsed_sec: float = 0.0
    stop_reason: str = ""

    @property
    def pages_visited(self) -> int:
        return self.pages_scanned + self.pages_timed_out + self.pages_failed


class CrawlMonitor:
    """
    Usage::

        monitor = CrawlMonitor()
        await monitor.start()
        await monitor.record_page(PageTiming(url=url, status="scanned"))
        monitor.record_request()
        metrics = await monitor.snapshot()
        await monitor.stop("queue empty")
    """

    def __init__(self, report_interval_s: float = 10.0):
        self._lock = asyncio.Lock()
        self._report_interval = report_interval_s
        self._start_time: float = 0.0

        self._pages_scanned = 0
        self._pages_timed_out = 0
        self._pages_failed = 0
        self._requests = 0
        self._links_enqueued = 0
        self._queue_size = 0
        self._queue_peak = 0

        # Keep the last 1000 for averages
        self._page_timings: deque = deque(maxlen=1000)

        self._progress_callback: Optional[Callable] = None
        self._reporter_task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_reason = ""

    def set_progress_callback(self, callback: Callable) -> None:
        """Set callback: callback(metrics: CrawlMetrics)"""
        self._progress_callback = callback

    async def start(self) -> None:
        self._start_time = time.monotonic()
        self._running = True
        if self._report_interval > 0:
            self._reporter_task = asyncio.create_task(self._reporter_loop())

    async def stop(self, reason: str = "completed") -> None:
        self._running = False
        self._stop_reason = reason
        if self._reporter_task:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                pass
            self._reporter_task = None

    async def record_page(self, timing: PageTiming) -> None:
        async with self._lock:
            if timing.status == "scanned":
                self._pages_scanned += 1
            elif timing.status == "timeout":
                self._pages_timed_out += 1
            else:
                self._pages_failed += 1
            self._page_timings.append(timing)

    def record_request(self, count: int = 1) -> None:
        self._requests += count

    def record_enqueue(self, count: int, queue_size: int) -> None:
        self._links_enqueued += count
        self._queue_size = queue_size
        self._queue_peak = max(self._queue_peak, queue_size)

    async def update_queue_size(self, size: int) -> None:
        async with self._lock:
            self._queue_size = size
            if size > self._queue_peak:
                self._queue_peak = size

    async def snapshot(self) -> CrawlMetrics:
        now = time.monotonic()
        async with self._lock:
            elapsed = now - self._start_time if self._start_time else 0.0
            totals = [t.total_ms for t in self._page_timings if t.total_ms > 0]
            navs = [t.navigate_ms for t in self._page_timings if t.navigate_ms > 0]
            scans = [t.scan_ms for t in self._page_timings if t.scan_ms > 0]
            return CrawlMetrics(
                pages_scanned=self._pages_scanned,
                pages_timed_out=self._pages_timed_out,
                pages_failed=self._pages_failed,
                requests_captured=self._requests,
                links_enqueued=self._links_enqueued,
                queue_size=self._queue_size,
                queue_peak=self._queue_peak,
                avg_page_ms=round(sum(totals) / len(totals), 1) if totals else 0.0,
                avg_navigate_ms=round(sum(navs) / len(navs), 1) if navs else 0.0,
                avg_scan_ms=round(sum(scans) / len(scans), 1) if scans else 0.0,
                elapsed_sec=round(elapsed, 2),
                stop_reason=self._stop_reason,
            )

    async def _reporter_loop(self) -> None:
        """Periodically log metrics."""
        while self._running:
            await asyncio.sleep(self._report_interval)
            if not self._running:
                break
            try:
                m = await self.snapshot()
                logger.info(
                    f"[MONITOR] "
                    f"scanned={m.pages_scanned} "
                    f"timeout={m.pages_timed_out} "
                    f"fail={m.pages_failed} "
                    f"queue={m.queue_size} "
                    f"requests={m.requests_captured} "
                    f"avg={m.avg_page_ms:.0f}ms "
                    f"elapsed={m.elapsed_sec:.0f}s"
                )
                if self._progress_callback:
                    self._progress_callback(m)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"[MONITOR] Reporter error: {e}")

    def format_summary(self, metrics: CrawlMetrics) -> str:
        lines = [
            "=" * 65,
            "  CRAWL SUMMARY",
            "=" * 65,
            f"  Pages scanned:       {metrics.pages_scanned}",
            f"  Pages timed out:     {metrics.pages_timed_out}",
            f"  Pages failed:        {metrics.pages_failed}",
            f"  Links enqueued:      {metrics.links_enqueued}",
            f"  Queue peak:          {metrics.queue_peak}",
            "-" * 65,
            f"  Requests captured:   {metrics.requests_captured:,}",
            "-" * 65,
            f"  Avg page time:       {metrics.avg_page_ms:.0f} ms",
            f"  Avg navigate time:   {metrics.avg_navigate_ms:.0f} ms",
            f"  Avg scan time:       {metrics.avg_scan_ms:.0f} ms",
            "-" * 65,
            f"  Elapsed time:        {metrics.elapsed_sec:.1f} s",
            f"  Stop reason:         {metrics.stop_reason}",
            "=" * 65,
        ]
        return "\n".join(lines)
