"""
Crawl Scheduler
===============
Stateful breadth-first crawl over a single browser tab.

Each iteration of the loop:

    check stop flag → check page limit → check queue
    → dequeue → skip visited / too deep → mark visited
    → navigate (raced against the page-load timeout) or scan in place
    → scan via the page-interaction collaborator (retry, then reinject)
    → enqueue new same-origin links, stable-sorted by depth
    → settle delay so trailing requests land in the capture store

Navigation, tab and collaborator errors never abort the crawl: the page
gets an empty record and the loop moves on.  Only an unexpected error in
the loop itself ends the run in ``FAILED``.

All crawl state lives on one ``CrawlSession`` owned by one scheduler and
is only touched from the event loop that runs ``start()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urljoin

from .capture_store import CaptureStore
from .models import CrawlTask, ScanReport, VisitRecord
from .monitor import CrawlMonitor, CrawlMetrics, PageTiming
from .session import SessionManager, new_session_id
from .transport import BrowserTransport, ScanCommand
from .utils import is_http_url, normalize_url, same_origin, same_page

logger = logging.getLogger(__name__)

MIN_DEPTH = 0
MAX_DEPTH = 5
DEFAULT_MAX_DEPTH = 2
DOM_SNAPSHOT_CHARS = 20_000


class CrawlState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETE = "complete"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class SchedulerConfig:
    max_depth: int = DEFAULT_MAX_DEPTH
    page_limit: Optional[int] = None
    page_load_timeout_s: float = 15.0
    scan_timeout_s: float = 60.0
    scan_retries: int = 5
    scan_retry_delay_s: float = 0.5
    in_place_delay_s: float = 0.5
    settle_delay_s: float = 0.4
    monitor_interval_s: float = 10.0


@dataclass
class CrawlSession:
    """Everything one crawl mutates."""
    session_id: str
    seed_url: str
    max_depth: int
    page_limit: Optional[int] = None
    state: CrawlState = CrawlState.IDLE
    active: bool = False
    queue: List[CrawlTask] = field(default_factory=list)
    visited: Set[str] = field(default_factory=set)
    discovered: Set[str] = field(default_factory=set)
    records: Dict[str, VisitRecord] = field(default_factory=dict)
    visit_order: List[str] = field(default_factory=list)
    current_task: Optional[CrawlTask] = None
    pending_navigation: bool = False
    stop_reason: str = ""
    error: Optional[str] = None


@dataclass
class CrawlSummary:
    session_id: str
    state: CrawlState
    stop_reason: str
    pages_visited: int
    records: Dict[str, VisitRecord]
    visit_order: List[str] = field(default_factory=list)
    metrics: Optional[CrawlMetrics] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "stop_reason": self.stop_reason,
            "pages_visited": self.pages_visited,
            "error": self.error,
            "pages": [r.to_dict() for r in self.records.values()],
        }


def clamp_depth(max_depth: Optional[int]) -> int:
    if max_depth is None or not (MIN_DEPTH <= max_depth <= MAX_DEPTH):
        return DEFAULT_MAX_DEPTH
    return max_depth


class CrawlScheduler:
    """
    Usage::

        scheduler = CrawlScheduler(transport, captures, sessions)
        summary = await scheduler.start("https://example.com/", max_depth=2)

        # From another task:
        scheduler.stop()
    """

    def __init__(
        self,
        transport: BrowserTransport,
        captures: CaptureStore,
        sessions: Optional[SessionManager] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.transport = transport
        self.captures = captures
        self.sessions = sessions
        self.config = config or SchedulerConfig()
        self.session: Optional[CrawlSession] = None
        self.monitor: Optional[CrawlMonitor] = None
        self._progress_callback: Optional[Callable] = None

    def set_progress_callback(self, callback: Callable) -> None:
        """Set callback: callback(status_message, visited_count, queued_count)"""
        self._progress_callback = callback

    @property
    def state(self) -> CrawlState:
        return self.session.state if self.session else CrawlState.IDLE

    def stop(self) -> None:
        """Request a stop; the loop observes it at the next iteration."""
        if self.session and self.session.active:
            self.session.active = False
            logger.info("[CRAWL] Stop requested")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self, seed_url: str, max_depth: Optional[int] = None,
                page_limit: Optional[int] = None) -> Optional[CrawlSession]:
        """Reset all crawl state and seed the queue (no I/O)."""
        if not is_http_url(seed_url):
            logger.warning(f"[CRAWL] Not an http(s) page, nothing to crawl: {seed_url!r}")
            return None

        depth = clamp_depth(self.config.max_depth if max_depth is None else max_depth)
        limit = self.config.page_limit if page_limit is None else page_limit
        if limit is not None and limit <= 0:
            limit = None

        session_id = self.sessions.rotate() if self.sessions else new_session_id()
        self.captures.clear(session_id)

        seed_url = seed_url.strip()
        seed = normalize_url(seed_url)
        self.session = CrawlSession(
            session_id=session_id,
            seed_url=seed,
            max_depth=depth,
            page_limit=limit,
            state=CrawlState.STARTING,
            active=True,
            queue=[CrawlTask(url=seed_url, depth=0)],
            discovered={seed},
        )
        return self.session

    async def start(self, seed_url: str, max_depth: Optional[int] = None,
                    page_limit: Optional[int] = None) -> Optional[CrawlSummary]:
        session = self.prepare(seed_url, max_depth, page_limit)
        if session is None:
            return None
        return await self.run()

    async def run(self) -> CrawlSummary:
        s = self.session
        if s is None:
            raise RuntimeError("prepare() must be called before run()")

        logger.info("=" * 65)
        logger.info("CRAWL STARTED")
        logger.info(f"Seed:      {s.seed_url}")
        logger.info(f"Session:   {s.session_id}")
        logger.info(f"Max depth: {s.max_depth}   Page limit: {s.page_limit or 'none'}")
        logger.info("=" * 65)

        self.monitor = CrawlMonitor(report_interval_s=self.config.monitor_interval_s)
        await self.monitor.start()
        self.transport.add_network_listener(self._on_network_event)
        s.state = CrawlState.RUNNING
        try:
            while await self._process_next():
                pass
        except Exception as e:
            logger.error(f"[CRAWL] Crawl loop failed: {e}", exc_info=True)
            s.error = str(e)
            self._finish(CrawlState.FAILED, "error")
        finally:
            self.transport.remove_network_listener(self._on_network_event)
            await self.monitor.stop(s.stop_reason)

        metrics = await self.monitor.snapshot()
        logger.info(f"[CRAWL] {s.state.value}: {len(s.visited)} pages visited ({s.stop_reason})")
        for line in self.monitor.format_summary(metrics).splitlines():
            logger.info(line)
        return CrawlSummary(
            session_id=s.session_id,
            state=s.state,
            stop_reason=s.stop_reason,
            pages_visited=len(s.visited),
            records=dict(s.records),
            visit_order=list(s.visit_order),
            metrics=metrics,
            error=s.error,
        )

    def _finish(self, state: CrawlState, reason: str) -> None:
        s = self.session
        s.state = state
        s.stop_reason = reason
        s.active = False
        s.current_task = None
        s.pending_navigation = False
        self._notify(f"Crawl {state.value}: {reason}")

    def _notify(self, message: str) -> None:
        if not self._progress_callback or not self.session:
            return
        try:
            self._progress_callback(message, len(self.session.visited), len(self.session.queue))
        except Exception as e:
            logger.debug(f"[CRAWL] Progress callback error: {e}")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _process_next(self) -> bool:
        """One scheduler step; False once the crawl reached a final state."""
        s = self.session

        if not s.active:
            self._finish(CrawlState.STOPPED, "stopped")
            return False
        if s.page_limit is not None and len(s.visited) >= s.page_limit:
            self._finish(CrawlState.COMPLETE, "page limit")
            return False
        if not s.queue:
            self._finish(CrawlState.COMPLETE, "queue empty")
            return False

        task = s.queue.pop(0)
        key = normalize_url(task.url)
        if key in s.visited:
            return True
        if task.depth > s.max_depth:
            return True

        s.visited.add(key)
        s.visit_order.append(key)
        s.current_task = task
        self._notify(f"Visiting {task.url} (depth {task.depth})")
        await self.monitor.update_queue_size(len(s.queue))

        await self._visit(task, key)
        s.current_task = None
        return True

    async def _visit(self, task: CrawlTask, key: str) -> None:
        timing = PageTiming(url=task.url)
        started = time.monotonic()

        try:
            current = await self.transport.current_url()
        except Exception as e:
            logger.warning(f"[CRAWL] Tab lookup failed for {task.url}: {e}")
            await self._record_empty(task, key, "failed", timing)
            return

        if current and normalize_url(current) == key:
            logger.debug(f"[CRAWL] Already on {task.url}, scanning in place")
            await asyncio.sleep(self.config.in_place_delay_s)
        else:
            nav_started = time.monotonic()
            status = await self._navigate_with_timeout(task)
            timing.navigate_ms = (time.monotonic() - nav_started) * 1000
            if status != "loaded":
                await self._record_empty(task, key, status, timing)
                return

        scan_started = time.monotonic()
        report = await self._scan(task)
        timing.scan_ms = (time.monotonic() - scan_started) * 1000
        if report is None:
            await self._record_empty(task, key, "failed", timing)
            return

        self._handle_report(task, key, report)
        timing.link_count = len(report.links)
        timing.total_ms = (time.monotonic() - started) * 1000
        await self.monitor.record_page(timing)

        await asyncio.sleep(self.config.settle_delay_s)

    async def _record_empty(self, task: CrawlTask, key: str, status: str, timing: PageTiming) -> None:
        record = self.session.records.setdefault(key, VisitRecord.empty(task.url, task.depth, status))
        record.depth = task.depth
        record.status = status
        timing.status = status
        await self.monitor.record_page(timing)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def _navigate_with_timeout(self, task: CrawlTask) -> str:
        """Race navigation against the load timeout: loaded | timeout | failed."""
        s = self.session
        s.pending_navigation = True
        nav = asyncio.ensure_future(self.transport.navigate(task.url))
        timer = asyncio.ensure_future(asyncio.sleep(self.config.page_load_timeout_s))
        try:
            done, pending = await asyncio.wait({nav, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (nav, timer):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(nav, timer, return_exceptions=True)
            s.pending_navigation = False

        if nav not in done:
            logger.warning(
                f"[CRAWL] Load timeout after {self.config.page_load_timeout_s:.0f}s: {task.url}"
            )
            return "timeout"

        try:
            final_url = nav.result()
        except Exception as e:
            logger.warning(f"[CRAWL] Navigation failed for {task.url}: {e}")
            return "failed"

        if final_url and normalize_url(final_url) != normalize_url(task.url):
            if same_page(final_url, task.url):
                logger.debug(f"[CRAWL] Same page after redirect: {final_url}")
            elif same_origin(final_url, s.seed_url):
                logger.info(f"[CRAWL] Redirected {task.url} → {final_url}")
            else:
                logger.warning(f"[CRAWL] Left the crawl origin ({final_url}), abandoning {task.url}")
                return "failed"
        return "loaded"

    # ------------------------------------------------------------------
    # Scan + link handling
    # ------------------------------------------------------------------

    async def _send_scan(self, command: ScanCommand) -> ScanReport:
        return await asyncio.wait_for(
            self.transport.send_interaction_command(command),
            timeout=self.config.scan_timeout_s,
        )

    async def _scan(self, task: CrawlTask) -> Optional[ScanReport]:
        command = ScanCommand(depth=task.depth)
        retries = self.config.scan_retries

        for attempt in range(retries + 1):
            try:
                return await self._send_scan(command)
            except Exception as e:
                if attempt < retries:
                    logger.debug(f"[CRAWL] Scan attempt {attempt + 1}/{retries} failed: {e}")
                    await asyncio.sleep(self.config.scan_retry_delay_s)
                else:
                    logger.warning(f"[CRAWL] Interaction script unreachable after {retries} retries: {e}")

        try:
            await self.transport.reinject()
            await asyncio.sleep(self.config.scan_retry_delay_s)
            return await self._send_scan(command)
        except Exception as e:
            logger.warning(f"[CRAWL] Scan failed after reinjection on {task.url}: {e}")
            return None

    def _handle_report(self, task: CrawlTask, key: str, report: ScanReport) -> None:
        s = self.session
        if report.url and not same_origin(report.url, s.seed_url):
            logger.warning(f"[CRAWL] Ignoring scan report from another origin: {report.url}")
            s.records.setdefault(key, VisitRecord.empty(task.url, task.depth, "failed"))
            return

        record = s.records.get(key) or VisitRecord(url=task.url, depth=task.depth)
        record.dom = (report.dom or "")[:DOM_SNAPSHOT_CHARS]
        record.links = list(report.links)
        record.clicks = report.clicks
        record.status = "scanned"
        s.records[key] = record

        added = self.accept_links(task, report.links, base_url=report.url or task.url)
        self._notify(f"Scanned {task.url}: {len(report.links)} links, {len(added)} new")

    def accept_links(self, task: CrawlTask, links: List[str], base_url: Optional[str] = None) -> List[CrawlTask]:
        """Enqueue unseen same-origin links one level below ``task``."""
        s = self.session
        if task.depth >= s.max_depth:
            return []

        added: List[CrawlTask] = []
        for link in links:
            absolute = urljoin(base_url or task.url, link) if link else link
            if not is_http_url(absolute) or not same_origin(absolute, s.seed_url):
                continue
            norm = normalize_url(absolute)
            if norm in s.discovered or norm in s.visited:
                continue
            s.discovered.add(norm)
            added.append(CrawlTask(url=absolute, depth=task.depth + 1))

        if added:
            s.queue.extend(added)
            s.queue.sort(key=lambda t: t.depth)
            if self.monitor:
                self.monitor.record_enqueue(len(added), len(s.queue))
        return added

    # ------------------------------------------------------------------
    # Network events
    # ------------------------------------------------------------------

    def _on_network_event(self, raw_event: Dict[str, Any], page_url: str) -> None:
        s = self.session
        if s is None or not s.active:
            return
        page_url = page_url or (s.current_task.url if s.current_task else s.seed_url)
        call = self.captures.append(s.session_id, page_url, raw_event)
        if call is None:
            return
        if self.monitor:
            self.monitor.record_request()
        key = normalize_url(page_url)
        record = s.records.get(key)
        if record is None:
            record = VisitRecord(url=page_url, status="capturing")
            s.records[key] = record
        record.network.append(raw_event)
