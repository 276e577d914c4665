"""
Tests for the crawl scheduler, driven by an in-memory fake transport.

Covers:
  1. Seed scenario and BFS depth ordering
  2. Termination: page limit, external stop, empty queue
  3. Soft failures: load timeout, navigation error, scan retry/reinject
  4. Redirect tolerance and capture attribution
"""

import asyncio

from conftest import FakeTransport, request_event

from netrecon.capture_store import CaptureStore
from netrecon.models import CrawlTask
from netrecon.scheduler import CrawlScheduler, CrawlState, clamp_depth
from netrecon.session import SessionManager
from netrecon.utils import normalize_url

SEED = "https://example.com/"


def _scheduler(store, transport, config):
    return CrawlScheduler(transport, CaptureStore(store), SessionManager(store), config)


# ====================================================================
# 1. Seed scenario + ordering
# ====================================================================

class TestSeedScenario:
    """Seed at depth 0, same-origin links queued one level below."""

    def test_links_enqueued_at_depth_one(self, store, fast_config):
        site = {SEED: ["/a", "/b", "https://other.com/x"]}
        transport = FakeTransport(site)
        scheduler = _scheduler(store, transport, fast_config)

        session = scheduler.prepare(SEED, max_depth=1)
        assert session.queue[0].depth == 0
        added = scheduler.accept_links(CrawlTask(SEED, 0), site[SEED], base_url=SEED)

        assert [(t.url, t.depth) for t in added] == [
            ("https://example.com/a", 1),
            ("https://example.com/b", 1),
        ]
        assert "https://other.com/x" not in session.discovered

    def test_full_run_never_visits_other_origin(self, store, fast_config):
        site = {SEED: ["/a", "/b", "https://other.com/x"]}
        transport = FakeTransport(site)
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert summary.state == CrawlState.COMPLETE
        assert summary.visit_order == [SEED, "https://example.com/a", "https://example.com/b"]
        assert all("other.com" not in url for url in transport.navigations)

    def test_bfs_depth_order(self, store, fast_config):
        site = {
            SEED: ["/a", "/b"],
            "https://example.com/a": ["/a1", "/shared"],
            "https://example.com/b": ["/b1", "/shared"],
        }
        transport = FakeTransport(site)
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=2))

        assert summary.visit_order == [
            SEED,
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/a1",
            "https://example.com/shared",
            "https://example.com/b1",
        ]
        depths = [summary.records[u].depth for u in summary.visit_order]
        assert depths == sorted(depths)

    def test_no_duplicate_visits(self, store, fast_config):
        site = {
            SEED: ["/a", "/a#frag", "/a?", SEED],
            "https://example.com/a": [SEED, "/a"],
        }
        transport = FakeTransport(site)
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=3))

        assert len(summary.visit_order) == len(set(summary.visit_order)) == 2

    def test_max_depth_zero_only_visits_seed(self, store, fast_config):
        transport = FakeTransport({SEED: ["/a"]})
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=0))

        assert summary.visit_order == [SEED]

    def test_bare_seed_and_default_port_visited_once(self, store, fast_config):
        bare = "https://example.com"
        transport = FakeTransport({bare: ["/", "https://example.com:443/a", "/a"]})
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(bare, max_depth=1))

        assert summary.visit_order == [SEED, "https://example.com/a"]
        assert transport.navigations == [bare, "https://example.com:443/a"]

    def test_navigates_to_raw_href(self, store, fast_config):
        raw = "https://example.com/search?flag&q=a%2Fb"
        transport = FakeTransport({SEED: ["/search?flag&q=a%2Fb"]})
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert transport.navigations == [SEED, raw]
        assert summary.visit_order[1] == normalize_url(raw)

    def test_non_http_seed_is_a_no_op(self, store, fast_config):
        transport = FakeTransport({})
        scheduler = _scheduler(store, transport, fast_config)

        assert asyncio.run(scheduler.start("chrome://extensions")) is None
        assert scheduler.state == CrawlState.IDLE
        assert transport.navigations == []

    def test_depth_clamp(self):
        assert clamp_depth(3) == 3
        assert clamp_depth(0) == 0
        assert clamp_depth(9) == 2
        assert clamp_depth(-1) == 2
        assert clamp_depth(None) == 2


# ====================================================================
# 2. Termination
# ====================================================================

class TestTermination:

    def test_page_limit_exact(self, store, fast_config):
        site = {SEED: [f"/p{i}" for i in range(10)]}
        transport = FakeTransport(site)
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1, page_limit=3))

        assert summary.pages_visited == 3
        assert summary.state == CrawlState.COMPLETE
        assert summary.stop_reason == "page limit"

    def test_external_stop(self, store, fast_config):
        site = {SEED: [f"/p{i}" for i in range(10)]}
        transport = FakeTransport(site)
        scheduler = _scheduler(store, transport, fast_config)

        def on_progress(message, visited, queued):
            if message.startswith("Scanned") and visited >= 2:
                scheduler.stop()

        scheduler.set_progress_callback(on_progress)
        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert summary.state == CrawlState.STOPPED
        assert summary.pages_visited == 2

    def test_queue_empty_completes(self, store, fast_config):
        transport = FakeTransport({SEED: []})
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED))

        assert summary.state == CrawlState.COMPLETE
        assert summary.stop_reason == "queue empty"

    def test_restart_resets_state(self, store, fast_config):
        transport = FakeTransport({SEED: ["/a"]})
        scheduler = _scheduler(store, transport, fast_config)

        first = asyncio.run(scheduler.start(SEED, max_depth=1))
        second = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert first.session_id != second.session_id
        assert second.visit_order == [SEED, "https://example.com/a"]


# ====================================================================
# 3. Soft failures
# ====================================================================

class TestSoftFailures:

    def test_load_timeout_records_empty_page_and_advances(self, store, fast_config):
        slow = "https://example.com/slow"
        transport = FakeTransport({SEED: ["/slow", "/fast"]})
        transport.hang.add(slow)
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert summary.state == CrawlState.COMPLETE
        assert summary.records[slow].status == "timeout"
        assert summary.records[slow].links == []
        assert summary.records["https://example.com/fast"].status == "scanned"
        assert scheduler.session.pending_navigation is False
        assert summary.metrics.pages_timed_out == 1

    def test_traffic_before_timeout_is_kept(self, store, fast_config):
        slow = "https://example.com/slow"
        traffic = {slow: [request_event("https://www.google-analytics.com/g/collect?en=page_view")]}
        transport = FakeTransport({SEED: ["/slow"]}, traffic)
        transport.hang.add(slow)
        captures = CaptureStore(store)
        scheduler = CrawlScheduler(transport, captures, SessionManager(store), fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        record = summary.records[slow]
        assert record.status == "timeout"
        assert record.depth == 1
        assert len(record.network) == 1
        assert len(captures.get_all(summary.session_id).by_page[slow]) == 1

    def test_navigation_error_is_not_fatal(self, store, fast_config):
        broken = "https://example.com/broken"
        transport = FakeTransport({SEED: ["/broken", "/ok"]})
        transport.broken_navigation.add(broken)
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert summary.state == CrawlState.COMPLETE
        assert summary.records[broken].status == "failed"
        assert "https://example.com/ok" in summary.visit_order

    def test_scan_retries_without_reinject(self, store, fast_config):
        transport = FakeTransport({SEED: []})
        transport.scan_failures = 5
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED))

        assert summary.records[SEED].status == "scanned"
        assert transport.reinjected == 0
        assert len(transport.scans) == 6

    def test_scan_reinjects_after_retries(self, store, fast_config):
        transport = FakeTransport({SEED: []})
        transport.scan_failures = 6
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED))

        assert transport.reinjected == 1
        assert summary.records[SEED].status == "scanned"

    def test_scan_gives_up_with_empty_record(self, store, fast_config):
        transport = FakeTransport({SEED: ["/a"]})
        transport.scan_failures = 100
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))

        assert summary.state == CrawlState.COMPLETE
        assert summary.records[SEED].status == "failed"
        assert summary.visit_order == [SEED]

    def test_tab_lookup_failure_advances(self, store, fast_config):
        transport = FakeTransport({SEED: []})
        transport.tab_broken = True
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED))

        assert summary.state == CrawlState.COMPLETE
        assert summary.records[SEED].status == "failed"

    def test_scan_in_place_when_already_on_page(self, store, fast_config):
        transport = FakeTransport({SEED: []})
        transport.url = SEED
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED))

        assert transport.navigations == []
        assert summary.records[SEED].status == "scanned"


# ====================================================================
# 4. Redirects + captures
# ====================================================================

class TestRedirectsAndCaptures:

    def test_same_origin_redirect_accepted(self, store, fast_config):
        transport = FakeTransport({SEED: ["/old"], "https://example.com/new": ["/next"]})
        transport.redirects["https://example.com/old"] = "https://example.com/new"
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=2))

        assert summary.records["https://example.com/old"].status == "scanned"
        assert "https://example.com/next" in summary.visit_order

    def test_cross_origin_redirect_abandoned(self, store, fast_config):
        transport = FakeTransport({SEED: ["/out"], "https://other.com/": ["/x"]})
        transport.redirects["https://example.com/out"] = "https://other.com/"
        scheduler = _scheduler(store, transport, fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=2))

        assert summary.records["https://example.com/out"].status == "failed"
        assert len(summary.visit_order) == 2

    def test_network_events_captured_per_page(self, store, fast_config):
        traffic = {
            SEED: [request_event("https://www.google-analytics.com/g/collect?en=page_view")],
            "https://example.com/a": [
                request_event("https://api.example.com/v1/items", "POST", '{"q":1}', request_id="2"),
                {"method": "Network.responseReceived", "params": {}},
            ],
        }
        transport = FakeTransport({SEED: ["/a"]}, traffic)
        captures = CaptureStore(store)
        scheduler = CrawlScheduler(transport, captures, SessionManager(store), fast_config)

        summary = asyncio.run(scheduler.start(SEED, max_depth=1))
        result = captures.get_all(summary.session_id)

        assert len(result.flat) == 2
        assert set(result.by_page) == {SEED, "https://example.com/a"}
        assert result.by_page["https://example.com/a"][0].method == "POST"
        assert summary.metrics.requests_captured == 2
        assert len(summary.records[SEED].network) == 1

    def test_events_after_stop_are_ignored(self, store, fast_config):
        transport = FakeTransport({SEED: []})
        captures = CaptureStore(store)
        scheduler = CrawlScheduler(transport, captures, SessionManager(store), fast_config)

        summary = asyncio.run(scheduler.start(SEED))
        scheduler._on_network_event(request_event("https://example.com/late"), SEED)

        assert captures.count(summary.session_id) == 0
        assert transport.listeners == []
