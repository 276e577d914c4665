"""
Shared fakes for the netrecon test suite.

``FakeTransport`` plays a tiny site: ``site`` maps a URL to the links its
scan reports, ``traffic`` maps a URL to the raw request events emitted
while it loads.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from netrecon.errors import InteractionUnavailable, NavigationError
from netrecon.models import NetworkCall, ScanReport
from netrecon.scheduler import SchedulerConfig
from netrecon.storage import ReconStore
from netrecon.transport import BrowserTransport, ScanCommand


def request_event(url: str, method: str = "GET", post_data: Optional[str] = None,
                  headers: Optional[Dict[str, str]] = None, request_id: str = "1") -> dict:
    request = {"url": url, "method": method, "headers": headers or {}}
    if post_data is not None:
        request["postData"] = post_data
    return {
        "method": "Network.requestWillBeSent",
        "params": {"requestId": request_id, "request": request, "wallTime": 1700000000.0},
    }


def make_call(url: str, method: str = "GET", post_data: Optional[str] = None,
              page_url: str = "https://example.com/", session_id: str = "s1",
              headers: Optional[Dict[str, str]] = None) -> NetworkCall:
    from netrecon.capture_store import parse_request_event
    call = parse_request_event(session_id, page_url, request_event(url, method, post_data, headers))
    assert call is not None
    return call


class FakeTransport(BrowserTransport):

    def __init__(self, site: Dict[str, List[str]], traffic: Optional[Dict[str, List[dict]]] = None):
        self.site = site
        self.traffic = traffic or {}
        self.url = "about:blank"
        self.navigations: List[str] = []
        self.scans: List[ScanCommand] = []
        self.listeners = []
        self.hang = set()
        self.redirects: Dict[str, str] = {}
        self.broken_navigation = set()
        self.scan_failures = 0
        self.reinjected = 0
        self.tab_broken = False

    async def current_url(self) -> Optional[str]:
        if self.tab_broken:
            raise NavigationError("tab closed")
        return self.url

    async def navigate(self, url: str) -> str:
        self.navigations.append(url)
        if url in self.hang:
            self.url = url
            for event in self.traffic.get(url, []):
                self.emit(event)
            await asyncio.sleep(3600)
        if url in self.broken_navigation:
            raise NavigationError(f"net::ERR_FAILED {url}")
        self.url = self.redirects.get(url, url)
        for event in self.traffic.get(url, []):
            self.emit(event)
        return self.url

    async def send_interaction_command(self, command: ScanCommand) -> ScanReport:
        self.scans.append(command)
        if self.scan_failures > 0:
            self.scan_failures -= 1
            raise InteractionUnavailable("content script not ready")
        return ScanReport(url=self.url, dom="<html><body>ok</body></html>", links=list(self.site.get(self.url, [])))

    async def reinject(self) -> None:
        self.reinjected += 1

    def add_network_listener(self, listener) -> None:
        self.listeners.append(listener)

    def remove_network_listener(self, listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def emit(self, event: dict) -> None:
        for listener in list(self.listeners):
            listener(event, self.url)


@pytest.fixture
def store():
    s = ReconStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def fast_config():
    return SchedulerConfig(
        page_load_timeout_s=0.2,
        scan_timeout_s=1.0,
        scan_retry_delay_s=0,
        in_place_delay_s=0,
        settle_delay_s=0,
        monitor_interval_s=0,
    )
