"""
Playwright Transport
====================
Drives one Chromium tab for the scheduler and streams every outgoing
request through a CDP session (``Network.requestWillBeSent``).

Usage::

    async with PlaywrightTransport(headless=True) as transport:
        scheduler = CrawlScheduler(transport, captures, sessions)
        await scheduler.start("https://example.com/")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, CDPSession, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from .errors import InteractionUnavailable, NavigationError
from .interaction import PageInteractor
from .models import ScanReport
from .transport import BrowserTransport, NetworkListener, ScanCommand

logger = logging.getLogger(__name__)

MAX_POST_DATA_BYTES = 10 * 1024 * 1024

_LAUNCH_ARGS = [
    '--disable-gpu',
    '--no-sandbox',
    '--disable-dev-shm-usage',
    '--disable-background-networking',
    '--disable-default-apps',
    '--disable-extensions',
    '--disable-sync',
    '--disable-translate',
    '--no-first-run',
]


class PlaywrightTransport(BrowserTransport):

    def __init__(
        self,
        headless: bool = True,
        user_agent: Optional[str] = None,
        viewport_width: int = 1366,
        viewport_height: int = 900,
        navigation_timeout_ms: int = 30_000,
        max_clicks: int = 100,
        search_probe: bool = True,
    ):
        self.headless = headless
        self.user_agent = user_agent
        self.viewport = {'width': viewport_width, 'height': viewport_height}
        self.navigation_timeout_ms = navigation_timeout_ms
        self.max_clicks = max_clicks
        self.search_probe = search_probe

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._cdp: Optional[CDPSession] = None
        self._interactor: Optional[PageInteractor] = None
        self._listeners: List[NetworkListener] = []

    async def __aenter__(self) -> "PlaywrightTransport":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Browser management
    # ------------------------------------------------------------------

    async def open(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless, args=_LAUNCH_ARGS)
        ctx_kwargs: Dict[str, Any] = dict(viewport=self.viewport, locale='en-US')
        if self.user_agent:
            ctx_kwargs['user_agent'] = self.user_agent
        self._context = await self._browser.new_context(**ctx_kwargs)
        self._page = await self._context.new_page()

        self._cdp = await self._context.new_cdp_session(self._page)
        await self._cdp.send('Network.enable', {
            'maxTotalBufferSize': MAX_POST_DATA_BYTES * 10,
            'maxResourceBufferSize': MAX_POST_DATA_BYTES,
            'maxPostDataSize': MAX_POST_DATA_BYTES,
        })
        self._cdp.on('Network.requestWillBeSent', self._on_request_will_be_sent)

        self._interactor = PageInteractor(self._page, max_clicks=self.max_clicks, search_probe=self.search_probe)
        logger.info(f"Playwright browser initialized (headless={self.headless}, CDP network capture on)")

    async def close(self) -> None:
        if self._cdp:
            try:
                await self._cdp.detach()
            except PlaywrightError:
                pass
            self._cdp = None
        if self._context:
            try:
                await self._context.close()
            except PlaywrightError:
                pass
            self._context = None
        if self._browser:
            try:
                await self._browser.close()
            except PlaywrightError:
                pass
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        self._page = None

    # ------------------------------------------------------------------
    # BrowserTransport
    # ------------------------------------------------------------------

    async def current_url(self) -> Optional[str]:
        if self._page is None or self._page.is_closed():
            raise NavigationError("tab is not open")
        return self._page.url

    async def navigate(self, url: str) -> str:
        if self._page is None:
            raise NavigationError("tab is not open")
        try:
            await self._page.goto(url, wait_until='load', timeout=self.navigation_timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(f"{url}: {e}") from e
        try:
            await self._interactor.install()
        except InteractionUnavailable as e:
            logger.debug(f"[INTERACT] Helper not installed after load: {e}")
        return self._page.url

    async def send_interaction_command(self, command: ScanCommand) -> ScanReport:
        if self._interactor is None:
            raise NavigationError("tab is not open")
        return await self._interactor.scan(command.depth)

    async def reinject(self) -> None:
        if self._interactor is not None:
            await self._interactor.install()

    def add_network_listener(self, listener: NetworkListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_network_listener(self, listener: NetworkListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _on_request_will_be_sent(self, params: Dict[str, Any]) -> None:
        event = {'method': 'Network.requestWillBeSent', 'params': params}
        page_url = self._page.url if self._page is not None else ''
        for listener in list(self._listeners):
            try:
                listener(event, page_url)
            except Exception as e:
                logger.debug(f"[CAPTURE] Listener error: {e}")
