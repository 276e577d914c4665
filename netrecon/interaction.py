"""
Page Interaction
================
Runs inside the current tab to make the page emit the traffic worth
capturing, then reports what it saw.

Sequence per scan:
    1. dismiss cookie consent (selector list, first visible wins)
    2. type into visible search boxes (input events only, no submit)
    3. auto-scroll, 0.8 viewport per step, at most 20 steps
    4. snapshot the DOM and collect same-origin links (BeautifulSoup)
    5. click up to 100 visible same-origin elements with link
       navigation suppressed, to fire click analytics

The click helper is installed into the page as ``window.__netrecon``;
``install()`` re-evaluates it, which is what the transport's
``reinject()`` calls after the page lost it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .errors import InteractionUnavailable
from .models import ScanReport
from .utils import is_http_url, same_origin

logger = logging.getLogger(__name__)

DOM_SNAPSHOT_CHARS = 20_000
MAX_SCROLL_STEPS = 20
SCROLL_INTERVAL_S = 0.15
DEFAULT_MAX_CLICKS = 100
SEARCH_PROBE_TEXT = "test"

_ONCLICK_URL_RE = re.compile(r"""['"](https?://[^'"]+)['"]""")

CONSENT_SELECTORS = [
    'button:has-text("Accept All")',
    'button:has-text("Accept Cookies")',
    'button:has-text("Accept")',
    'button:has-text("I Accept")',
    'button:has-text("Allow All")',
    'button:has-text("Agree")',
    'button:has-text("Got it")',
    '#onetrust-accept-btn-handler',
    '#truste-consent-button',
    '#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll',
    '#CybotCookiebotDialogBodyButtonAccept',
    'button[id*="accept"]',
    'button[class*="accept"]',
    'button[aria-label*="Accept" i]',
    '[role="button"][aria-label*="Accept" i]',
    '.cookie-accept',
    '.cc-accept',
    '#accept-cookies',
]

SEARCH_SELECTORS = [
    'input[type="search"]',
    'input[name="q"]',
    'input[name*="search" i]',
    'input[placeholder*="search" i]',
    'input[aria-label*="search" i]',
]

_INSTALL_SCRIPT = """
() => {
  if (window.__netrecon) return true;
  const origin = location.origin;

  function visible(el) {
    if (el.offsetParent === null) return false;
    const style = getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden' || style.pointerEvents === 'none') return false;
    const rect = el.getBoundingClientRect();
    return rect.width >= 10 && rect.height >= 10;
  }

  function clickable(el) {
    const tag = el.tagName.toLowerCase();
    if ((el.type || '').toLowerCase() === 'submit') return false;
    if (tag === 'a') {
      const href = el.getAttribute('href') || '';
      if (href && !href.startsWith('#') && !href.startsWith('javascript:') && !href.startsWith('mailto:')) {
        try {
          if (new URL(el.href).origin !== origin) return false;
        } catch (e) {
          return false;
        }
      }
    }
    const style = getComputedStyle(el);
    return tag === 'a' || tag === 'button' || !!el.onclick ||
      el.getAttribute('role') === 'button' || style.cursor === 'pointer';
  }

  async function triggerClicks(maxClicks) {
    const sel = "a, button, [role='button'], [onclick], [data-click], [class*='click'], [class*='button']";
    const candidates = Array.from(document.querySelectorAll(sel)).filter(el => {
      try { return visible(el) && clickable(el); } catch (e) { return false; }
    }).slice(0, maxClicks);

    let clicked = 0;
    for (const el of candidates) {
      const before = location.href;
      try {
        el.scrollIntoView({ behavior: 'auto', block: 'center' });
        await new Promise(r => setTimeout(r, 30));
        if (location.href !== before) break;
        if (el.tagName.toLowerCase() === 'a') {
          el.addEventListener('click', ev => { ev.preventDefault(); ev.stopPropagation(); },
                              { capture: true, once: true });
        }
        for (const type of ['mouseenter', 'mouseover', 'mousedown', 'mouseup']) {
          el.dispatchEvent(new MouseEvent(type, { bubbles: true, cancelable: true }));
        }
        el.click();
        clicked += 1;
        await new Promise(r => setTimeout(r, 50));
        if (location.href !== before) break;
      } catch (e) {}
    }
    return clicked;
  }

  window.__netrecon = { triggerClicks };
  return true;
}
"""

_SCROLL_STEP_SCRIPT = """
() => {
  const distance = Math.floor(window.innerHeight * 0.8) || 400;
  const before = window.scrollY || document.documentElement.scrollTop;
  const docHeight = document.documentElement.scrollHeight;
  if (before + window.innerHeight >= docHeight) return false;
  window.scrollBy(0, distance);
  return (window.scrollY || document.documentElement.scrollTop) !== before;
}
"""


def extract_links(html: str, page_url: str) -> List[str]:
    """Same-origin absolute URLs from hrefs and inline onclick handlers."""
    if not html:
        return []
    soup = BeautifulSoup(html, "lxml")
    found: List[str] = []
    seen = set()

    def _add(raw: Optional[str]) -> None:
        if not raw:
            return
        raw = raw.strip()
        if raw.lower().startswith(("javascript:", "mailto:", "tel:", "data:")):
            return
        absolute = urljoin(page_url, raw)
        if not is_http_url(absolute) or not same_origin(absolute, page_url):
            return
        if absolute not in seen:
            seen.add(absolute)
            found.append(absolute)

    for tag in soup.select("a[href], area[href]"):
        _add(tag.get("href"))
    for tag in soup.select("[onclick]"):
        match = _ONCLICK_URL_RE.search(tag.get("onclick") or "")
        if match:
            _add(match.group(1))
    return found


class PageInteractor:
    """
    Usage::

        interactor = PageInteractor(page)
        await interactor.install()
        report = await interactor.scan(depth=1)
    """

    def __init__(self, page: Page, max_clicks: int = DEFAULT_MAX_CLICKS, search_probe: bool = True):
        self.page = page
        self.max_clicks = max_clicks
        self.search_probe = search_probe

    async def install(self) -> None:
        try:
            await self.page.evaluate(_INSTALL_SCRIPT)
        except PlaywrightError as e:
            raise InteractionUnavailable(f"could not install interaction helper: {e}") from e

    async def scan(self, depth: int = 0) -> ScanReport:
        page = self.page
        try:
            ready = await page.evaluate("() => !!window.__netrecon")
        except PlaywrightError as e:
            raise InteractionUnavailable(str(e)) from e
        if not ready:
            raise InteractionUnavailable("interaction helper not present in page")

        await asyncio.sleep(0.2)
        await self._dismiss_cookie_consent()
        if self.search_probe:
            await self._probe_search()
        await self._auto_scroll()

        try:
            html = await page.content()
        except PlaywrightError as e:
            raise InteractionUnavailable(f"DOM snapshot failed: {e}") from e
        url = page.url
        links = extract_links(html, url)

        clicks = 0
        if self.max_clicks > 0:
            try:
                clicks = await page.evaluate(
                    "(n) => window.__netrecon ? window.__netrecon.triggerClicks(n) : 0",
                    self.max_clicks,
                )
            except PlaywrightError as e:
                logger.debug(f"[INTERACT] Click sequence interrupted on {url}: {e}")

        logger.debug(f"[INTERACT] depth={depth} {url}: {len(links)} links, {clicks} clicks")
        return ScanReport(url=url, dom=html[:DOM_SNAPSHOT_CHARS], links=links, clicks=int(clicks or 0))

    async def _dismiss_cookie_consent(self) -> bool:
        for selector in CONSENT_SELECTORS:
            try:
                btn = await self.page.query_selector(selector)
                if btn and await btn.is_visible():
                    await btn.click(timeout=2000)
                    logger.debug(f"[COOKIE] Dismissed via: {selector}")
                    await asyncio.sleep(0.15)
                    return True
            except PlaywrightError:
                continue
        return False

    async def _probe_search(self) -> None:
        for selector in SEARCH_SELECTORS:
            try:
                box = await self.page.query_selector(selector)
                if box and await box.is_visible():
                    await box.fill(SEARCH_PROBE_TEXT, timeout=1500)
                    await box.dispatch_event("change")
                    await asyncio.sleep(0.3)
                    logger.debug(f"[INTERACT] Probed search box: {selector}")
                    return
            except PlaywrightError:
                continue

    async def _auto_scroll(self) -> None:
        for _ in range(MAX_SCROLL_STEPS):
            try:
                moved = await self.page.evaluate(_SCROLL_STEP_SCRIPT)
            except PlaywrightError:
                break
            if not moved:
                break
            await asyncio.sleep(SCROLL_INTERVAL_S)
        await asyncio.sleep(0.1)
