"""
Browser transport interface.

The scheduler drives exactly one tab through this interface; it never
talks to Playwright directly.  ``PlaywrightTransport`` in ``browser.py``
is the shipped implementation, tests use an in-memory fake.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .models import ScanReport

# listener(raw_event, page_url)
NetworkListener = Callable[[Dict[str, Any], str], None]


@dataclass
class ScanCommand:
    """Ask the page-interaction collaborator to scan the current page."""
    depth: int = 0
    action: str = "scan"


class BrowserTransport(abc.ABC):

    @abc.abstractmethod
    async def current_url(self) -> Optional[str]:
        """URL currently shown in the tab."""

    @abc.abstractmethod
    async def navigate(self, url: str) -> str:
        """Navigate the tab; resolves on load complete with the final URL."""

    @abc.abstractmethod
    async def send_interaction_command(self, command: ScanCommand) -> ScanReport:
        """Run a command in the page and wait for its report."""

    @abc.abstractmethod
    async def reinject(self) -> None:
        """Re-install the page-interaction collaborator in the current page."""

    @abc.abstractmethod
    def add_network_listener(self, listener: NetworkListener) -> None:
        ...

    @abc.abstractmethod
    def remove_network_listener(self, listener: NetworkListener) -> None:
        ...
