"""
Session identifiers and lifecycle.
"""

from __future__ import annotations

import logging
import random
import string
import time
from typing import Optional

from .storage import ReconStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id() -> str:
    """``session_<epoch ms>_<9 random chars>``"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class SessionManager:
    """Tracks the current session and starts new process epochs."""

    def __init__(self, store: ReconStore):
        self._store = store
        self._current: Optional[str] = None

    @property
    def current(self) -> Optional[str]:
        return self._current

    def begin_epoch(self) -> None:
        self._store.begin_epoch()
        self._current = None

    def rotate(self) -> str:
        """Start a new session; the previous session's data is cleared."""
        previous = self._current
        if previous:
            self._store.clear_session(previous)
            logger.info(f"[SESSION] Cleared previous session {previous}")
        self._current = new_session_id()
        logger.info(f"[SESSION] Started {self._current}")
        return self._current
