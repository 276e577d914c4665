"""
Unified Run Configuration
=========================
Single source of truth for every default and runtime limit.

The CLI populates a ``ReconRunConfig``; the scheduler, batch builder and
analysis runner get their own config objects *from* it through the
``to_*_config()`` converters, so no magic number lives in two places.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .analysis import AnalysisConfig
from .batching import BatchConfig
from .scheduler import SchedulerConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "max_depth": 2,
    "page_limit": None,
    "page_load_timeout_s": 15.0,
    "scan_timeout_s": 60.0,
    "settle_delay_s": 0.4,
    "headless": True,
    "max_clicks": 100,
    "search_probe": True,
    "user_agent": None,               # None = browser default
    # Storage
    "db_path": "netrecon.db",
    "wipe_on_start": True,
    "max_post_data_chars": 100_000,
    # Analysis
    "analysis_mode": None,            # None | "batch" | "rag"
    "batch_token_ceiling": 100_000,
    "hard_token_ceiling": 700_000,
    "trim_token_budget": 50_000,
    "prompt_overhead_tokens": 3_000,
    "max_attempts": 3,
    "embedding_model": "text-embedding-004",
    "completion_model": "gemini-2.5-flash",
    # Output
    "output_dir": "netrecon_output",
}

API_KEY_ENV = "GEMINI_API_KEY"


@dataclass
class ReconRunConfig:
    """
    Unified configuration consumed by every subsystem.

    Populate via:
      - ``ReconRunConfig()``                  → all defaults
      - ``ReconRunConfig(max_depth=3)``       → override one value
      - ``ReconRunConfig.from_cli_args(ns)``  → from argparse Namespace
    """

    # ---- Crawl ----
    max_depth: int = _DEFAULTS["max_depth"]
    page_limit: Optional[int] = _DEFAULTS["page_limit"]
    page_load_timeout_s: float = _DEFAULTS["page_load_timeout_s"]
    scan_timeout_s: float = _DEFAULTS["scan_timeout_s"]
    settle_delay_s: float = _DEFAULTS["settle_delay_s"]

    # ---- Browser ----
    headless: bool = _DEFAULTS["headless"]
    max_clicks: int = _DEFAULTS["max_clicks"]
    search_probe: bool = _DEFAULTS["search_probe"]
    user_agent: Optional[str] = _DEFAULTS["user_agent"]

    # ---- Storage ----
    db_path: str = _DEFAULTS["db_path"]
    wipe_on_start: bool = _DEFAULTS["wipe_on_start"]
    max_post_data_chars: int = _DEFAULTS["max_post_data_chars"]

    # ---- Analysis ----
    analysis_mode: Optional[str] = _DEFAULTS["analysis_mode"]
    api_key: Optional[str] = None
    batch_token_ceiling: int = _DEFAULTS["batch_token_ceiling"]
    hard_token_ceiling: int = _DEFAULTS["hard_token_ceiling"]
    trim_token_budget: int = _DEFAULTS["trim_token_budget"]
    prompt_overhead_tokens: int = _DEFAULTS["prompt_overhead_tokens"]
    max_attempts: int = _DEFAULTS["max_attempts"]
    embedding_model: str = _DEFAULTS["embedding_model"]
    completion_model: str = _DEFAULTS["completion_model"]

    # ---- Output ----
    output_dir: str = _DEFAULTS["output_dir"]

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.environ.get(API_KEY_ENV) or None

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_cli_args(cls, args) -> "ReconRunConfig":
        """Build config from an argparse Namespace (``__main__.py``)."""
        return cls(
            max_depth=getattr(args, "depth", _DEFAULTS["max_depth"]),
            page_limit=getattr(args, "pages", _DEFAULTS["page_limit"]),
            page_load_timeout_s=getattr(args, "timeout", _DEFAULTS["page_load_timeout_s"]),
            headless=not getattr(args, "headed", False),
            max_clicks=getattr(args, "max_clicks", _DEFAULTS["max_clicks"]),
            search_probe=not getattr(args, "no_search_probe", False),
            db_path=getattr(args, "db", None) or _DEFAULTS["db_path"],
            wipe_on_start=not getattr(args, "keep_data", False),
            analysis_mode=getattr(args, "analyze", None),
            api_key=getattr(args, "api_key", None),
            batch_token_ceiling=getattr(args, "batch_tokens", _DEFAULTS["batch_token_ceiling"]),
            output_dir=getattr(args, "output_dir", None) or _DEFAULTS["output_dir"],
        )

    # -----------------------------------------------------------------------
    # Converters to subsystem config objects
    # -----------------------------------------------------------------------
    def to_scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            max_depth=self.max_depth,
            page_limit=self.page_limit,
            page_load_timeout_s=self.page_load_timeout_s,
            scan_timeout_s=self.scan_timeout_s,
            settle_delay_s=self.settle_delay_s,
        )

    def to_batch_config(self) -> BatchConfig:
        return BatchConfig(
            batch_token_ceiling=self.batch_token_ceiling,
            hard_token_ceiling=self.hard_token_ceiling,
            trim_token_budget=self.trim_token_budget,
            prompt_overhead_tokens=self.prompt_overhead_tokens,
        )

    def to_analysis_config(self) -> AnalysisConfig:
        return AnalysisConfig(max_attempts=self.max_attempts)

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, url: str) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("RECON RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  URL:              {url}")
        logger.info(f"  Max Depth:        {self.max_depth}")
        logger.info(f"  Page Limit:       {self.page_limit or 'none'}")
        logger.info(f"  Load Timeout:     {self.page_load_timeout_s:.0f}s per page")
        logger.info(f"  Headless:         {self.headless}")
        logger.info(f"  Max Clicks:       {self.max_clicks} per page")
        logger.info(f"  Database:         {self.db_path}")
        if self.analysis_mode:
            logger.info(f"  Analysis:         {self.analysis_mode} ({self.completion_model})")
            logger.info(f"  Batch Ceiling:    {self.batch_token_ceiling:,} tokens")
            logger.info(f"  API Key:          {'set' if self.api_key else 'MISSING'}")
        logger.info(f"  Output Dir:       {self.output_dir}")
        logger.info("=" * 60)
