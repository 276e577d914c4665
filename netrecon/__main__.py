#!/usr/bin/env python3
"""
Command-line Recon Runner
=========================
Crawl a site in one Chromium tab, capture every request it makes, and
optionally classify the traffic with the completion model.

All configuration flows through ``ReconRunConfig``, the single source of
truth for defaults and CLI overrides.

Run with: python -m netrecon https://example.com
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from .run_config import ReconRunConfig

# .env next to the project root first, then CWD
env_path = Path(__file__).resolve().parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_summary(summary, analysis=None, exported=None):
    """Print crawl (and analysis) summary."""
    metrics = summary.metrics
    print("\n" + "=" * 65)
    print("RECON COMPLETE")
    print("=" * 65)
    print(f"  Session:             {summary.session_id}")
    print(f"  Final state:         {summary.state.value}")
    print(f"  Pages visited:       {summary.pages_visited}")
    if metrics is not None:
        if metrics.pages_timed_out:
            print(f"  Pages timed out:     {metrics.pages_timed_out}")
        if metrics.pages_failed:
            print(f"  Pages failed:        {metrics.pages_failed}")
        print(f"  Requests captured:   {metrics.requests_captured:,}")
        print(f"  Total time:          {metrics.elapsed_sec:.1f}s")
    if analysis is not None:
        print(f"  Batches analyzed:    {analysis.completed_batches}/{analysis.total_batches}")
        if analysis.failures:
            print(f"  Batches failed:      {len(analysis.failures)}")
        print(f"  Technologies:        {len(analysis.result.tech_stack)}")
        print(f"  Analytics events:    {len(analysis.result.analytics_events)}")
    if summary.error:
        print(f"  Error:               {summary.error}")
    print(f"  Stop reason:         {summary.stop_reason}")
    print("=" * 65)
    if exported:
        print("\n" + "-" * 40)
        for path in exported.values():
            print(f"  Exported: {path}")
        print("-" * 40)


async def _run(url: str, cfg: ReconRunConfig) -> int:
    from .browser import PlaywrightTransport
    from .service import ReconService

    def progress_cb(message, visited, queued):
        print(f"[Page {visited}] queued={queued} {message[:80]}")

    async with PlaywrightTransport(
        headless=cfg.headless,
        user_agent=cfg.user_agent,
        max_clicks=cfg.max_clicks,
        search_probe=cfg.search_probe,
    ) as transport:
        service = ReconService(cfg, transport=transport)
        try:
            crawl = await service.crawl(url, cfg.max_depth, cfg.page_limit, progress=progress_cb)
            if not crawl.ok:
                logger.error(crawl.error)
                return 1
            summary = crawl.data

            report = None
            if cfg.analysis_mode:
                analysis = await service.analyze(mode=cfg.analysis_mode)
                if analysis.ok:
                    report = analysis.data
                else:
                    logger.error(f"Analysis skipped: {analysis.error}")

            exported = service.export(cfg.output_dir)
            if not exported.ok:
                logger.warning(f"Nothing exported: {exported.error}")
            print_summary(summary, report, exported.data if exported.ok else None)
        finally:
            await service.close()
    return 0


def run_cli_with_args():
    """Parse argv, build ReconRunConfig, run."""
    parser = argparse.ArgumentParser(
        description='netrecon - same-origin crawl with network capture and tech/analytics classification',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m netrecon https://example.com
  python -m netrecon https://example.com --depth 1 --pages 20
  python -m netrecon https://example.com --analyze rag --output-dir out/
  GEMINI_API_KEY=... python -m netrecon https://example.com --analyze batch --headed
        """
    )

    parser.add_argument('url', help='Seed URL (same-origin links are followed)')
    parser.add_argument('--depth', type=int, default=2, help='Maximum link depth, 0-5 (default: 2)')
    parser.add_argument('--pages', type=int, default=None, help='Stop after this many pages (default: no limit)')
    parser.add_argument('--timeout', type=float, default=15.0, help='Page-load timeout in seconds (default: 15)')
    parser.add_argument('--output-dir', type=str, default='netrecon_output', help='Directory for CSV/JSON exports')
    parser.add_argument('--db', type=str, default='netrecon.db', help='SQLite database path (default: netrecon.db)')
    parser.add_argument('--headed', action='store_true', help='Show the browser window')

    browser_group = parser.add_argument_group('Browser interaction')
    browser_group.add_argument(
        '--max-clicks', type=int, default=100,
        help='Max analytics-triggering clicks per page (default: 100, 0 disables)',
    )
    browser_group.add_argument(
        '--no-search-probe', action='store_true',
        help='Do not type into search boxes',
    )

    analysis_group = parser.add_argument_group('Analysis',
        'Classify captured traffic with Gemini. The API key is read from '
        'GEMINI_API_KEY (or .env) unless --api-key is given.')
    analysis_group.add_argument(
        '--analyze', choices=['batch', 'rag'], default=None,
        help='batch: send every non-static call; rag: retrieve the relevant calls first',
    )
    analysis_group.add_argument('--api-key', type=str, default=None, help='Gemini API key')
    analysis_group.add_argument(
        '--batch-tokens', type=int, default=100_000,
        help='Token ceiling per model request (default: 100000)',
    )
    analysis_group.add_argument(
        '--keep-data', action='store_true',
        help='Do not wipe previous session data from the database on start',
    )

    args = parser.parse_args()

    url = args.url
    if not url.startswith(('http://', 'https://')):
        url = 'https://' + url

    cfg = ReconRunConfig.from_cli_args(args)
    cfg.log_summary(url)

    try:
        code = asyncio.run(_run(url, cfg))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    sys.exit(code)


if __name__ == '__main__':
    run_cli_with_args()
