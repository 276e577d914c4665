"""
Tests for the smaller building blocks: pattern tables, run config,
retry handler, Gemini client and link extraction.
"""

import argparse
import asyncio

import pytest

from netrecon.errors import ModelAPIError
from netrecon.llm_client import GeminiClient
from netrecon.patterns import (
    ANALYTICS,
    CDN,
    TECH_STACK,
    PatternTable,
    indexing_table,
    is_ga_host,
    retrieval_table,
)
from netrecon.run_config import ReconRunConfig
from netrecon.utils import RetryHandler


# ====================================================================
# Pattern tables
# ====================================================================

class TestPatternTables:

    def test_first_match_wins(self):
        table = PatternTable([("a", "foo"), ("b", "foo|bar")])
        assert table.classify("foo.com") == "a"
        assert table.classify("bar.com") == "b"
        assert table.classify("baz.com") is None

    def test_insert_rule_ahead(self):
        table = PatternTable([("a", "foo")])
        table.add("b", "foo", position=0)
        assert table.classify("foo.com") == "b"

    def test_default_tables(self):
        assert retrieval_table().classify("www.google-analytics.com") == ANALYTICS
        assert retrieval_table().classify("my-app.vercel.app") == TECH_STACK
        assert retrieval_table().classify("api.example.com") is None
        assert indexing_table().classify("cdn.jsdelivr.net") == CDN
        assert indexing_table().classify("o123.ingest.sentry.io") == ANALYTICS

    def test_ga_host(self):
        assert is_ga_host("www.googletagmanager.com")
        assert not is_ga_host("api.segment.io")


# ====================================================================
# Run config
# ====================================================================

class TestRunConfig:

    def test_defaults_flow_into_subsystems(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "env-key")
        cfg = ReconRunConfig()

        assert cfg.api_key == "env-key"
        sched = cfg.to_scheduler_config()
        assert sched.max_depth == 2
        assert sched.page_load_timeout_s == 15.0
        assert sched.settle_delay_s == 0.4
        batch = cfg.to_batch_config()
        assert batch.batch_token_ceiling == 100_000
        assert batch.hard_token_ceiling == 700_000
        assert cfg.to_analysis_config().max_attempts == 3

    def test_from_cli_args(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        args = argparse.Namespace(
            depth=1, pages=20, timeout=5.0, headed=True, max_clicks=0, no_search_probe=True,
            db="x.db", keep_data=True, analyze="rag", api_key=None, batch_tokens=50_000,
            output_dir="out",
        )
        cfg = ReconRunConfig.from_cli_args(args)

        assert (cfg.max_depth, cfg.page_limit, cfg.page_load_timeout_s) == (1, 20, 5.0)
        assert cfg.headless is False
        assert cfg.search_probe is False
        assert cfg.wipe_on_start is False
        assert cfg.analysis_mode == "rag"
        assert cfg.api_key is None
        assert cfg.to_batch_config().batch_token_ceiling == 50_000

    def test_log_summary_runs(self, caplog):
        caplog.set_level("INFO")
        ReconRunConfig(analysis_mode="batch", api_key="k").log_summary("https://example.com/")
        assert "RECON RUN CONFIG" in caplog.text
        assert "API Key:          set" in caplog.text


# ====================================================================
# Retry handler
# ====================================================================

class TestRetryHandler:

    def test_backoff_capped(self):
        handler = RetryHandler(base_delay=2.0, max_delay=5.0, jitter=False)
        assert [handler.calculate_delay(i) for i in range(4)] == [2.0, 4.0, 5.0, 5.0]

    def test_jitter_within_quarter(self):
        handler = RetryHandler(base_delay=4.0, jitter=True)
        for _ in range(20):
            assert 3.0 <= handler.calculate_delay(0) <= 5.0

    def test_fatal_error_not_retried(self):
        calls = []

        async def boom():
            calls.append(1)
            raise KeyError("fatal")

        async def no_sleep(delay):
            pass

        handler = RetryHandler(fatal_errors=(KeyError,), sleep=no_sleep)
        with pytest.raises(KeyError):
            asyncio.run(handler.execute(boom))
        assert calls == [1]

    def test_last_error_raised(self):
        async def boom():
            raise ValueError("always")

        async def no_sleep(delay):
            pass

        with pytest.raises(ValueError):
            asyncio.run(RetryHandler(max_attempts=2, sleep=no_sleep).execute(boom))


# ====================================================================
# Gemini client (fake aiohttp session)
# ====================================================================

class _FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return str(self._payload)

    async def json(self, content_type=None):
        return self._payload


class _FakeSession:
    closed = False

    def __init__(self, status, payload):
        self.status = status
        self.payload = payload
        self.requests = []

    def post(self, url, json=None):
        self.requests.append((url, json))
        return _FakeResponse(self.status, self.payload)


class TestGeminiClient:

    def test_embed(self):
        session = _FakeSession(200, {"embedding": {"values": [0.1, 0.2]}})
        client = GeminiClient("k/ey", session=session)

        vec = asyncio.run(client.embed("Host: a.com"))

        assert vec == [0.1, 0.2]
        url, body = session.requests[0]
        assert url.endswith("text-embedding-004:embedContent?key=k%2Fey")
        assert body["content"]["parts"][0]["text"] == "Host: a.com"

    def test_complete_joins_parts(self):
        session = _FakeSession(200, {"candidates": [{"content": {"parts": [{"text": "{"}, {"text": "}"}]}}]})
        client = GeminiClient("key", session=session)

        text = asyncio.run(client.complete("SYSTEM", {"requests": []}))

        assert text == "{\n}"
        parts = session.requests[0][1]["contents"][0]["parts"]
        assert parts[0]["text"] == "SYSTEM"
        assert parts[1]["text"].startswith("\n\nSlim network payload JSON:\n")

    def test_error_status_raises(self):
        client = GeminiClient("key", session=_FakeSession(429, {"error": "quota"}))
        with pytest.raises(ModelAPIError) as exc_info:
            asyncio.run(client.embed("x"))
        assert exc_info.value.status == 429

    def test_empty_candidates_raise(self):
        client = GeminiClient("key", session=_FakeSession(200, {"candidates": []}))
        with pytest.raises(ModelAPIError):
            asyncio.run(client.complete("s", {}))


# ====================================================================
# Link extraction (needs the browser extras installed)
# ====================================================================

class TestExtractLinks:

    def test_same_origin_links_only(self):
        pytest.importorskip("playwright")
        from netrecon.interaction import extract_links

        html = """
        <a href="/a">A</a>
        <a href="b?x=1">B</a>
        <a href="/a">dup</a>
        <a href="https://other.com/x">ext</a>
        <a href="mailto:me@example.com">mail</a>
        <a href="javascript:void(0)">js</a>
        <map><area href="/area"></map>
        <div onclick="location.href='https://example.com/clicked'">go</div>
        """
        links = extract_links(html, "https://example.com/dir/page")

        assert links == [
            "https://example.com/a",
            "https://example.com/dir/b?x=1",
            "https://example.com/area",
            "https://example.com/clicked",
        ]

    def test_empty_html(self):
        pytest.importorskip("playwright")
        from netrecon.interaction import extract_links

        assert extract_links("", "https://example.com/") == []
