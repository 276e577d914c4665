"""
Tests for the capture store and its session lifecycle.
"""

import sqlite3

from conftest import request_event

from netrecon.capture_store import CaptureStore, parse_request_event
from netrecon.session import SessionManager, new_session_id


class TestParseRequestEvent:

    def test_only_request_sent_events(self):
        assert parse_request_event("s", "https://example.com/", {"method": "Network.responseReceived"}) is None
        assert parse_request_event("s", "https://example.com/", {}) is None

    def test_non_http_urls_dropped(self):
        event = request_event("data:image/png;base64,AAAA")
        assert parse_request_event("s", "https://example.com/", event) is None
        event = request_event("chrome-extension://abc/script.js")
        assert parse_request_event("s", "https://example.com/", event) is None

    def test_fields(self):
        event = request_event(
            "https://www.google-analytics.com/g/collect?v=2&en=page_view&en=scroll",
            method="post",
            post_data="en=click",
            headers={"Content-Type": "text/plain", "User-Agent": "UA"},
            request_id="42",
        )
        call = parse_request_event("s1", "https://example.com/p", event)

        assert call.method == "POST"
        assert call.host == "www.google-analytics.com"
        assert call.pathname == "/g/collect"
        assert call.query_params == {"v": "2", "en": "scroll"}
        assert call.headers == {"content-type": "text/plain", "user-agent": "UA"}
        assert call.post_data == "en=click"
        assert call.has_post_data
        assert call.request_id == "42"
        assert call.page_url == "https://example.com/p"

    def test_post_data_capped(self):
        event = request_event("https://api.example.com/x", "POST", "a" * 50)
        call = parse_request_event("s", "https://example.com/", event, max_post_data_chars=10)
        assert call.post_data == "a" * 10


class TestCaptureStore:

    def test_append_and_group_by_page(self, store):
        captures = CaptureStore(store)
        captures.append("s1", "https://example.com/", request_event("https://a.com/1"))
        captures.append("s1", "https://example.com/b", request_event("https://a.com/2"))
        captures.append("s1", "https://example.com/", request_event("https://a.com/1"))
        captures.append("s2", "https://example.com/", request_event("https://a.com/3"))

        result = captures.get_all("s1")

        assert [c.url for c in result.flat] == ["https://a.com/1", "https://a.com/2", "https://a.com/1"]
        assert len(result.by_page["https://example.com/"]) == 2
        assert captures.count("s1") == 3
        assert captures.count("s2") == 1

    def test_clear_is_session_scoped(self, store):
        captures = CaptureStore(store)
        captures.append("s1", "https://example.com/", request_event("https://a.com/1"))
        captures.append("s2", "https://example.com/", request_event("https://a.com/2"))

        captures.clear("s1")

        assert captures.get_all("s1").flat == []
        assert captures.count("s2") == 1

    def test_write_failure_falls_back_to_memory(self, store):
        captures = CaptureStore(store)
        captures.append("s1", "https://example.com/", request_event("https://a.com/1"))
        store.execute("DROP TABLE network_calls")
        store.execute(
            "CREATE TABLE network_calls (id INTEGER PRIMARY KEY, session_id TEXT, page_url TEXT, "
            "url TEXT, method TEXT, host TEXT, pathname TEXT, query_params TEXT, headers TEXT, "
            "post_data TEXT, request_id TEXT, timestamp REAL, must_set TEXT NOT NULL)"
        )

        call = captures.append("s1", "https://example.com/", request_event("https://a.com/2"))

        assert call is not None
        assert [c.url for c in captures.get_all("s1").flat] == ["https://a.com/2"]


class TestSessions:

    def test_session_id_format(self):
        sid = new_session_id()
        prefix, millis, suffix = sid.split("_")
        assert prefix == "session"
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_rotate_clears_previous_session(self, store):
        captures = CaptureStore(store)
        sessions = SessionManager(store)
        first = sessions.rotate()
        captures.append(first, "https://example.com/", request_event("https://a.com/1"))

        second = sessions.rotate()

        assert second != first
        assert captures.count(first) == 0
        assert sessions.current == second

    def test_epoch_wipes_sessions_but_keeps_embedding_cache(self, store):
        captures = CaptureStore(store)
        captures.append("old", "https://example.com/", request_event("https://a.com/1"))
        store.execute(
            "INSERT INTO embedding_cache (text_hash, dims, vector, text_preview, created_at) "
            "VALUES ('h', 1, x'00', 't', 0)"
        )

        SessionManager(store).begin_epoch()

        assert store.count("network_calls") == 0
        assert store.count("embedding_cache") == 1

    def test_transaction_rolls_back(self, store):
        try:
            with store.transaction() as conn:
                conn.execute(
                    "INSERT INTO embedding_cache (text_hash, dims, vector, created_at) VALUES ('x', 1, x'00', 0)"
                )
                raise sqlite3.OperationalError("boom")
        except sqlite3.OperationalError:
            pass
        assert store.count("embedding_cache") == 0
