"""
Tests for URL helpers in netrecon.utils.
"""

import pytest

from netrecon.utils import (
    compact_json,
    content_hash,
    estimate_tokens,
    is_http_url,
    normalize_url,
    same_origin,
    same_page,
)


class TestNormalizeUrl:
    """Fragment stripping, query ordering, idempotence."""

    def test_fragment_stripped(self):
        assert normalize_url("https://example.com/a#top") == "https://example.com/a"

    def test_query_sorted_by_key(self):
        assert normalize_url("https://example.com/?b=2&a=1") == "https://example.com/?a=1&b=2"

    def test_repeated_keys_keep_relative_order(self):
        assert normalize_url("https://example.com/?t=2&a=0&t=1") == "https://example.com/?a=0&t=2&t=1"

    @pytest.mark.parametrize("url", [
        "https://example.com/a?z=1&y=2#frag",
        "https://example.com/search?q=hello world&lang=en",
        "http://example.com:8080/p;x?b=&a=1",
        "https://example.com",
    ])
    def test_idempotent(self, url):
        once = normalize_url(url)
        assert normalize_url(once) == once

    def test_empty_path_becomes_slash(self):
        assert normalize_url("https://example.com") == normalize_url("https://example.com/") == "https://example.com/"
        assert normalize_url("https://example.com?b=1") == "https://example.com/?b=1"

    def test_scheme_and_host_lowercased(self):
        assert normalize_url("HTTPS://Example.COM/Path") == "https://example.com/Path"

    def test_default_port_dropped(self):
        assert normalize_url("https://example.com:443/a") == "https://example.com/a"
        assert normalize_url("http://example.com:80/a") == "http://example.com/a"
        assert normalize_url("http://example.com:443/a") == "http://example.com:443/a"
        assert normalize_url("https://example.com:8443/a") == "https://example.com:8443/a"

    def test_userinfo_and_ipv6_kept(self):
        assert normalize_url("https://user:pw@Example.com:443/") == "https://user:pw@example.com/"
        assert normalize_url("http://[::1]:8080/x") == "http://[::1]:8080/x"

    def test_relative_input_unchanged(self):
        assert normalize_url("/relative/path") == "/relative/path"

    def test_empty(self):
        assert normalize_url("") == ""


class TestOrigins:

    def test_is_http_url(self):
        assert is_http_url("https://example.com/")
        assert is_http_url("http://example.com")
        assert not is_http_url("chrome://extensions")
        assert not is_http_url("ftp://example.com/file")
        assert not is_http_url(None)

    def test_same_origin_default_port(self):
        assert same_origin("https://example.com/a", "https://example.com:443/b")

    def test_same_origin_case_insensitive_host(self):
        assert same_origin("https://Example.COM/a", "https://example.com/")

    def test_different_scheme_or_host(self):
        assert not same_origin("http://example.com/", "https://example.com/")
        assert not same_origin("https://other.com/", "https://example.com/")
        assert not same_origin("https://sub.example.com/", "https://example.com/")

    def test_same_page_ignores_query(self):
        assert same_page("https://example.com/a?x=1", "https://example.com/a")
        assert not same_page("https://example.com/a", "https://example.com/b")


class TestHelpers:

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_content_hash_is_sha256(self):
        digest = content_hash("hello")
        assert len(digest) == 64
        assert digest == content_hash("hello")
        assert digest != content_hash("hello!")

    def test_compact_json_key_order(self):
        assert compact_json({"b": 1, "a": 2}) == compact_json({"a": 2, "b": 1}) == '{"a":2,"b":1}'
