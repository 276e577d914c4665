"""
Tests for CSV / JSON exports.
"""

import csv
import io
import json

from conftest import make_call

from netrecon.exporter import (
    ANALYTICS_HEADERS,
    NETWORK_HEADERS,
    TECH_STACK_HEADERS,
    export_analytics_csv,
    export_network_csv,
    export_network_json,
    export_tech_stack_csv,
    to_csv_text,
)
from netrecon.models import AnalyticsEvent, TechStackItem


def _read(path):
    with open(path, encoding="utf-8", newline="") as f:
        return list(csv.reader(f))


class TestCsvQuoting:

    def test_every_field_quoted_and_quotes_doubled(self):
        text = to_csv_text(["A", "B"], [['say "hi"', "x,y"]])
        assert text == '"A","B"\n"say ""hi""","x,y"\n'

    def test_round_trip_with_commas_quotes_and_newlines(self):
        rows = [['He said "yes", then left', "line1\nline2", "plain"], ["", "a,b,c", '""']]
        text = to_csv_text(["one", "two", "three"], rows)
        parsed = list(csv.reader(io.StringIO(text)))
        assert parsed == [["one", "two", "three"]] + rows

    def test_none_becomes_empty(self):
        assert to_csv_text(["A"], [[None]]) == '"A"\n""\n'


class TestExports:

    def test_tech_stack_csv(self, tmp_path):
        items = [TechStackItem("Next.js", "framework", 0.95, ["x-powered-by: Next.js", "/_next/ path"], 3)]
        path = export_tech_stack_csv(items, str(tmp_path / "out" / "tech.csv"))

        rows = _read(path)
        assert rows[0] == TECH_STACK_HEADERS
        assert rows[1] == ["Next.js", "framework", "0.95", "3", "x-powered-by: Next.js | /_next/ path"]

    def test_analytics_csv(self, tmp_path):
        events = [AnalyticsEvent("GA4", "add_to_cart", "https://example.com/p", "https://ga/collect?a=1,2",
                                 'value "9.99"', 2)]
        rows = _read(export_analytics_csv(events, str(tmp_path / "analytics.csv")))

        assert rows[0] == ANALYTICS_HEADERS
        assert rows[1] == ["GA4", "add_to_cart", "https://example.com/p", "https://ga/collect?a=1,2",
                           'value "9.99"', "2"]

    def test_network_csv(self, tmp_path):
        calls = [
            make_call("https://api.example.com/v1?b=2&a=1", "POST", '{"k": "v, w"}'),
            make_call("https://example.com/img"),
        ]
        rows = _read(export_network_csv(calls, str(tmp_path / "network.csv")))

        assert rows[0] == NETWORK_HEADERS
        assert rows[1] == [
            "https://example.com/", "https://api.example.com/v1?b=2&a=1", "POST", "api.example.com",
            "/v1", '{"a":"1","b":"2"}', "Yes", '{"k": "v, w"}',
        ]
        assert rows[2][5:] == ["", "No", ""]

    def test_network_json(self, tmp_path):
        calls = [make_call("https://api.example.com/x", "POST", "é body")]
        path = export_network_json(calls, str(tmp_path / "calls.json"))

        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        assert data[0]["url"] == "https://api.example.com/x"
        assert data[0]["post_data"] == "é body"
