"""
Host Pattern Tables
===================
Ordered ``(category, regex)`` tables used to bucket captured requests.

A table is evaluated top to bottom and the first matching row wins, so
new providers are added by appending (or inserting) a row rather than
by touching the callers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

ANALYTICS = "analytics"
TECH_STACK = "tech_stack"
CDN = "cdn"


@dataclass
class PatternRule:
    category: str
    pattern: str
    _compiled: Optional[Pattern] = field(default=None, repr=False, compare=False)

    @property
    def regex(self) -> Pattern:
        if self._compiled is None:
            self._compiled = re.compile(self.pattern, re.IGNORECASE)
        return self._compiled

    def matches(self, value: str) -> bool:
        return bool(value) and self.regex.search(value) is not None


class PatternTable:
    """An ordered list of rules; ``classify`` returns the first match."""

    def __init__(self, rules: Iterable[Tuple[str, str]] = ()):
        self._rules: List[PatternRule] = [PatternRule(c, p) for c, p in rules]

    @property
    def rules(self) -> Sequence[PatternRule]:
        return tuple(self._rules)

    def add(self, category: str, pattern: str, position: Optional[int] = None) -> None:
        rule = PatternRule(category, pattern)
        if position is None:
            self._rules.append(rule)
        else:
            self._rules.insert(position, rule)

    def classify(self, value: str) -> Optional[str]:
        for rule in self._rules:
            if rule.matches(value):
                return rule.category
        return None


# ---------------------------------------------------------------------------
# Default tables
# ---------------------------------------------------------------------------

# Narrow GA/GTM pattern: those hosts batch many events in one body.
GA_HOST_PATTERN = r"(google-analytics|analytics\.google|googletagmanager|gtag|gtm)"

# Used to pick the similarity threshold and the retrieval bucket.
RETRIEVAL_ANALYTICS_PATTERN = (
    r"(google-analytics|analytics\.google|googletagmanager|gtag|gtm|segment|"
    r"mixpanel|amplitude|hotjar|clarity|hubspot|adroll|facebook|meta|tiktok)"
)
RETRIEVAL_TECH_PATTERN = (
    r"(vercel|netlify|cloudflare|aws|azure|gcp|contentful|wordpress|shopify|"
    r"nextjs|react|vue)"
)

# Wider tables used to decide which calls are worth embedding.
INDEX_ANALYTICS_PATTERN = (
    r"(google-analytics|analytics\.google|googletagmanager|gtag|gtm|segment|"
    r"mixpanel|amplitude|hotjar|clarity|hubspot|adroll|facebook|meta|tiktok|"
    r"linkedin|twitter|pinterest|reddit|quora|bing|microsoft|sentry|datadog|"
    r"newrelic|fullstory|heap|pendo|optimizely|vwo|ab-tasty|doubleclick|"
    r"googleadservices|googlesyndication)"
)
INDEX_TECH_PATTERN = (
    r"(vercel|netlify|cloudflare|aws|azure|gcp|fastly|akamai|cloudfront|"
    r"contentful|wordpress|shopify|sanity|strapi|prismic|drupal|squarespace|"
    r"wix|webflow|nextjs|react|vue|angular|svelte|nuxt|gatsby)"
)
INDEX_CDN_PATTERN = r"(cdn|static|assets|jsdelivr|unpkg|cdnjs)"

STATIC_ASSET_PATTERN = (
    r"\.(png|jpe?g|gif|svg|webp|ico|bmp|avif|woff2?|ttf|otf|eot|css|js|mjs|map|"
    r"mp4|webm|mp3|wav|ogg|zip|gz|tar|rar|7z|pdf)$"
)


def retrieval_table() -> PatternTable:
    return PatternTable([
        (ANALYTICS, RETRIEVAL_ANALYTICS_PATTERN),
        (TECH_STACK, RETRIEVAL_TECH_PATTERN),
    ])


def indexing_table() -> PatternTable:
    return PatternTable([
        (ANALYTICS, INDEX_ANALYTICS_PATTERN),
        (TECH_STACK, INDEX_TECH_PATTERN),
        (CDN, INDEX_CDN_PATTERN),
    ])


def is_ga_host(host: str) -> bool:
    return bool(host) and re.search(GA_HOST_PATTERN, host, re.IGNORECASE) is not None


def is_analytics_host(host: str) -> bool:
    return bool(host) and re.search(RETRIEVAL_ANALYTICS_PATTERN, host, re.IGNORECASE) is not None


def is_static_asset(pathname: str) -> bool:
    return bool(pathname) and re.search(STATIC_ASSET_PATTERN, pathname, re.IGNORECASE) is not None
