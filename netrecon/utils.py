"""
Utility Functions
URL normalization, origin checks, token estimates, fingerprints and retry logic.
"""

import asyncio
import hashlib
import json
import logging
import math
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {'http': 80, 'https': 443}


def normalize_url(url: str) -> str:
    """
    Normalize a URL for dedup comparison.

    Lowercases the scheme and host, drops the default port, turns an
    empty path into ``/``, strips the fragment and sorts query parameters
    by key (stable, so repeated keys keep their relative order).
    Unparseable input is returned unchanged.

    Args:
        url: The URL to normalize

    Returns:
        Normalized URL string
    """
    if not url:
        return url
    try:
        parsed = urlparse(url.strip())
        port = parsed.port
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url

    scheme = parsed.scheme.lower()
    host = parsed.hostname or ''
    if ':' in host:
        host = f'[{host}]'
    netloc = host
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        netloc = f'{host}:{port}'
    userinfo, sep, _ = parsed.netloc.rpartition('@')
    if sep:
        netloc = f'{userinfo}@{netloc}'

    query = parsed.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        pairs.sort(key=lambda kv: kv[0])
        query = urlencode(pairs)

    return urlunparse((
        scheme,
        netloc,
        parsed.path or '/',
        parsed.params,
        query,
        ''
    ))


def is_http_url(url: Optional[str]) -> bool:
    """Check if URL is an absolute http(s) URL."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def origin_of(url: str) -> Optional[Tuple[str, str, int]]:
    """Return (scheme, host, port) for a URL, or None if it has no origin."""
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return None
    if parsed.scheme not in _DEFAULT_PORTS or not parsed.hostname:
        return None
    return (
        parsed.scheme,
        parsed.hostname.lower(),
        port or _DEFAULT_PORTS[parsed.scheme],
    )


def same_origin(url: str, other: str) -> bool:
    """Scheme + host + port match."""
    a = origin_of(url)
    return a is not None and a == origin_of(other)


def same_page(url: str, other: str) -> bool:
    """Same origin and same path (query and fragment ignored)."""
    if not same_origin(url, other):
        return False
    return (urlparse(url).path or '/') == (urlparse(other).path or '/')


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4) if text else 0


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a text."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def compact_json(value: Any) -> str:
    """Serialize with sorted keys so equal maps render identically."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(',', ':'))


class RetryHandler:
    """
    Handles async retry logic with exponential backoff.

    Errors listed in ``network_errors`` back off from ``network_base_delay``
    instead of ``base_delay``.  Errors listed in ``fatal_errors`` are raised
    immediately without retrying.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        network_base_delay: float = 5.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        network_errors: Tuple[Type[BaseException], ...] = (),
        fatal_errors: Tuple[Type[BaseException], ...] = (),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the retry handler.

        Args:
            max_attempts: Total attempts including the first one
            base_delay: Initial delay for ordinary errors, in seconds
            network_base_delay: Initial delay for network-class errors
            max_delay: Maximum delay between retries
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            network_errors: Exception types that use the longer backoff
            fatal_errors: Exception types that are never retried
            sleep: Awaitable sleep function (swapped out in tests)
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.network_base_delay = network_base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.network_errors = network_errors
        self.fatal_errors = fatal_errors
        self._sleep = sleep

    def calculate_delay(self, attempt: int, network: bool = False) -> float:
        """
        Calculate delay for given retry attempt.

        Args:
            attempt: Current attempt number (0-indexed)
            network: Whether the failure was network-class

        Returns:
            Delay in seconds
        """
        base = self.network_base_delay if network else self.base_delay
        delay = base * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            # ±25%
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await ``func(*args, **kwargs)`` with retry logic.

        Raises:
            Last exception if all attempts fail, or a fatal error at once
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)
            except self.fatal_errors:
                raise
            except Exception as e:
                last_exception = e
                if attempt + 1 >= self.max_attempts:
                    logger.error(f"All {self.max_attempts} attempts failed: {e}")
                    break
                network = bool(self.network_errors) and isinstance(e, self.network_errors)
                delay = self.calculate_delay(attempt, network=network)
                logger.warning(
                    f"Attempt {attempt + 1} failed "
                    f"({'network' if network else 'error'}): {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)

        raise last_exception
