"""
Gemini Client
=============
Minimal async client for the two hosted model calls the pipeline makes:

- ``embed(text)``                 → ``text-embedding-004`` vector
- ``complete(system, payload)``   → ``gemini-2.5-flash`` free text

Both raise ``ModelAPIError`` on non-2xx responses.  Network failures
surface as ``aiohttp.ClientError`` / ``asyncio.TimeoutError`` so callers
can choose their own retry or fallback policy.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .errors import ModelAPIError

logger = logging.getLogger(__name__)

API_ROOT = "https://generativelanguage.googleapis.com/v1beta/models"
EMBEDDING_MODEL = "text-embedding-004"
COMPLETION_MODEL = "gemini-2.5-flash"


class GeminiClient:
    """
    Usage::

        async with GeminiClient(api_key) as client:
            vec = await client.embed("Host: www.google-analytics.com | ...")
            text = await client.complete(SYSTEM_PROMPT, payload)
    """

    def __init__(
        self,
        api_key: str,
        embedding_model: str = EMBEDDING_MODEL,
        completion_model: str = COMPLETION_MODEL,
        timeout_s: float = 120.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.embedding_model = embedding_model
        self.completion_model = completion_model
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GeminiClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _endpoint(self, model: str, method: str) -> str:
        return f"{API_ROOT}/{model}:{method}?key={quote(self.api_key, safe='')}"

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        session = self._ensure_session()
        async with session.post(url, json=body) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise ModelAPIError(f"Gemini API error {resp.status}: {text[:500]}", status=resp.status)
            return await resp.json(content_type=None)

    async def embed(self, text: str) -> List[float]:
        data = await self._post(
            self._endpoint(self.embedding_model, "embedContent"),
            {
                "model": f"models/{self.embedding_model}",
                "content": {"parts": [{"text": text}]},
            },
        )
        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise ModelAPIError("Embedding response carried no values")
        return [float(v) for v in values]

    async def complete(self, system_prompt: str, payload: Any) -> str:
        """Send the prompt plus the JSON payload; return the joined reply text."""
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": system_prompt},
                        {"text": "\n\nSlim network payload JSON:\n" + json.dumps(payload, indent=2, ensure_ascii=False)},
                    ]
                }
            ]
        }
        data = await self._post(self._endpoint(self.completion_model, "generateContent"), body)
        candidates = data.get("candidates") or []
        content = (candidates[0].get("content") or {}) if candidates else {}
        parts = content.get("parts") or []
        if not parts:
            raise ModelAPIError("No content returned from Gemini")
        text = "\n".join(p.get("text", "") for p in parts if isinstance(p, dict))
        logger.debug(f"[MODEL] Completion returned {len(text)} chars")
        return text
