from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Protocol

import httpx

from listingcore.app.core.rate_limit import TokenBucket
from listingcore.app.core.retry import backoff_delay
from listingcore.app.core.settings import settings

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

MAX_INPUT_CHARS = 500

SYSTEM_PROMPT = (
    "You normalize Porsche factory option lists. Return ONLY a JSON array of option names "
    "using official Porsche naming, expanding abbreviations (PCCB -> Porsche Ceramic Composite Brakes, "
    "PDK -> Porsche Doppelkupplung (PDK), PASM -> Porsche Active Suspension Management). "
    "Drop colors, prices, mileage and dealer remarks."
)

_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)
_DELIMITERS = re.compile(r"[,;\n]+")


class OptionsServiceError(Exception):
    """Base exception for the options normalization service."""


class OptionsServiceRetryableError(OptionsServiceError):
    """Raised when a retryable HTTP status/error is encountered."""


class OptionsTextClient(Protocol):
    async def extract_option_names(self, text: str) -> List[str]: ...


class AsyncTransport(Protocol):
    async def post(
        self,
        path: str,
        json: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
    ) -> httpx.Response: ...

    async def close(self) -> None: ...


class HttpxTransport:
    """httpx-based transport with connection pooling."""

    def __init__(self, base_url: str):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=None)

    async def post(
        self,
        path: str,
        json: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        return await self._client.post(path, json=json, headers=headers, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()


def parse_option_names(content: str) -> List[str]:
    """Pull option names out of a model reply: a JSON array, else delimiter-separated text."""
    if not content:
        return []
    match = _JSON_ARRAY.search(content)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return _dedupe(str(item) for item in parsed if isinstance(item, (str, int, float)))
    stripped = content.strip().strip("[]")
    return _dedupe(part.strip().strip("\"'") for part in _DELIMITERS.split(stripped))


def _dedupe(names) -> List[str]:
    seen = set()
    result = []
    for name in names:
        cleaned = name.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


class HttpOptionsTextClient:
    """Async client for an OpenAI-compatible chat-completions endpoint that rewrites option text."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: float = 0.5,
        rate_limiter: Optional[TokenBucket] = None,
        transport: Optional[AsyncTransport] = None,
    ):
        self.api_key = api_key or settings.options_api_key
        self.base_url = (base_url or settings.options_api_url).rstrip("/")
        self.model = model or settings.options_model
        self.timeout = timeout if timeout is not None else settings.options_timeout
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.options_max_attempts)
        self.backoff_base = backoff_base
        self._limiter = rate_limiter
        self._transport = transport or HttpxTransport(self.base_url)
        self._owns_transport = transport is None
        self._headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.close()

    async def extract_option_names(self, text: str) -> List[str]:
        truncated = (text or "")[:MAX_INPUT_CHARS]
        if not truncated.strip():
            return []
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Normalize these options: {truncated}"},
            ],
        }
        body = await self._post("/chat/completions", payload)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OptionsServiceError("Unexpected completion payload") from exc
        return parse_option_names(content or "")

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        attempts = 0
        last_error: Optional[Exception] = None
        while attempts < self.max_attempts:
            if self._limiter is not None:
                await self._limiter.acquire()
            try:
                response = await self._transport.post(path, json=payload, headers=self._headers, timeout=self.timeout)
            except httpx.RequestError as exc:
                last_error = exc
                await self._maybe_wait(attempts)
                attempts += 1
                continue

            if response.status_code in RETRYABLE_STATUS:
                last_error = OptionsServiceRetryableError(f"Options service returned {response.status_code} for {path}")
                await self._maybe_wait(attempts)
                attempts += 1
                continue

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise OptionsServiceError(str(exc)) from exc

            try:
                return response.json()
            except ValueError as exc:
                raise OptionsServiceError("Invalid JSON from options service") from exc

        if isinstance(last_error, OptionsServiceError):
            raise last_error
        if last_error:
            raise OptionsServiceRetryableError(str(last_error)) from last_error
        raise OptionsServiceError("Options service request failed")

    async def _maybe_wait(self, attempt: int) -> None:
        if attempt >= self.max_attempts - 1:
            return
        await asyncio.sleep(backoff_delay(self.backoff_base, attempt))
