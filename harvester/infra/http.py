"""
http.py – Async HTTP client built on *aiohttp* that maps upstream failures
          onto the harvest error taxonomy, with per-instance default headers.

Retrying is *not* done here: the paginator owns back-off so that throttling
and transient failures share one policy and one delay clock per session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from ..errors import FatalFetchError, FetchError, RateLimitedError, TransientFetchError

logger = logging.getLogger(__name__)

#: query parameters never written to logs
SECRET_PARAMS = frozenset({"access_token", "key", "api_key", "token", "client_secret"})

#: ``classify(status, payload) -> exception | None``; ``None`` falls back to
#: the status-code rules below
Classifier = Callable[[int, Any], Optional[FetchError]]


def redact(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """URL plus params with credential values masked, for logging."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, str(v)) for k, v in (params or {}).items())
    masked = [(k, "***" if k in SECRET_PARAMS else v) for k, v in query]
    return urlunsplit(parts._replace(query=urlencode(masked)))


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * global & per-request headers (keeps user-agent in one place)
    * transparent parsing of *Retry-After* header
    * classification: 429 → :class:`RateLimitedError`, 5xx / network /
      timeout → :class:`TransientFetchError`, other errors →
      :class:`FatalFetchError`
    * async context-manager support
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._external_session = session
        self._timeout = timeout
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._default_headers: Dict[str, str] = dict(default_headers or {})

    # ---------------------------------------------- #
    # Async context-manager
    async def __aenter__(self) -> "HttpClient":  # noqa: D401
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    # ---------------------------------------------- #
    # Internal helpers
    @staticmethod
    def parse_retry_after(header_val: str | None) -> Optional[float]:
        """Return seconds given a Retry-After header value."""
        if not header_val:
            return None
        header_val = header_val.strip()
        # seconds
        if header_val.isdigit():
            return float(header_val)
        # HTTP-date
        try:
            retry_at = parsedate_to_datetime(header_val).timestamp()
        except (TypeError, ValueError):
            return None
        return max(0.0, retry_at - time.time())

    def _merge_headers(self, extra: Mapping[str, str] | None) -> Dict[str, str]:
        merged: Dict[str, str] = {**self._default_headers}
        if extra:
            merged.update(extra)
        return merged

    @staticmethod
    def _default_classify(status: int, payload: Any, retry_after: Optional[float]) -> Optional[FetchError]:
        if 200 <= status < 300:
            return None
        detail = str(payload)[:200] if payload else ""
        if status == 429:
            return RateLimitedError(f"HTTP 429 {detail}".strip(), retry_after=retry_after)
        if status >= 500:
            return TransientFetchError(f"HTTP {status} {detail}".strip())
        return FatalFetchError(f"HTTP {status} {detail}".strip())

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        classify: Optional[Classifier] = None,
        **kwargs,
    ) -> Any:
        """Perform one request and return the decoded JSON body.

        ``classify`` lets a source recognise API-specific throttling carried
        in the body (e.g. Graph API error codes) before status rules apply.
        """
        session = await self._ensure_session()
        kwargs["headers"] = self._merge_headers(kwargs.pop("headers", None))
        shown = redact(url, kwargs.get("params"))

        logger.debug("%s %s", method, shown)
        try:
            async with session.request(method, url, **kwargs) as resp:
                text = await resp.text()
                retry_after = self.parse_retry_after(resp.headers.get("Retry-After"))
                status = resp.status
        except aiohttp.ClientConnectionError as exc:
            raise TransientFetchError(f"{method} {shown}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransientFetchError(f"{method} {shown}: timed out") from exc
        except aiohttp.ClientError as exc:
            raise FatalFetchError(f"{method} {shown}: {exc}") from exc

        payload: Any = None
        decode_error: Optional[Exception] = None
        if text:
            try:
                payload = json.loads(text)
            except ValueError as exc:
                decode_error = exc

        error = classify(status, payload) if classify else None
        if error is None:
            error = self._default_classify(status, payload if payload is not None else text, retry_after)
        if error is not None:
            if isinstance(error, RateLimitedError) and error.retry_after is None:
                error.retry_after = retry_after
            logger.debug("%s %s → %s", method, shown, error)
            raise error

        if decode_error is not None:
            raise FatalFetchError(f"{method} {shown}: malformed JSON ({decode_error})") from decode_error
        return payload

    # ---------------------------------------------- #
    # Public helpers
    async def get_json(self, url: str, **kwargs) -> Any:
        return await self.request_json("GET", url, **kwargs)
