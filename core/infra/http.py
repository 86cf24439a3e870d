"""
http.py - async HTTP client built on *aiohttp* with retries, transparent
          429 / 5xx back-off and streaming downloads to disk.
"""

from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path
from typing import Dict, Mapping, Optional

import aiohttp

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)
CHUNK_SIZE = 64 * 1024


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * per-instance default headers and cookies (an authenticated channel can
      reuse the credentials of a browser session)
    * exponential back-off **with jitter** for 429 / 5xx / connection errors
    * `download_to()` which streams a response body into a file
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        download_timeout: float = 300.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        default_headers: Optional[Mapping[str, str]] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._timeout = timeout
        self._download_timeout = download_timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._default_headers: Dict[str, str] = dict(default_headers or {})
        self._cookies: Dict[str, str] = dict(cookies or {})
        self._session: Optional[aiohttp.ClientSession] = None

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout, cookies=self._cookies)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ---------------------------------------------- #
    # Credentials
    def set_cookies(self, cookies: Mapping[str, str]) -> None:
        """Replace the cookie jar; takes effect on the next request."""
        self._cookies = dict(cookies)
        if self._session and not self._session.closed:
            self._session.cookie_jar.clear()
            self._session.cookie_jar.update_cookies(self._cookies)

    # ---------------------------------------------- #
    # Internal helpers
    def _backoff(self, attempt: int) -> float:
        exponential = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        return exponential + random.uniform(0, self._base_delay)

    async def _request(self, method: str, url: str, **kwargs) -> aiohttp.ClientResponse:
        """Perform a request with retries; the caller must release the response."""
        session = await self._ensure_session()
        headers = {**self._default_headers, **(kwargs.pop("headers", None) or {})}

        for attempt in range(1, self._max_retries + 1):
            try:
                resp = await session.request(method, url, headers=headers, **kwargs)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                if attempt == self._max_retries:
                    logger.error("HTTP %s %s failed after %d attempts: %s", method, url, attempt, e)
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "HTTP %s %s failed (attempt %d/%d, retry in %.1fs): %s",
                    method, url, attempt, self._max_retries, delay, e,
                )
                await asyncio.sleep(delay)
                continue

            if resp.status in RETRY_STATUSES and attempt < self._max_retries:
                resp.release()
                delay = self._backoff(attempt)
                logger.warning(
                    "HTTP %s %s returned %d (attempt %d/%d, retry in %.1fs)",
                    method, url, resp.status, attempt, self._max_retries, delay,
                )
                await asyncio.sleep(delay)
                continue

            if resp.status >= 400:
                resp.release()
                resp.raise_for_status()
            return resp

        raise RuntimeError("Unreachable retry loop")

    # ---------------------------------------------- #
    # Public helpers
    async def download_to(self, url: str, target: Path, **kwargs) -> int:
        """Stream ``url`` into ``target`` and return the number of bytes written.

        A partially written file is left in place on error; callers decide
        whether to remove it.
        """
        kwargs.setdefault("timeout", aiohttp.ClientTimeout(total=self._download_timeout))
        target.parent.mkdir(parents=True, exist_ok=True)

        written = 0
        resp = await self._request("GET", url, **kwargs)
        async with resp:
            with target.open("wb") as fh:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    fh.write(chunk)
                    written += len(chunk)
        logger.debug("Downloaded %s -> %s (%d bytes)", url, target, written)
        return written
