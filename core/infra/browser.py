"""
browser.py - one stateful Chromium session for a source that logs in through
a form and reads script-rendered pages.

The context holds the cookies of the logged-in session; ``cookies_for()``
hands them to the HTTP client so downloads do not go through the browser.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# navigator.webdriver gives automation away to some login pages
_HIDE_WEBDRIVER = "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"


class BrowserSession:
    """Lazily launched browser, context and page owned by one source instance."""

    def __init__(
        self,
        *,
        headless: bool = True,
        timeout_ms: float = 60_000,
        user_agent: Optional[str] = None,
        locale: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.locale = locale
        self.headers = headers or {}

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def start(self) -> None:
        if self._page is not None:
            return

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-blink-features=AutomationControlled"],
        )

        options: Dict[str, Any] = {
            "user_agent": self.user_agent,
            "viewport": {"width": 1920, "height": 1080},
            "accept_downloads": True,
        }
        if self.locale:
            options["locale"] = self.locale
        if self.headers:
            options["extra_http_headers"] = self.headers
        self._context = await self._browser.new_context(**options)
        await self._context.add_init_script(_HIDE_WEBDRIVER)

        self._page = await self._context.new_page()
        self._page.set_default_timeout(self.timeout_ms)
        if logger.isEnabledFor(logging.DEBUG):
            def _log_console(msg) -> None:
                if msg.type == "error":
                    logger.debug("Console error: %s", msg.text)

            self._page.on("console", _log_console)
        logger.info("Browser session started (headless=%s)", self.headless)

    async def stop(self) -> None:
        """Close page, context and browser; safe to call when never started."""
        self._page = None
        if self._context:
            await self._context.close()
            self._context = None
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Browser session stopped")

    async def page(self) -> Page:
        """The session page, launching the browser on first use."""
        if self._page is None:
            await self.start()
        return self._page

    async def cookies_for(self, url: Optional[str] = None) -> Dict[str, str]:
        """Session cookies as a name -> value map, optionally scoped to ``url``."""
        if not self._context:
            return {}
        cookies = await self._context.cookies(url) if url else await self._context.cookies()
        return {c["name"]: c["value"] for c in cookies}
