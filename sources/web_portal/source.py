"""
Web-portal source - logs into a vendor portal with a real browser, scrapes the
download pages of its sub-applications and fetches artifacts over HTTP with the
session's cookies.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from playwright.async_api import (
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeout,
)

from core.errors import (
    AuthenticationFailure,
    ConfigurationError,
    FetchFailure,
    NavigationFailure,
    ScrapeFailure,
)
from core.infra.browser import DEFAULT_USER_AGENT, BrowserSession
from core.infra.http import HttpClient
from core.infra.storage import format_file_size, remove_quietly
from core.interfaces import Source, SourceLogAdapter
from core.models import ArtifactCandidate, SourceConfig
from core.versioning import extract_version

from .scraping import RawLink, classify, clean_file_name, find_candidate_links

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "headless": True,
    "download_pattern": "/api/v2/downloads",
    "success_url_pattern": "**/startpage-workshop**",
    "username_selector": 'input[name="j_username"], input[type="text"]',
    "password_selector": 'input[name="j_password"], input[type="password"]',
    "submit_selector": 'button[type="submit"], input[type="submit"]',
    "login_timeout_ms": 30_000,
    "navigation_timeout_ms": 60_000,
    "frame_wait_ms": 10_000,
    "settle_delay": 3.0,
    "application_delay": 5.0,
    "download_timeout": 300.0,
    "locale": "de-DE",
}

_FRAMES_PRESENT = "() => document.querySelectorAll('iframe').length > 0"


class PortalState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    NAVIGATING = "navigating"
    SCRAPING = "scraping"
    IDLE = "idle"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class WebPortalSource(Source):
    """Scrapes download links from the sub-applications of an authenticated portal.

    The browser session is stateful and the portal rate-limits logins, so the
    orchestrator never runs two discovery cycles of this type at once.
    """

    source_type = "web_portal"
    required_fields = ("username", "password", "auth_url", "applications")
    exclusive = True

    def __init__(
        self,
        config: SourceConfig,
        *,
        browser: Optional[BrowserSession] = None,
        http: Optional[HttpClient] = None,
    ):
        super().__init__(config)
        self.log = SourceLogAdapter(logger, {"source_id": config.id})
        self._browser = browser
        self._http = http
        self.state = PortalState.UNAUTHENTICATED

    # ------------------------------------------------------------------ #
    def option(self, key: str) -> Any:
        return self.settings.get(key, DEFAULTS.get(key))

    @property
    def applications(self) -> Dict[str, Dict[str, Any]]:
        return self.settings.get("applications") or {}

    @property
    def storage_root(self) -> Optional[Path]:
        root = self.settings.get("storage_root")
        return Path(root) if root else None

    @property
    def fallback_success_pattern(self) -> str:
        configured = self.settings.get("fallback_success_url_pattern")
        if configured:
            return configured
        parts = urlsplit(self.settings["auth_url"])
        return f"{parts.scheme}://{parts.netloc}/**"

    @property
    def authenticated(self) -> bool:
        return self.state not in (PortalState.UNAUTHENTICATED, PortalState.AUTHENTICATING)

    # ------------------------------------------------------------------ #
    async def initialize(self) -> None:
        for name, app in self.applications.items():
            if not isinstance(app, dict) or not app.get("url"):
                raise ConfigurationError(
                    f"Application '{name}' has no url", source_id=self.id
                )

        if self.storage_root:
            self.storage_root.mkdir(parents=True, exist_ok=True)
        self.state = PortalState.UNAUTHENTICATED
        self.log.info(f"Web portal source ready ({len(self.applications)} applications)")

    async def discover(self) -> List[ArtifactCandidate]:
        self.log.info("Checking portal for new downloads")
        page = await self._session_page()

        if not self.authenticated:
            await self._login(page)

        candidates: List[ArtifactCandidate] = []
        for index, (app_name, app) in enumerate(self.applications.items()):
            if index:
                await asyncio.sleep(float(self.option("application_delay")))
            try:
                found = await self._check_application(page, app_name, app)
            except NavigationFailure as e:
                self.log.error(str(e))
                continue
            except ScrapeFailure as e:
                self.log.warning(str(e))
                continue
            self.log.info(f"{len(found)} downloads found in {app_name}")
            candidates.extend(found)

        self.state = PortalState.IDLE
        return candidates

    async def fetch(self, candidate: ArtifactCandidate, destination: Path) -> bool:
        self.log.info(f"Downloading {candidate.display_name}")
        try:
            http = await self._authenticated_http(candidate.locator)
            await http.download_to(candidate.locator, destination)
            size = destination.stat().st_size
            if size <= 0:
                raise FetchFailure("Downloaded file is empty", source_id=self.id)
            self.log.info(f"Download complete: {destination.name} ({format_file_size(size)})")
            return True
        except Exception as e:
            self.log.error(f"Download of {candidate.title} failed: {e}")
            remove_quietly(destination)
            return False

    async def enumerate_existing(self) -> List[ArtifactCandidate]:
        # A portal has nothing that predates this system.
        return []

    async def release(self) -> None:
        if self._browser is not None:
            await self._browser.stop()
            self._browser = None
        if self._http is not None:
            await self._http.close()
            self._http = None
        self.state = PortalState.UNAUTHENTICATED
        self.log.info("Browser session closed")

    def file_name_for(self, candidate: ArtifactCandidate) -> Optional[str]:
        return clean_file_name(candidate.locator)

    def statistics(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "applications": list(self.applications),
        }

    # ------------------------------------------------------------------ #
    # Session
    async def _session_page(self) -> Page:
        if self._browser is None:
            self._browser = BrowserSession(
                headless=_as_bool(self.option("headless")),
                user_agent=self.settings.get("user_agent") or DEFAULT_USER_AGENT,
                locale=self.option("locale"),
                timeout_ms=float(self.option("navigation_timeout_ms")),
                headers={"Accept-Language": "de-DE,de;q=0.9,en;q=0.8", "DNT": "1"},
            )
            self.log.info("Starting browser session")
        return await self._browser.page()

    def _on_login_page(self, page: Page) -> bool:
        auth = urlsplit(self.settings["auth_url"])
        current = urlsplit(page.url)
        return current.netloc == auth.netloc and current.path.rstrip("/") == auth.path.rstrip("/")

    async def _login(self, page: Page) -> None:
        self.state = PortalState.AUTHENTICATING
        self.log.info("Logging in")
        timeout = float(self.option("login_timeout_ms"))

        try:
            await page.goto(self.settings["auth_url"], wait_until="networkidle", timeout=timeout)
            await page.wait_for_selector(self.option("username_selector"), timeout=10_000)
            await page.fill(self.option("username_selector"), self.settings["username"])
            await page.fill(self.option("password_selector"), self.settings["password"])
            await page.click(self.option("submit_selector"))

            try:
                await page.wait_for_url(self.option("success_url_pattern"), timeout=timeout)
            except PlaywrightTimeout:
                await page.wait_for_url(self.fallback_success_pattern, timeout=timeout)
            await page.wait_for_load_state("networkidle")
        except PlaywrightError as e:
            self.state = PortalState.UNAUTHENTICATED
            raise AuthenticationFailure(f"Login failed: {e}", source_id=self.id) from e

        if self._on_login_page(page):
            self.state = PortalState.UNAUTHENTICATED
            raise AuthenticationFailure(
                f"Login failed: still on login page ({page.url})", source_id=self.id
            )

        self.state = PortalState.AUTHENTICATED
        self.log.info("Login successful")

    async def _navigate(self, page: Page, app_name: str, url: str) -> None:
        self.state = PortalState.NAVIGATING
        try:
            await page.goto(url, wait_until="networkidle", timeout=float(self.option("navigation_timeout_ms")))
            await page.wait_for_load_state("domcontentloaded")
        except PlaywrightError as e:
            raise NavigationFailure(f"Could not open {app_name}: {e}", source_id=self.id) from e

    # ------------------------------------------------------------------ #
    # Scraping
    async def _check_application(
        self, page: Page, app_name: str, app: Dict[str, Any]
    ) -> List[ArtifactCandidate]:
        self.log.info(f"Navigating to {app_name}")
        await self._navigate(page, app_name, app["url"])

        if self._on_login_page(page):
            self.log.warning("Session expired, logging in again")
            self.state = PortalState.UNAUTHENTICATED
            await self._login(page)
            await self._navigate(page, app_name, app["url"])

        await asyncio.sleep(float(self.option("settle_delay")))

        self.state = PortalState.SCRAPING
        try:
            await page.wait_for_function(_FRAMES_PRESENT, timeout=float(self.option("frame_wait_ms")))
        except PlaywrightTimeout:
            self.log.debug("No frames found, scanning the main document only")

        try:
            links = await find_candidate_links(page, self.option("download_pattern"))
        except PlaywrightError as e:
            raise ScrapeFailure(f"Scraping {app_name} failed: {e}", source_id=self.id) from e

        return self.to_candidates(links, app_name, app.get("categories") or {})

    def to_candidates(
        self, links: List[RawLink], app_name: str, vocabulary: Dict[str, str]
    ) -> List[ArtifactCandidate]:
        candidates: List[ArtifactCandidate] = []
        for link in links:
            category = classify(link.title, vocabulary)
            if category is None:
                self.log.debug(f"Unclassified entry skipped: {link.title}")
                continue
            candidates.append(ArtifactCandidate(
                title=link.title,
                version=extract_version(link.title),
                locator=link.url,
                category=category,
                display_name=vocabulary.get(category, link.title),
                method=link.method,
                metadata={"application": app_name, "raw_title": link.title},
            ))
        return candidates

    # ------------------------------------------------------------------ #
    # Downloads
    async def _authenticated_http(self, url: str) -> HttpClient:
        if self._http is None:
            self._http = HttpClient(
                download_timeout=float(self.option("download_timeout")),
                default_headers={
                    "User-Agent": self.settings.get("user_agent") or DEFAULT_USER_AGENT,
                    "Accept": "*/*",
                    "Cache-Control": "no-cache",
                    "Pragma": "no-cache",
                },
            )
        if self._browser is not None:
            self._http.set_cookies(await self._browser.cookies_for(url))
        return self._http
