"""
Link scraping and classification helpers for portal pages.

Pages are read through Playwright, but parsing happens on the HTML with
BeautifulSoup so the rules can be exercised without a browser.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, unquote, urljoin, urlsplit

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError, Page
from pydantic import BaseModel

from core.infra.storage import sanitize_file_name

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = (".pdf",)
SUFFIX_NOISE = (".download", ".crdownload", ".part")
KEY_PARAMS = ("key", "path", "file", "filename")

# Generic buckets for titles that match nothing in the vocabulary
FALLBACK_RULES: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("installer", "setup"), "installer"),
    (("data", "daten"), "data_archive"),
    (("client",), "client"),
    (("firmware",), "firmware"),
)

_ONCLICK_URL = re.compile(r"""['"]([^'"]*download[^'"]*)['"]""", re.IGNORECASE)
_BASE64_TEXT = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")


class RawLink(BaseModel):
    """A download entry as scraped, before classification."""
    title: str
    url: str
    method: str


# --------------------------------------------------------------------------- #
# HTML parsing
def _is_document(value: str) -> bool:
    lowered = value.lower()
    return any(suffix in lowered for suffix in DOCUMENT_SUFFIXES)


def extract_links(html: str, base_url: str, pattern: str, label: str = "main") -> List[RawLink]:
    """Find download links and download buttons in one HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    found: List[RawLink] = []

    for anchor in soup.select("a[href]"):
        href = urljoin(base_url, anchor["href"].strip())
        text = anchor.get_text(" ", strip=True)
        if _is_document(href) or _is_document(text):
            continue
        if text and pattern in href:
            found.append(RawLink(title=text, url=href, method=f"link_search_{label}"))

    for button in soup.select('button, [role="button"]'):
        text = button.get_text(" ", strip=True)
        onclick = button.get("onclick") or ""
        if not text or "download" not in onclick.lower():
            continue
        match = _ONCLICK_URL.search(onclick)
        url = urljoin(base_url, match.group(1)) if match else onclick
        if _is_document(url) or _is_document(text):
            continue
        found.append(RawLink(title=text, url=url, method=f"button_search_{label}"))

    return found


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _is_local_frame(url: str) -> bool:
    return not url or url.startswith("about:")


async def collect_documents(page: Page) -> List[Tuple[str, str, str]]:
    """Return ``(label, url, html)`` for the top document and same-origin frames.

    Cross-origin frames and frames that cannot be read are skipped.
    """
    documents = [("main", page.url, await page.content())]
    page_origin = _origin(page.url)

    frames = [f for f in page.frames if f is not page.main_frame]
    for index, frame in enumerate(frames):
        if frame.is_detached():
            continue
        local = _is_local_frame(frame.url)
        if not local and _origin(frame.url) != page_origin:
            logger.debug(f"Skipping cross-origin frame {index}: {frame.url}")
            continue
        try:
            html = await frame.content()
        except PlaywrightError as e:
            logger.debug(f"Frame {index} not readable: {e}")
            continue
        # about:blank and srcdoc frames resolve links against their parent
        documents.append((f"frame_{index}", page.url if local else frame.url, html))

    return documents


async def find_candidate_links(page: Page, pattern: str) -> List[RawLink]:
    """Scrape download entries from a page and its same-origin frames."""
    links: List[RawLink] = []
    seen = set()
    for label, url, html in await collect_documents(page):
        for link in extract_links(html, url, pattern, label):
            if link.url in seen:
                continue
            seen.add(link.url)
            links.append(link)
    return links


# --------------------------------------------------------------------------- #
# Classification
def classify(title: str, vocabulary: Dict[str, str]) -> Optional[str]:
    """Map a scraped title onto a category key, or None if it fits nowhere."""
    lowered = title.lower()

    for key in vocabulary:
        key_lower = key.lower()
        if key_lower in lowered or key_lower.replace("_", " ") in lowered:
            return key

    for words, generic in FALLBACK_RULES:
        if any(word in lowered for word in words):
            for key in vocabulary:
                if generic in key.lower():
                    return key
            return generic

    return None


# --------------------------------------------------------------------------- #
# File names
def _maybe_base64(value: str) -> str:
    if not _BASE64_TEXT.match(value):
        return value
    padded = value + "=" * (-len(value) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
        text = decoded.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value
    if text.isprintable() and ("." in text or "/" in text):
        return text
    return value


def clean_file_name(locator: str) -> Optional[str]:
    """Derive a storage file name from a download URL.

    Prefers a file key embedded in the query (URL- or base64-encoded), falls
    back to the last path segment, and strips session ids and suffix noise.
    """
    parts = urlsplit(locator)
    query = parse_qs(parts.query)

    name = ""
    for param in KEY_PARAMS:
        values = query.get(param)
        if values and values[0]:
            # parse_qs turns a literal "+" into a space
            embedded = _maybe_base64(values[0].replace(" ", "+")).replace("\\", "/")
            name = embedded.rstrip("/").split("/")[-1]
            break

    if not name:
        path = unquote(parts.path).split(";", 1)[0]
        name = path.rstrip("/").split("/")[-1]

    name = name.split(";", 1)[0]
    lowered = name.lower()
    for noise in SUFFIX_NOISE:
        if lowered.endswith(noise):
            name = name[: -len(noise)]
            break

    name = sanitize_file_name(name).strip("._")
    return name or None
