"""Page fetcher: render one page in a leased browser context and extract text + links."""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from app.config import get_settings
from app.core.urls import is_crawlable, is_same_site, normalize_url, resolve_link

settings = get_settings()
logger = logging.getLogger(__name__)

_BLOCKED_RESOURCE_TYPES = {"image", "media", "font", "stylesheet"}
_BLOCKED_DOMAINS = (
    "google-analytics.com",
    "googletagmanager.com",
    "doubleclick.net",
    "facebook.net",
    "hotjar.com",
    "segment.io",
    "mixpanel.com",
    "intercom.io",
)

# Summary mode: first container with enough text wins
_CONTENT_SELECTORS = (
    "main",
    "article",
    "[role=main]",
    ".content",
    "#content",
    ".main-content",
    "#main-content",
)
_MIN_CONTAINER_CHARS = 100


@dataclass
class PageResult:
    url: str
    title: str = ""
    content: str = ""
    links: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)


def extract_content(html: str, full_page_content: bool, max_chars: int) -> tuple[str, str]:
    """Return (title, text) from raw HTML."""
    soup = BeautifulSoup(html, "lxml")

    for tag in soup(["script", "style", "noscript", "iframe", "svg"]):
        tag.decompose()

    title = ""
    title_tag = soup.find("title")
    if title_tag:
        title = title_tag.get_text(strip=True)

    text = ""
    if not full_page_content:
        for selector in _CONTENT_SELECTORS:
            node = soup.select_one(selector)
            if node is None:
                continue
            candidate = " ".join(node.get_text(separator=" ", strip=True).split())
            if len(candidate) > _MIN_CONTAINER_CHARS:
                text = candidate
                break

    if not text:
        body = soup.find("body") or soup
        text = " ".join(body.get_text(separator=" ", strip=True).split())

    return title, text[:max_chars]


def extract_links(
    html: str,
    page_url: str,
    seed_host: str,
    allow_subdomains: bool = False,
) -> list[str]:
    """Same-site, crawlable, de-duplicated absolute links found in ``html``."""
    soup = BeautifulSoup(html, "lxml")
    seen: set[str] = set()
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        absolute = resolve_link(anchor["href"], page_url)
        if absolute is None:
            continue
        if not is_same_site(absolute, seed_host, allow_subdomains) or not is_crawlable(absolute):
            continue
        key = normalize_url(absolute)
        if key in seen:
            continue
        seen.add(key)
        links.append(absolute)
    return links


class PageFetcher:
    """Fetches pages with Playwright. Page-level failures come back as ``PageResult.error``."""

    def __init__(
        self,
        max_content_chars: int = settings.crawl_max_content_chars,
        allow_subdomains: bool = settings.crawl_allow_subdomains,
    ):
        self.max_content_chars = max_content_chars
        self.allow_subdomains = allow_subdomains

    async def fetch(
        self,
        url: str,
        context: Any,
        timeout: float = settings.crawl_page_timeout_seconds,
        full_page_content: bool = False,
        seed_host: str | None = None,
    ) -> PageResult:
        seed_host = seed_host or urlsplit(url).hostname or ""
        page = None
        try:
            page = await context.new_page()
            await page.route("**/*", self._block_heavy_resources)

            response = await page.goto(
                url,
                wait_until="networkidle",
                timeout=timeout * 1000,
            )
            if response is None:
                return PageResult(url=url, error="No response")
            if response.status >= 400:
                return PageResult(url=url, error=f"HTTP {response.status}")

            content_type = (response.headers or {}).get("content-type", "")
            if content_type and "text/html" not in content_type and "application/xhtml" not in content_type:
                return PageResult(url=url, error=f"Not an HTML page: {content_type}")

            html = await page.content()
        except Exception as e:
            logger.warning("Failed to fetch %s: %s", url, e)
            return PageResult(url=url, error=_describe_error(e))
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as e:
                    logger.debug("Ignoring page close error for %s: %s", url, e)

        title, text = extract_content(html, full_page_content, self.max_content_chars)
        if not text:
            return PageResult(url=url, title=title, error="No text content extracted")

        links = extract_links(html, url, seed_host, self.allow_subdomains)
        return PageResult(url=url, title=title or url, content=text, links=links)

    @staticmethod
    async def _block_heavy_resources(route: Any) -> None:
        request = route.request
        host = (urlsplit(request.url).hostname or "").lower()
        if request.resource_type in _BLOCKED_RESOURCE_TYPES or any(
            host == d or host.endswith("." + d) for d in _BLOCKED_DOMAINS
        ):
            await route.abort()
        else:
            await route.continue_()


def _describe_error(exc: Exception) -> str:
    name = type(exc).__name__
    if "Timeout" in name:
        return f"Timeout: {str(exc).splitlines()[0] if str(exc) else name}"
    message = str(exc).splitlines()[0] if str(exc) else name
    return message[:500]
