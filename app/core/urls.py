"""URL validation, normalization and same-site filtering for the crawler."""

import re
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

from app.core.errors import InvalidCrawlRequestError

_SKIP_SCHEMES = re.compile(r"^(mailto:|tel:|javascript:|data:|#)", re.IGNORECASE)

# Hosts that are never part of a site's own content
_EXTERNAL_HOSTS = (
    "twitter.com", "x.com", "facebook.com", "instagram.com",
    "youtube.com", "linkedin.com", "pinterest.com", "reddit.com",
    "tiktok.com", "snapchat.com", "whatsapp.com", "telegram.org",
)

_SKIP_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico",
    ".mp4", ".mp3", ".wav", ".avi", ".mov",
    ".zip", ".rar", ".tar", ".gz",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".css", ".js", ".json", ".xml", ".txt", ".csv",
)

_SKIP_PATHS = ("/api/", "/assets/", "/static/", "/download/", "/files/")


def validate_seed_url(url: str) -> str:
    """Return the stripped seed URL or raise InvalidCrawlRequestError."""
    url = (url or "").strip()
    if not url:
        raise InvalidCrawlRequestError("URL is required")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise InvalidCrawlRequestError(f"Unsupported URL scheme: {parts.scheme or '(none)'}")
    if not parts.hostname:
        raise InvalidCrawlRequestError("URL has no host")
    return url


def clamp_max_pages(max_pages: int | None, default: int = 10, limit: int = 1000) -> int:
    """Clamp a requested page cap to [1, limit]."""
    if max_pages is None:
        return default
    return max(1, min(int(max_pages), limit))


def normalize_url(url: str) -> str:
    """Normalize a URL for visited-set keys.

    Lowercases scheme and host, drops the fragment and default ports, and
    removes a trailing slash from the path. The query string is kept.
    """
    url, _ = urldefrag(url.strip())
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"
    path = parts.path.rstrip("/")
    return urlunsplit((scheme, host, path, parts.query, ""))


def resolve_link(href: str, base_url: str) -> str | None:
    """Resolve an href against the page URL; None for non-http(s) links."""
    href = (href or "").strip()
    if not href or _SKIP_SCHEMES.match(href):
        return None
    try:
        absolute = urljoin(base_url, href)
    except ValueError:
        return None
    absolute, _ = urldefrag(absolute)
    if urlsplit(absolute).scheme not in ("http", "https"):
        return None
    return absolute


def site_key(host: str) -> str:
    """Registrable-site key of a host (``www.`` ignored)."""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def is_same_site(url: str, seed_host: str, allow_subdomains: bool = False) -> bool:
    """Whether ``url`` belongs to the site rooted at ``seed_host``."""
    host = urlsplit(url).hostname
    if not host:
        return False
    base = site_key(seed_host)
    candidate = site_key(host)
    if candidate == base:
        return True
    return allow_subdomains and candidate.endswith("." + base)


def is_crawlable(url: str) -> bool:
    """Reject social hosts, binary/asset files and non-content paths."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if any(host == h or host.endswith("." + h) for h in _EXTERNAL_HOSTS):
        return False
    path = parts.path.lower()
    if path.endswith(_SKIP_EXTENSIONS):
        return False
    return not any(skip in path for skip in _SKIP_PATHS)

