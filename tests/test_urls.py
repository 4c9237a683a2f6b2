"""Tests for seed validation and link filtering."""

import pytest

from app.core.errors import InvalidCrawlRequestError
from app.core.urls import (
    clamp_max_pages,
    is_crawlable,
    is_same_site,
    normalize_url,
    resolve_link,
    validate_seed_url,
)


class TestValidateSeedUrl:
    def test_accepts_http_and_https(self):
        assert validate_seed_url("  https://example.com/docs ") == "https://example.com/docs"
        assert validate_seed_url("http://example.com") == "http://example.com"

    @pytest.mark.parametrize("url", ["", "   ", "ftp://example.com", "example.com", "https://"])
    def test_rejects_invalid(self, url):
        with pytest.raises(InvalidCrawlRequestError):
            validate_seed_url(url)


class TestClampMaxPages:
    def test_default_when_missing(self):
        assert clamp_max_pages(None, default=10) == 10

    def test_bounds(self):
        assert clamp_max_pages(0) == 1
        assert clamp_max_pages(-3) == 1
        assert clamp_max_pages(5000, limit=1000) == 1000
        assert clamp_max_pages(25) == 25


class TestNormalizeUrl:
    def test_equivalent_urls_share_a_key(self):
        variants = [
            "https://Example.com/docs/",
            "https://example.com/docs",
            "https://example.com:443/docs#intro",
        ]
        assert len({normalize_url(v) for v in variants}) == 1

    def test_query_is_kept(self):
        assert normalize_url("https://example.com/a?page=2") != normalize_url("https://example.com/a")

    def test_non_default_port_kept(self):
        assert normalize_url("http://example.com:8080/") == "http://example.com:8080"


class TestLinks:
    def test_resolve_relative(self):
        assert resolve_link("../b", "https://example.com/a/c") == "https://example.com/b"

    def test_resolve_drops_fragment(self):
        assert resolve_link("/page#top", "https://example.com/") == "https://example.com/page"

    @pytest.mark.parametrize("href", ["mailto:a@b.c", "tel:123", "javascript:void(0)", "#top", ""])
    def test_resolve_skips_non_navigable(self, href):
        assert resolve_link(href, "https://example.com/") is None

    def test_same_site_ignores_www(self):
        assert is_same_site("https://www.example.com/a", "example.com")
        assert is_same_site("https://example.com/a", "www.example.com")

    def test_subdomains_only_when_allowed(self):
        assert not is_same_site("https://blog.example.com/", "example.com")
        assert is_same_site("https://blog.example.com/", "example.com", allow_subdomains=True)
        assert not is_same_site("https://notexample.com/", "example.com", allow_subdomains=True)

    @pytest.mark.parametrize("url", [
        "https://example.com/report.pdf",
        "https://example.com/static/app.js",
        "https://example.com/api/items",
        "https://twitter.com/example",
        "https://m.facebook.com/example",
    ])
    def test_not_crawlable(self, url):
        assert not is_crawlable(url)

    def test_content_page_crawlable(self):
        assert is_crawlable("https://example.com/docs/getting-started")
