from __future__ import annotations

from scrapeprep.utils.urls import derive_site, normalize_base_url


def test_normalize_base_url() -> None:
    assert normalize_base_url("https://shop.example.com/products/?page=2#top") == "https://shop.example.com/products"
    assert normalize_base_url("  http://example.com/  ") == "http://example.com"
    assert normalize_base_url("ftp://example.com/files") is None
    assert normalize_base_url("not a url") is None
    assert normalize_base_url("") is None
    assert normalize_base_url(None) is None


def test_derive_site() -> None:
    assert derive_site("https://Shop.Example.com:8443/products") == "shop.example.com"
    assert derive_site(None) is None
    assert derive_site("relative/path") is None
