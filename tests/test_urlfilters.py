from __future__ import annotations

import pytest

from crawldb_core.exceptions import ConfigValidationError
from crawldb_core.urlfilters import (
    AcceptAllURLFilter,
    BasicURLNormalizer,
    DomainURLFilter,
    PrefixURLFilter,
    RegexURLFilter,
    RegexURLNormalizer,
    URLFilter,
    URLFilters,
    URLNormalizers,
    build_url_filters,
    build_url_normalizers,
)


class TestRegexURLFilter:
    def test_first_matching_rule_decides(self) -> None:
        url_filter = RegexURLFilter(["-\\.(gif|jpg)$", "+^https?://", "# comment", ""])
        assert url_filter.filter("http://example.com/a.html") == "http://example.com/a.html"
        assert url_filter.filter("http://example.com/a.gif") is None

    def test_no_matching_rule_rejects(self) -> None:
        assert RegexURLFilter(["+^https://"]).filter("ftp://example.com/") is None

    def test_invalid_rules_are_config_errors(self) -> None:
        with pytest.raises(ConfigValidationError):
            RegexURLFilter(["^http"])
        with pytest.raises(ConfigValidationError):
            RegexURLFilter(["+(unclosed"])


def test_prefix_filter() -> None:
    url_filter = PrefixURLFilter(["http://a.example/", "https://"])
    assert url_filter.filter("https://b.example/") == "https://b.example/"
    assert url_filter.filter("http://b.example/") is None


def test_domain_filter_accepts_subdomains() -> None:
    url_filter = DomainURLFilter(["example.com"])
    assert url_filter.filter("http://www.example.com/x") is not None
    assert url_filter.filter("http://EXAMPLE.com/") is not None
    assert url_filter.filter("http://badexample.com/") is None
    assert url_filter.filter("not a url") is None


def test_domain_filter_deny_mode() -> None:
    url_filter = DomainURLFilter(["spam.test"], mode="deny")
    assert url_filter.filter("http://a.spam.test/") is None
    assert url_filter.filter("http://ham.test/") == "http://ham.test/"


def test_filter_chain() -> None:
    assert URLFilters().filter("anything") == "anything"
    chain = URLFilters([AcceptAllURLFilter(), PrefixURLFilter(["http://"])])
    assert chain.filter("http://x/") == "http://x/"
    assert chain.filter("https://x/") is None
    assert isinstance(AcceptAllURLFilter(), URLFilter)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("HTTP://Example.COM", "http://example.com/"),
        ("http://example.com:80/a/./b/../c#frag", "http://example.com/a/c"),
        ("https://example.com:443/dir/", "https://example.com/dir/"),
        ("http://example.com:8080/?q=1", "http://example.com:8080/?q=1"),
        ("http://[::1]:80/", "http://[::1]/"),
    ],
)
def test_basic_normalizer(raw: str, expected: str) -> None:
    assert BasicURLNormalizer().normalize(raw) == expected


def test_basic_normalizer_rejects_bad_port() -> None:
    with pytest.raises(ValueError):
        BasicURLNormalizer().normalize("http://example.com:notaport/")


def test_normalizer_chain_applies_in_order() -> None:
    chain = URLNormalizers(
        [BasicURLNormalizer(), RegexURLNormalizer([(r"[?&]sessionid=[^&]*", "")])]
    )
    assert chain.normalize("HTTP://A.example/p?sessionid=42") == "http://a.example/p"
    assert URLNormalizers().normalize("x") == "x"


def test_build_from_config() -> None:
    filters = build_url_filters({"prefix": ["http://"], "regex": ["-/private/", "+."]})
    assert len(filters) == 2
    assert filters.filter("http://a/private/x") is None
    assert filters.filter("http://a/public") == "http://a/public"

    normalizers = build_url_normalizers(
        {"basic": False, "regex": [{"pattern": "^http:", "substitution": "https:"}]}
    )
    assert len(normalizers) == 1
    assert normalizers.normalize("http://a/") == "https://a/"
    assert len(build_url_normalizers(None)) == 1
    accept_all = build_url_filters(None)
    assert len(accept_all) == 1
    assert isinstance(accept_all.filters[0], AcceptAllURLFilter)
    assert accept_all.filter("ftp://anything") == "ftp://anything"
