"""Key filter and key normalizer policies.

A filter returns the (possibly unchanged) URL to keep it or ``None`` to
reject it. A normalizer always returns a URL; both may raise, in which case
the transform stage drops the record.
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit, urlunsplit

from crawldb_core.exceptions import ConfigValidationError

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443, "ftp": 21}


@runtime_checkable
class URLFilter(Protocol):
    def filter(self, url: str) -> str | None: ...


@runtime_checkable
class URLNormalizer(Protocol):
    def normalize(self, url: str) -> str: ...


class URLFilters:
    """Ordered filter chain. Any rejecting filter rejects; an empty chain accepts."""

    def __init__(self, filters: Iterable[URLFilter] = ()) -> None:
        self.filters: list[URLFilter] = list(filters)

    def __len__(self) -> int:
        return len(self.filters)

    def filter(self, url: str) -> str | None:
        current: str | None = url
        for url_filter in self.filters:
            current = url_filter.filter(current)
            if current is None:
                return None
        return current


class URLNormalizers:
    """Ordered normalizer chain, each normalizer sees the previous output."""

    def __init__(self, normalizers: Iterable[URLNormalizer] = ()) -> None:
        self.normalizers: list[URLNormalizer] = list(normalizers)

    def __len__(self) -> int:
        return len(self.normalizers)

    def normalize(self, url: str) -> str:
        for normalizer in self.normalizers:
            url = normalizer.normalize(url)
        return url


class AcceptAllURLFilter:
    def filter(self, url: str) -> str | None:
        return url


class RegexURLFilter:
    """Rules of the form ``+<regex>`` (accept) or ``-<regex>`` (reject).

    Rules are tried in order and the first one whose pattern matches anywhere
    in the URL decides. A URL matching no rule is rejected.
    """

    def __init__(self, rules: Sequence[str]) -> None:
        self.rules: list[tuple[bool, re.Pattern[str]]] = []
        for raw in rules:
            rule = raw.strip()
            if not rule or rule.startswith("#"):
                continue
            sign, pattern = rule[0], rule[1:].strip()
            if sign not in "+-":
                raise ConfigValidationError(
                    f"Invalid regex filter rule {raw!r}: must start with '+' or '-'",
                    context={"rule": raw},
                )
            try:
                self.rules.append((sign == "+", re.compile(pattern)))
            except re.error as exc:
                raise ConfigValidationError(
                    f"Invalid regex filter rule {raw!r}: {exc}",
                    context={"rule": raw, "error": str(exc)},
                ) from exc

    def filter(self, url: str) -> str | None:
        for accept, pattern in self.rules:
            if pattern.search(url):
                return url if accept else None
        return None


class PrefixURLFilter:
    def __init__(self, prefixes: Sequence[str]) -> None:
        self.prefixes = tuple(prefixes)

    def filter(self, url: str) -> str | None:
        return url if url.startswith(self.prefixes) else None


class DomainURLFilter:
    """Accept URLs whose host is a listed domain or one of its subdomains.

    In ``deny`` mode the listed domains are rejected and everything else passes.
    """

    def __init__(self, domains: Sequence[str], *, mode: str = "allow") -> None:
        if mode not in ("allow", "deny"):
            raise ConfigValidationError(
                f"Invalid domain filter mode {mode!r}", context={"mode": mode}
            )
        self.domains = {d.strip().lower().lstrip(".") for d in domains if d.strip()}
        self.mode = mode

    def _listed(self, host: str) -> bool:
        parts = host.split(".")
        return any(".".join(parts[i:]) in self.domains for i in range(len(parts)))

    def filter(self, url: str) -> str | None:
        host = (urlsplit(url).hostname or "").lower()
        listed = bool(host) and self._listed(host)
        if self.mode == "deny":
            return None if listed else url
        return url if listed else None


def _normalize_path(path: str) -> str:
    if not path:
        return "/"
    normalized = posixpath.normpath(path)
    # normpath keeps a leading "//" and strips the trailing slash
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if path.endswith("/") and normalized != "/":
        normalized += "/"
    return normalized


class BasicURLNormalizer:
    """Lowercases scheme and host, drops default ports and fragments, resolves dot segments."""

    def normalize(self, url: str) -> str:
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        if not scheme or not parts.netloc:
            return url.strip()

        host = (parts.hostname or "").lower()
        if ":" in host:
            host = f"[{host}]"
        userinfo = ""
        if "@" in parts.netloc:
            userinfo = parts.netloc.rsplit("@", 1)[0] + "@"
        netloc = userinfo + host
        port = parts.port
        if port is not None and DEFAULT_PORTS.get(scheme) != port:
            netloc = f"{netloc}:{port}"

        path = _normalize_path(parts.path)
        return urlunsplit((scheme, netloc, path, parts.query, ""))


class RegexURLNormalizer:
    def __init__(self, rules: Sequence[tuple[str, str]]) -> None:
        self.rules: list[tuple[re.Pattern[str], str]] = []
        for pattern, substitution in rules:
            try:
                self.rules.append((re.compile(pattern), substitution))
            except re.error as exc:
                raise ConfigValidationError(
                    f"Invalid regex normalizer pattern {pattern!r}: {exc}",
                    context={"pattern": pattern, "error": str(exc)},
                ) from exc

    def normalize(self, url: str) -> str:
        for pattern, substitution in self.rules:
            url = pattern.sub(substitution, url)
        return url


def build_url_filters(cfg: Mapping[str, Any] | None) -> URLFilters:
    """Build the filter chain from the ``urlfilters`` config section."""
    cfg = cfg or {}
    filters: list[URLFilter] = []
    if cfg.get("prefix"):
        filters.append(PrefixURLFilter(cfg["prefix"]))
    if cfg.get("domain"):
        filters.append(DomainURLFilter(cfg["domain"], mode=cfg.get("domain_mode", "allow")))
    if cfg.get("regex"):
        filters.append(RegexURLFilter(cfg["regex"]))
    if not filters:
        filters.append(AcceptAllURLFilter())
    logger.debug("Built %d url filters", len(filters))
    return URLFilters(filters)


def build_url_normalizers(cfg: Mapping[str, Any] | None) -> URLNormalizers:
    """Build the normalizer chain from the ``urlnormalizers`` config section."""
    cfg = cfg or {}
    normalizers: list[URLNormalizer] = []
    if cfg.get("basic", True):
        normalizers.append(BasicURLNormalizer())
    rules = cfg.get("regex") or []
    if rules:
        normalizers.append(
            RegexURLNormalizer([(rule["pattern"], rule.get("substitution", "")) for rule in rules])
        )
    logger.debug("Built %d url normalizers", len(normalizers))
    return URLNormalizers(normalizers)
