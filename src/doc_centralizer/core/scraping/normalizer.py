"""URL normalizer utilities.

Two kinds of normalization live here:

- `normalize_url` produces the canonical absolute form used as the
  deduplication key of a reference (`normalized_url`).
- `match_key` produces the comparison form used by the rewriter; it is
  applied to both the mapping keys and every href so they meet halfway.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, unquote, urljoin, urlsplit, urlunsplit

SKIPPED_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:")
DEFAULT_PORTS = {"http": 80, "https": 443}

_PATH_SAFE = "/%:@!$&'()*+,;=-._~"
_QUERY_SAFE = _PATH_SAFE + "?"


class UrlResolutionError(ValueError):
    """Raised when an href cannot be turned into an absolute http(s) URL."""

    def __init__(self, message: str, href: str, needs_base: bool = False):
        super().__init__(message)
        self.href = href
        self.needs_base = needs_base


def is_skippable(href: Optional[str]) -> bool:
    """True for empty, fragment-only, mailto:, tel:, javascript: and data: targets."""
    if href is None:
        return True
    value = href.strip()
    if not value:
        return True
    return value.lower().startswith(SKIPPED_PREFIXES)


def _netloc(scheme: str, url: str) -> str:
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"
    userinfo = parts.netloc.rpartition("@")[0] if "@" in parts.netloc else ""
    return f"{userinfo}@{host}" if userinfo else host


def resolve_url(href: str, base_url: Optional[str] = None) -> str:
    """Resolve an href to an absolute http(s) URL.

    Protocol-relative URLs become https. Relative URLs need a base URL.
    Raises `UrlResolutionError` when resolution is impossible.
    """
    value = href.strip()
    if value.startswith("//"):
        value = "https:" + value
    parts = urlsplit(value)
    if not parts.scheme:
        if not base_url:
            raise UrlResolutionError(
                "Relative URL requires base URL for resolution", href, needs_base=True
            )
        value = urljoin(base_url, value)
        parts = urlsplit(value)
    if parts.scheme.lower() not in DEFAULT_PORTS:
        raise UrlResolutionError(f"Unsupported URL scheme: {parts.scheme}", href)
    if not parts.hostname:
        raise UrlResolutionError("URL has no host", href)
    return value


def normalize_url(url: str, strip_fragment: bool = True) -> str:
    """Return the canonical form of an absolute URL.

    Lowercases scheme and host, drops default ports, percent-encodes unsafe
    characters (existing escapes are kept) and removes the fragment.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    netloc = _netloc(scheme, url.strip())
    path = quote(parts.path or "/", safe=_PATH_SAFE)
    query = quote(parts.query, safe=_QUERY_SAFE)
    fragment = "" if strip_fragment else parts.fragment
    return urlunsplit((scheme, netloc, path, query, fragment))


def host_of(url: Optional[str]) -> str:
    if not url:
        return ""
    try:
        return (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


def match_key(
    url: str,
    *,
    case_sensitive: bool = False,
    normalize_urls: bool = True,
    match_query_params: bool = True,
    match_fragments: bool = False,
    base_url: Optional[str] = None,
    decode: bool = True,
) -> str:
    """Comparison key for rewriter matching.

    With `normalize_urls` the value is percent-decoded, resolved against the
    base URL when relative, stripped of query/fragment per the flags and of a
    trailing slash. Raises UnicodeDecodeError for undecodable escapes and
    ValueError for URLs that cannot be split.
    """
    value = url.strip()
    if not normalize_urls:
        return value if case_sensitive else value.lower()

    if decode:
        value = unquote(value, errors="strict")

    if value.startswith("//"):
        value = "https:" + value
    parts = urlsplit(value)
    if not parts.scheme and base_url:
        value = urljoin(base_url, value)
        parts = urlsplit(value)

    if parts.scheme and parts.netloc:
        scheme = parts.scheme.lower()
        value = urlunsplit(
            (
                scheme,
                _netloc(scheme, value),
                parts.path,
                parts.query if match_query_params else "",
                parts.fragment if match_fragments else "",
            )
        )

    if value.endswith("/"):
        value = value[:-1]
    return value if case_sensitive else value.lower()


def extract_base_url(url: str) -> str:
    """Directory part of a page URL: everything up to the last '/'."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise UrlResolutionError(f"Failed to extract base URL from: {url}", url)
    path = parts.path.rsplit("/", 1)[0] + "/" if "/" in parts.path else "/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))
