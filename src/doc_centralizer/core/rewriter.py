"""URL rewriter: point hyperlinks at their centralized copies.

Matching is done on comparison keys (see `normalizer.match_key`) computed
for both the mapping keys and each `<a href>`. Replacement is a splice of the
attribute value at the tag's source position, so the rest of the markup is
returned untouched.
"""

from __future__ import annotations

import html
import logging
import re
import time
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from doc_centralizer.core.config import RewriteOptions
from doc_centralizer.core.models import ReplacementWarning, RewriteResult
from doc_centralizer.core.scraping.normalizer import (
    is_skippable,
    match_key,
    resolve_url,
)

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s*")
_ATTR = re.compile(
    r"""(?P<name>[^\s"'>/=][^\s/=>]*)"""
    r"""(?:\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<uq>[^\s>]+)))?"""
)

# (start, end, replacement text)
_Edit = Tuple[int, int, str]


def _key(url: str, options: RewriteOptions, decode: bool = True) -> str:
    return match_key(
        url,
        case_sensitive=options.case_sensitive,
        normalize_urls=options.normalize_urls,
        match_query_params=options.match_query_params,
        match_fragments=options.match_fragments,
        base_url=options.base_url,
        decode=decode,
    )


def _safe_key(
    url: str, options: RewriteOptions, warnings: List[ReplacementWarning]
) -> Optional[str]:
    try:
        return _key(url, options)
    except UnicodeDecodeError:
        warnings.append(
            ReplacementWarning(
                "URL contains undecodable escapes, compared without decoding",
                "encoding-issue",
                url=url,
            )
        )
    except ValueError as exc:
        warnings.append(ReplacementWarning(f"Malformed URL: {exc}", "malformed-url", url=url))
        return None
    try:
        return _key(url, options, decode=False)
    except ValueError as exc:
        warnings.append(ReplacementWarning(f"Malformed URL: {exc}", "malformed-url", url=url))
        return None


def _href_of(tag) -> Optional[str]:
    raw = tag.get("href")
    if isinstance(raw, list):
        raw = " ".join(raw)
    return raw


def _line_starts(markup: str) -> List[int]:
    starts = [0]
    idx = markup.find("\n")
    while idx != -1:
        starts.append(idx + 1)
        idx = markup.find("\n", idx + 1)
    return starts


def _tag_offset(tag, line_starts: List[int]) -> Optional[int]:
    line = getattr(tag, "sourceline", None)
    col = getattr(tag, "sourcepos", None)
    if line is None or col is None or line < 1 or line > len(line_starts):
        return None
    return line_starts[line - 1] + col


def _href_edit(markup: str, start: int, new_url: str) -> Optional[_Edit]:
    """Locate the href value of the `<a>` starting at `start` and build the splice."""
    if markup[start : start + 2].lower() != "<a":
        return None
    pos = start + 2
    if pos >= len(markup) or not (markup[pos].isspace() or markup[pos] in "/>"):
        return None

    found: Optional[_Edit] = None
    escaped = html.escape(new_url, quote=True)
    n = len(markup)
    while pos < n:
        pos = _WS.match(markup, pos).end()
        if pos >= n:
            return None
        if markup[pos] == ">" or markup.startswith("/>", pos):
            return found
        m = _ATTR.match(markup, pos)
        if m is None:
            pos += 1
            continue
        if m.group("name").lower() == "href":
            # Last duplicate wins, like the parser.
            if m.group("dq") is not None:
                found = (m.start("dq"), m.end("dq"), escaped)
            elif m.group("sq") is not None:
                found = (m.start("sq"), m.end("sq"), escaped)
            elif m.group("uq") is not None:
                found = (m.start("uq"), m.end("uq"), f'"{escaped}"')
        pos = m.end()
    return None


def _apply(markup: str, edits: List[_Edit]) -> str:
    out = markup
    for start, end, text in sorted(edits, key=lambda e: e[0], reverse=True):
        out = out[:start] + text + out[end:]
    return out


def _mapping_keys(
    url_mapping: Dict[str, str],
    options: RewriteOptions,
    warnings: List[ReplacementWarning],
) -> Dict[str, str]:
    """match key -> original mapping key."""
    keys: Dict[str, str] = {}
    for original, new in url_mapping.items():
        if not isinstance(original, str) or not original.strip():
            warnings.append(
                ReplacementWarning("Empty or non-string mapping key", "malformed-url")
            )
            continue
        if not isinstance(new, str) or not new.strip():
            warnings.append(
                ReplacementWarning(
                    "Replacement URL is empty", "malformed-url", url=original
                )
            )
            continue
        k = _safe_key(original, options, warnings)
        if k is None:
            continue
        if k in keys:
            warnings.append(
                ReplacementWarning(
                    f"Mapping key collides with {keys[k]}", "duplicate-url", url=original
                )
            )
            continue
        keys[k] = original
    return keys


def _match_anchors(soup, keys, options, warnings):
    """Yield (tag, raw href, mapping key) for every matching anchor."""
    for a in soup.find_all("a", href=True):
        raw = _href_of(a)
        if is_skippable(raw):
            continue
        k = _safe_key(raw, options, warnings)
        if k is None:
            continue
        original = keys.get(k)
        if original is not None:
            yield a, raw, original


def rewrite_urls(
    markup: Optional[str],
    url_mapping: Optional[Dict[str, str]],
    options: Optional[RewriteOptions] = None,
) -> RewriteResult:
    """Replace every matching `<a href>` with its mapped URL.

    Never raises: problems come back as warnings and the markup is returned
    unchanged when nothing can be done.
    """
    started = time.perf_counter()
    options = options or RewriteOptions()
    markup = markup if isinstance(markup, str) else ""
    url_mapping = dict(url_mapping or {})
    try:
        return _rewrite(markup, url_mapping, options, started)
    except Exception as exc:
        logger.exception("URL rewrite failed, returning markup unchanged")
        return RewriteResult(
            markup=markup,
            replacement_count=0,
            unreplaced_urls=tuple(k for k in url_mapping if isinstance(k, str)),
            statistics=_stats(len(url_mapping), 0, len(url_mapping), 0, started),
            warnings=(ReplacementWarning(f"Rewrite failed: {exc}", "malformed-url"),),
        )


def _stats(total, replaced, unmatched, modified, started) -> Dict[str, float]:
    return {
        "total_mappings": total,
        "successful_replacements": replaced,
        "unmatched_mappings": unmatched,
        "modified_elements": modified,
        "processing_time": time.perf_counter() - started,
    }


def _rewrite(
    markup: str,
    url_mapping: Dict[str, str],
    options: RewriteOptions,
    started: float,
) -> RewriteResult:
    warnings: List[ReplacementWarning] = []

    if not url_mapping:
        warnings.append(ReplacementWarning("URL mapping is empty", "url-not-found"))
        return RewriteResult(markup, 0, (), _stats(0, 0, 0, 0, started), tuple(warnings))

    keys = _mapping_keys(url_mapping, options, warnings)
    used: Dict[str, None] = {}
    modified = 0
    output = markup

    if markup.strip() and keys:
        soup = BeautifulSoup(markup, "html.parser")
        line_starts = _line_starts(markup)
        edits: List[_Edit] = []
        matched = []
        located = True
        for tag, _raw, original in _match_anchors(soup, keys, options, warnings):
            new_url = url_mapping[original]
            matched.append((tag, new_url))
            used[original] = None
            offset = _tag_offset(tag, line_starts)
            edit = _href_edit(markup, offset, new_url) if offset is not None else None
            if edit is None:
                located = False
            else:
                edits.append(edit)
        modified = len(matched)

        if located:
            output = _apply(markup, edits)
        elif matched:
            logger.warning("Could not patch hrefs in place, re-serializing markup")
            warnings.append(
                ReplacementWarning(
                    "Anchors could not be located in the source, markup was re-serialized",
                    "reserialized",
                )
            )
            for tag, new_url in matched:
                tag["href"] = new_url
            output = str(soup)

    unreplaced = tuple(k for k in url_mapping if isinstance(k, str) and k not in used)
    for url in unreplaced:
        warnings.append(
            ReplacementWarning("No matching link found in markup", "url-not-found", url=url)
        )

    logger.debug(
        "Rewrote %d elements for %d/%d mappings",
        modified,
        len(used),
        len(url_mapping),
    )
    return RewriteResult(
        markup=output,
        replacement_count=len(used),
        unreplaced_urls=unreplaced,
        statistics=_stats(len(url_mapping), len(used), len(unreplaced), modified, started),
        warnings=tuple(warnings),
    )


def preview_replacements(
    markup: Optional[str],
    url_mapping: Optional[Dict[str, str]],
    options: Optional[RewriteOptions] = None,
) -> List[Dict[str, str]]:
    """List what `rewrite_urls` would change, without changing anything."""
    options = options or RewriteOptions()
    if not markup or not url_mapping:
        return []
    warnings: List[ReplacementWarning] = []
    keys = _mapping_keys(dict(url_mapping), options, warnings)
    soup = BeautifulSoup(markup, "html.parser")
    return [
        {
            "original_url": raw,
            "new_url": url_mapping[original],
            "mapping_key": original,
            "element": str(tag),
        }
        for tag, raw, original in _match_anchors(soup, keys, options, warnings)
    ]


def extract_href_urls(markup: Optional[str]) -> List[str]:
    """Every non-skippable `<a href>` value, in document order."""
    if not markup:
        return []
    soup = BeautifulSoup(markup, "html.parser")
    urls = []
    for a in soup.find_all("a", href=True):
        raw = _href_of(a)
        if not is_skippable(raw):
            urls.append(raw.strip())
    return urls


def validate_url_mapping(url_mapping: Optional[Dict[str, str]]) -> List[ReplacementWarning]:
    """Check a mapping before use. An empty list means it is valid."""
    problems: List[ReplacementWarning] = []
    if not url_mapping:
        return [ReplacementWarning("URL mapping is empty", "url-not-found")]
    seen: Dict[str, str] = {}
    for original, new in url_mapping.items():
        for label, value in (("key", original), ("value", new)):
            if not isinstance(value, str) or not value.strip():
                problems.append(
                    ReplacementWarning(f"Empty mapping {label}", "malformed-url", url=original)
                )
                break
            try:
                resolve_url(value)
            except ValueError as exc:
                problems.append(
                    ReplacementWarning(
                        f"Mapping {label} is not an absolute http(s) URL: {exc}",
                        "malformed-url",
                        url=value,
                    )
                )
                break
        else:
            try:
                k = _key(original, RewriteOptions())
            except ValueError as exc:
                if isinstance(exc, UnicodeDecodeError):
                    kind = "encoding-issue"
                else:
                    kind = "malformed-url"
                problems.append(
                    ReplacementWarning(
                        f"Mapping key cannot be compared: {exc}", kind, url=original
                    )
                )
                continue
            if k in seen:
                problems.append(
                    ReplacementWarning(
                        f"Mapping key collides with {seen[k]}", "duplicate-url", url=original
                    )
                )
            else:
                seen[k] = original
    return problems
