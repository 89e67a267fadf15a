"""HTML parsing helpers: document link extraction.

`extract_resources` walks every `<a href>` of a markup fragment and returns
one `ResourceReference` per unique canonical URL. Nothing here raises on bad
markup: problems end up in `ExtractionResult.errors`.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from doc_centralizer.core.models import (
    ExtractionIssue,
    ExtractionResult,
    ResourceReference,
)
from doc_centralizer.core.scraping.detector import (
    ResourceType,
    TypeDetector,
    detect_resource_type,
)
from doc_centralizer.core.scraping.normalizer import (
    UrlResolutionError,
    host_of,
    is_skippable,
    normalize_url,
    resolve_url,
)

logger = logging.getLogger(__name__)


def _snippet(tag) -> str:
    return str(tag)


def extract_resources(
    markup: Optional[str],
    base_url: Optional[str] = None,
    external_only: bool = True,
    max_url_length: int = 2048,
    type_detector: Optional[TypeDetector] = None,
) -> ExtractionResult:
    """Extract downloadable document references from HTML.

    - Only hyperlinks are looked at; images and embedded media are ignored.
    - Links are resolved against `base_url` and canonicalized.
    - Repeated URLs collapse into a single reference that keeps every
      originating element, in document order.
    """
    started = time.perf_counter()
    markup = markup or ""
    issues: List[ExtractionIssue] = []

    if not markup.strip():
        issues.append(ExtractionIssue("Markup is empty", "validation"))
        return _result([], issues, started, len(markup))

    try:
        soup = BeautifulSoup(markup, "html.parser")
    except Exception as exc:  # html.parser is lenient, this is a last resort
        logger.warning("Could not parse markup: %s", exc)
        issues.append(ExtractionIssue(f"Failed to parse markup: {exc}", "parsing"))
        return _result([], issues, started, len(markup))

    base_host = host_of(base_url)

    # normalized_url -> (first raw href, type, ext, external, elements, ordinal)
    found: Dict[str, Tuple[str, ResourceType, str, bool, List[str], int]] = {}

    for a in soup.find_all("a", href=True):
        raw = a.get("href")
        if isinstance(raw, list):
            raw = " ".join(raw)
        if is_skippable(raw):
            continue
        element = _snippet(a)
        href = raw.strip()

        if len(href) > max_url_length:
            issues.append(
                ExtractionIssue(
                    f"URL longer than {max_url_length} characters",
                    "validation",
                    url=href[:120],
                    element=element,
                )
            )
            continue

        try:
            absolute = resolve_url(href, base_url)
            normalized = normalize_url(absolute)
        except UrlResolutionError as exc:
            issues.append(
                ExtractionIssue(str(exc), "validation", url=href, element=element)
            )
            continue
        except ValueError as exc:
            issues.append(
                ExtractionIssue(
                    f"Malformed URL: {exc}", "validation", url=href, element=element
                )
            )
            continue

        if normalized in found:
            found[normalized][4].append(element)
            continue

        mime_hint = a.get("type")
        if isinstance(mime_hint, list):
            mime_hint = " ".join(mime_hint)
        try:
            rtype, ext = detect_resource_type(normalized, mime_hint, type_detector)
        except Exception as exc:
            logger.warning("Type detection failed for %s: %s", normalized, exc)
            issues.append(
                ExtractionIssue(
                    f"Type detection failed: {exc}",
                    "extraction",
                    url=normalized,
                    element=element,
                )
            )
            continue
        if rtype == ResourceType.UNKNOWN:
            continue

        is_external = not base_host or host_of(normalized) != base_host
        if external_only and not is_external:
            continue

        found[normalized] = (href, rtype, ext, is_external, [element], len(found))

    references = [
        ResourceReference(
            source_text=href,
            normalized_url=url,
            resource_type=rtype,
            file_extension=ext,
            is_external=is_external,
            originating_elements=tuple(elements),
            ordinal_position=ordinal,
        )
        for url, (href, rtype, ext, is_external, elements, ordinal) in found.items()
    ]
    logger.debug(
        "Extracted %d references (%d issues) from %d chars",
        len(references),
        len(issues),
        len(markup),
    )
    return _result(references, issues, started, len(markup))


def _result(
    references: List[ResourceReference],
    issues: List[ExtractionIssue],
    started: float,
    markup_length: int,
) -> ExtractionResult:
    by_type: Dict[ResourceType, Tuple[ResourceReference, ...]] = {}
    for ref in references:
        by_type[ref.resource_type] = by_type.get(ref.resource_type, ()) + (ref,)
    summary = {
        "total": len(references),
        "external": sum(1 for r in references if r.is_external),
        "by_type": {t.value: len(refs) for t, refs in by_type.items()},
    }
    return ExtractionResult(
        references=tuple(references),
        by_type=by_type,
        summary=summary,
        errors=tuple(issues),
        parse_time=time.perf_counter() - started,
        markup_length=markup_length,
    )


def get_all_urls(result: ExtractionResult) -> List[str]:
    return [r.normalized_url for r in result.references]


def references_by_type(
    result: ExtractionResult, resource_type: ResourceType
) -> List[ResourceReference]:
    return list(result.by_type.get(resource_type, ()))
