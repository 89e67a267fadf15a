"""HTTP fetcher with timeout, bounded redirects and optional UA rotation.

Provides a small `Fetcher` object exposing `get`, `stream_get` and
`fetch_page`, plus `classify_request_error` which turns `requests`
exceptions into the pipeline error taxonomy.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from doc_centralizer.core.errors import (
    NetworkError,
    PipelineError,
    UpstreamError,
    ValidationError,
)
from doc_centralizer.core.models import utcnow
from doc_centralizer.core.scraping.normalizer import extract_base_url

logger = logging.getLogger(__name__)

DEFAULT_UA_POOL = [
    "Mozilla/5.0 (compatible; DocCentralizerBot/1.0; +https://example.org/bot)",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
]


@dataclass(frozen=True)
class FetchedPage:
    html: str
    base_url: str
    source_url: str
    fetched_at: datetime


def classify_request_error(exc: Exception, url: Optional[str] = None) -> PipelineError:
    """Map a `requests` exception to a PipelineError subtype."""
    if isinstance(exc, requests.Timeout):
        return NetworkError(f"Request timed out: {exc}", url=url, timed_out=True)
    if isinstance(exc, requests.TooManyRedirects):
        return UpstreamError(f"Too many redirects: {exc}", url=url)
    if isinstance(exc, (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema)):
        return ValidationError(f"Invalid URL: {exc}", url=url)
    if isinstance(
        exc, (requests.ConnectionError, requests.exceptions.ChunkedEncodingError)
    ):
        return NetworkError(f"Connection failed: {exc}", url=url)
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return UpstreamError(
            f"HTTP {exc.response.status_code} for {url}",
            url=url,
            status_code=exc.response.status_code,
        )
    return UpstreamError(f"Request failed: {exc}", url=url)


class Fetcher:
    """Small HTTP client with sensible defaults for downloading documents.

    Usage:
        f = Fetcher(timeout=30, max_redirects=5)
        resp = f.stream_get(url)

    The adapter never retries: each call is a single attempt and callers
    decide what to retry (see `core.retry`).
    """

    def __init__(
        self,
        timeout: float = 30.0,
        ua_pool: Optional[list[str]] = None,
        max_redirects: int = 5,
        pool_size: int = 10,
    ) -> None:
        self.timeout = timeout
        self.session = requests.Session()
        self.session.max_redirects = max_redirects
        adapter = HTTPAdapter(
            max_retries=0, pool_connections=pool_size, pool_maxsize=pool_size
        )
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.ua_pool = ua_pool or DEFAULT_UA_POOL

    def _headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        base = {"User-Agent": random.choice(self.ua_pool)}
        if headers:
            base.update(headers)
        return base

    def get(self, url: str, headers: Optional[Dict[str, str]] = None, **kwargs):
        return self.session.get(
            url, headers=self._headers(headers), timeout=self.timeout, **kwargs
        )

    def stream_get(self, url: str, headers: Optional[Dict[str, str]] = None, **kwargs):
        # Streamed GET for downloading large files
        return self.session.get(
            url,
            headers=self._headers(headers),
            timeout=self.timeout,
            stream=True,
            **kwargs,
        )

    def fetch_page(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchedPage:
        """Load a source page and return its HTML with the base URL to resolve against.

        Raises a PipelineError subtype when the page cannot be used.
        """
        try:
            resp = self.get(url, headers=headers)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise classify_request_error(exc, url) from exc

        content_type = resp.headers.get("Content-Type", "").lower()
        if "html" not in content_type:
            raise ValidationError(
                f"Expected an HTML page, got '{content_type or 'no content type'}'",
                url=url,
            )
        html = resp.text
        if not html or not html.strip():
            raise ValidationError("Fetched page is empty", url=url)

        final_url = resp.url or url
        logger.info("Fetched page %s (%d chars)", final_url, len(html))
        return FetchedPage(
            html=html,
            base_url=extract_base_url(final_url),
            source_url=final_url,
            fetched_at=utcnow(),
        )

    def close(self) -> None:
        self.session.close()
