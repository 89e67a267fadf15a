"""Core scraping primitives exported for reuse across the pipeline and flows.

This package contains small, well-tested building blocks: Fetcher, Detector,
Parser, Normalizer and Downloader. Prefect task wrappers live in
`prefect_tasks` and are imported from there.
"""

from .detector import ResourceType, detect_resource_type
from .downloader import Downloader
from .fetcher import FetchedPage, Fetcher
from .normalizer import extract_base_url, match_key, normalize_url, resolve_url
from .parser import extract_resources, get_all_urls, references_by_type

__all__ = [
    "Fetcher",
    "FetchedPage",
    "detect_resource_type",
    "ResourceType",
    "extract_resources",
    "get_all_urls",
    "references_by_type",
    "normalize_url",
    "resolve_url",
    "match_key",
    "extract_base_url",
    "Downloader",
]
