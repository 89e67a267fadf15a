"""Detect document type from URL extension, MIME hint or path keywords.

Provides a small ResourceType enum and `detect_resource_type` helper. Only
hyperlinked documents are candidates: images, pages and media are rejected
up front even when a path keyword would otherwise match.
"""

from __future__ import annotations

import posixpath
from enum import Enum
from typing import Callable, Optional, Tuple
from urllib.parse import unquote, urlsplit


class ResourceType(str, Enum):
    DOCUMENT = "document"
    PDF = "pdf"
    SPREADSHEET = "spreadsheet"
    PRESENTATION = "presentation"
    UNKNOWN = "unknown"


EXTENSION_MAP = {
    ".pdf": ResourceType.PDF,
    ".doc": ResourceType.DOCUMENT,
    ".docx": ResourceType.DOCUMENT,
    ".odt": ResourceType.DOCUMENT,
    ".rtf": ResourceType.DOCUMENT,
    ".txt": ResourceType.DOCUMENT,
    ".xls": ResourceType.SPREADSHEET,
    ".xlsx": ResourceType.SPREADSHEET,
    ".ods": ResourceType.SPREADSHEET,
    ".csv": ResourceType.SPREADSHEET,
    ".ppt": ResourceType.PRESENTATION,
    ".pptx": ResourceType.PRESENTATION,
    ".odp": ResourceType.PRESENTATION,
}

MIME_TYPE_MAP = {
    "application/pdf": ResourceType.PDF,
    "application/msword": ResourceType.DOCUMENT,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": (
        ResourceType.DOCUMENT
    ),
    "application/vnd.oasis.opendocument.text": ResourceType.DOCUMENT,
    "application/rtf": ResourceType.DOCUMENT,
    "text/plain": ResourceType.DOCUMENT,
    "application/vnd.ms-excel": ResourceType.SPREADSHEET,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (
        ResourceType.SPREADSHEET
    ),
    "application/vnd.oasis.opendocument.spreadsheet": ResourceType.SPREADSHEET,
    "text/csv": ResourceType.SPREADSHEET,
    "application/vnd.ms-powerpoint": ResourceType.PRESENTATION,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": (
        ResourceType.PRESENTATION
    ),
    "application/vnd.oasis.opendocument.presentation": ResourceType.PRESENTATION,
}

EXTENSION_FOR_MIME = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "text/csv": ".csv",
    "text/plain": ".txt",
}

# Linked but never centralized: inline media and ordinary pages.
EXCLUDED_EXTENSIONS = frozenset(
    {
        ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp", ".ico",
        ".mp3", ".mp4", ".mov", ".avi", ".webm", ".wav",
        ".html", ".htm", ".xhtml",
        ".css", ".js",
    }
)

TypeDetector = Callable[[str], Optional[ResourceType]]


def extension_from_url(url: str) -> str:
    """Return the lowercase extension (with dot) of the URL path, or ''."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    _, ext = posixpath.splitext(unquote(path))
    if not ext or len(ext) > 6 or not ext[1:].isalnum():
        return ""
    return ext.lower()


def _clean_mime(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def _type_from_path(url: str) -> Optional[ResourceType]:
    lower = url.lower()
    if "/pdf/" in lower or "type=pdf" in lower:
        return ResourceType.PDF
    if "/document/" in lower or "/docs/" in lower or "/download/" in lower:
        return ResourceType.DOCUMENT
    return None


def detect_resource_type(
    url: str,
    mime_hint: Optional[str] = None,
    type_detector: Optional[TypeDetector] = None,
) -> Tuple[ResourceType, str]:
    """Detect (type, extension) for a hyperlink target.

    Heuristics, in order: URL extension, MIME hint, custom detector, path
    keywords. Excluded extensions short-circuit to UNKNOWN.
    """
    ext = extension_from_url(url)
    if ext in EXCLUDED_EXTENSIONS:
        return ResourceType.UNKNOWN, ext
    if ext in EXTENSION_MAP:
        return EXTENSION_MAP[ext], ext

    mime = _clean_mime(mime_hint)
    if mime in MIME_TYPE_MAP:
        return MIME_TYPE_MAP[mime], ext or EXTENSION_FOR_MIME.get(mime, "")

    if type_detector is not None:
        custom = type_detector(url)
        if custom is not None and custom != ResourceType.UNKNOWN:
            return custom, ext

    inferred = _type_from_path(url)
    if inferred is not None:
        return inferred, ext or (".pdf" if inferred == ResourceType.PDF else "")

    return ResourceType.UNKNOWN, ext


def supported_extensions(resource_type: ResourceType) -> list[str]:
    return [ext for ext, t in EXTENSION_MAP.items() if t == resource_type]
