from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StoredObject:
    """What the content store knows about a persisted file."""

    remote_id: str
    size: int
    mime_type: str
    filename: Optional[str] = None
    public_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


class ContentStore(ABC):
    """
    Contract every content store client must follow.

    The pipeline never talks to a concrete client: the orchestrator receives
    a ContentStore and hands it to the uploader, so tests can plug in a fake.
    Implementations raise `StoreError` (with the HTTP-like status code when
    one is known) so the uploader can tell transient failures from terminal
    ones.
    """

    @abstractmethod
    def upload(self, content: bytes, filename: str, mime_type: str) -> StoredObject:
        """Persist the bytes and return the new remote identity."""
        raise NotImplementedError()

    @abstractmethod
    def find_duplicate(
        self, filename: str, size: int, mime_type: str
    ) -> Optional[StoredObject]:
        """Return an existing object matching (filename, size, mime_type), if any."""
        raise NotImplementedError()

    @abstractmethod
    def resolve_public_url(self, remote_id: str) -> str:
        """Return a stable public URL for a stored object."""
        raise NotImplementedError()
