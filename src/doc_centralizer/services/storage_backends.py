from __future__ import annotations

import json
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import quote

from doc_centralizer.core.errors import StoreError
from doc_centralizer.core.interfaces import ContentStore, StoredObject
from doc_centralizer.services.gcs import GCSUploader

_META_FILE = "object.json"


class InMemoryContentStore(ContentStore):
    """Keeps uploaded objects in a dict. Used by tests and dry runs."""

    def __init__(self, public_base_url: str = "https://store.local/files"):
        self.public_base_url = public_base_url.rstrip("/")
        self.objects: Dict[str, Tuple[bytes, StoredObject]] = {}
        self.upload_calls = 0
        self.bytes_received = 0
        self._lock = threading.Lock()

    def upload(self, content: bytes, filename: str, mime_type: str) -> StoredObject:
        remote_id = uuid.uuid4().hex
        stored = StoredObject(
            remote_id=remote_id,
            size=len(content),
            mime_type=mime_type,
            filename=filename,
        )
        with self._lock:
            self.objects[remote_id] = (bytes(content), stored)
            self.upload_calls += 1
            self.bytes_received += len(content)
        return stored

    def find_duplicate(
        self, filename: str, size: int, mime_type: str
    ) -> Optional[StoredObject]:
        with self._lock:
            for _, stored in self.objects.values():
                if (stored.filename, stored.size, stored.mime_type) == (
                    filename,
                    size,
                    mime_type,
                ):
                    return stored
        return None

    def resolve_public_url(self, remote_id: str) -> str:
        with self._lock:
            if remote_id not in self.objects:
                raise StoreError(f"Unknown object {remote_id}", status_code=404)
            stored = self.objects[remote_id][1]
        return f"{self.public_base_url}/{remote_id}/{quote(stored.filename or remote_id)}"

    def content_of(self, remote_id: str) -> bytes:
        return self.objects[remote_id][0]


class LocalContentStore(ContentStore):
    """Save objects locally under `<root>/<remote_id>/<filename>`.

    A small `object.json` next to each file holds its metadata so duplicate
    lookups survive restarts. Public URLs are built from `public_base_url`,
    which is expected to serve `root`.
    """

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _read_meta(self, obj_dir: Path) -> Optional[dict]:
        meta = obj_dir / _META_FILE
        if not meta.is_file():
            return None
        with open(meta, encoding="utf-8") as fh:
            return json.load(fh)

    def upload(self, content: bytes, filename: str, mime_type: str) -> StoredObject:
        remote_id = uuid.uuid4().hex
        obj_dir = self.root / remote_id
        try:
            obj_dir.mkdir(parents=True, exist_ok=False)
            (obj_dir / filename).write_bytes(content)
            with open(obj_dir / _META_FILE, "w", encoding="utf-8") as fh:
                json.dump(
                    {"filename": filename, "size": len(content), "mime_type": mime_type},
                    fh,
                )
        except OSError as exc:
            raise StoreError(f"Failed to write {obj_dir}: {exc}") from exc
        return StoredObject(
            remote_id=remote_id,
            size=len(content),
            mime_type=mime_type,
            filename=filename,
            public_url=self.resolve_public_url(remote_id),
        )

    def find_duplicate(
        self, filename: str, size: int, mime_type: str
    ) -> Optional[StoredObject]:
        for obj_dir in sorted(self.root.iterdir()):
            if not obj_dir.is_dir():
                continue
            meta = self._read_meta(obj_dir)
            if not meta:
                continue
            if (meta.get("filename"), meta.get("size"), meta.get("mime_type")) != (
                filename,
                size,
                mime_type,
            ):
                continue
            return StoredObject(
                remote_id=obj_dir.name,
                size=size,
                mime_type=mime_type,
                filename=filename,
                public_url=self.resolve_public_url(obj_dir.name),
            )
        return None

    def resolve_public_url(self, remote_id: str) -> str:
        meta = self._read_meta(self.root / remote_id)
        if meta is None:
            raise StoreError(f"Unknown object {remote_id}", status_code=404)
        return f"{self.public_base_url}/{remote_id}/{quote(meta['filename'])}"


class GCSContentStore(ContentStore):
    """GCS-backed content store (requires google-cloud-storage).

    Objects land at `gs://<bucket>/<prefix>/<uuid>/<filename>`; the blob name
    is the remote id.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "centralized",
        public_base_url: Optional[str] = None,
        uploader: Optional[GCSUploader] = None,
    ):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.uploader = uploader or GCSUploader()

    def upload(self, content: bytes, filename: str, mime_type: str) -> StoredObject:
        blob_name = f"{self.prefix}/{uuid.uuid4().hex}/{filename}"
        self.uploader.upload_bytes(self.bucket, content, blob_name, content_type=mime_type)
        return StoredObject(
            remote_id=blob_name,
            size=len(content),
            mime_type=mime_type,
            filename=filename,
        )

    def find_duplicate(
        self, filename: str, size: int, mime_type: str
    ) -> Optional[StoredObject]:
        blob = self.uploader.find_blob(
            self.bucket, f"{self.prefix}/", filename, size, content_type=mime_type
        )
        if blob is None:
            return None
        return StoredObject(
            remote_id=blob.name,
            size=blob.size,
            mime_type=blob.content_type or mime_type,
            filename=filename,
        )

    def resolve_public_url(self, remote_id: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(remote_id)}"
        return GCSUploader.public_url(self.bucket, remote_id)
