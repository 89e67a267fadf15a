"""Shared test doubles: dummy HTTP responses, a scripted fetcher, a fake GCS
client and factories for the pipeline records.

Nothing here touches the network: every HTTP call goes through
`DummyFetcher`, which answers from a dict of scripted responses.
"""

from __future__ import annotations

import pytest
import requests

from doc_centralizer.core.models import FetchedContent, ResourceReference, utcnow
from doc_centralizer.core.scraping.detector import ResourceType


class DummyResponse:
    def __init__(self, status_code=200, body=b"", headers=None, url=None, chunks=None):
        self.status_code = status_code
        self._body = body
        self._chunks = chunks
        self.headers = dict(headers or {})
        self.url = url
        self.closed = False

    def iter_content(self, chunk_size=8192):
        if self._chunks is not None:
            yield from self._chunks
            return
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    @property
    def text(self):
        return self._body.decode("utf-8")

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)

    def close(self):
        self.closed = True


def pdf_response(body=b"%PDF-1.4 fake", content_type="application/pdf", **kwargs):
    return DummyResponse(200, body, headers={"Content-Type": content_type}, **kwargs)


class DummyFetcher:
    """Answers `stream_get` from `routes`: url -> response, exception or list of them.

    A list is consumed in order; its last item keeps answering once reached.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.headers = []

    def _next(self, url):
        item = self.routes.get(url)
        if item is None:
            return DummyResponse(404, b"not found")
        if isinstance(item, list):
            item = item.pop(0) if len(item) > 1 else item[0]
        if isinstance(item, Exception):
            raise item
        return item

    def stream_get(self, url, headers=None, **kwargs):
        self.calls.append(url)
        self.headers.append(headers)
        return self._next(url)

    def get(self, url, headers=None, **kwargs):
        self.calls.append(url)
        return self._next(url)

    def close(self):
        pass


class FakeBlob:
    def __init__(self, client, bucket, name):
        self.client = client
        self.bucket = bucket
        self.name = name
        self.size = None
        self.content_type = None

    def upload_from_file(self, fh, content_type=None):
        if self.client.fail_with is not None:
            raise self.client.fail_with
        data = fh.read()
        self.size = len(data)
        self.content_type = content_type
        self.client.blobs[(self.bucket, self.name)] = self
        self.client.data[(self.bucket, self.name)] = data


class FakeBucket:
    def __init__(self, client, name):
        self.client = client
        self.name = name

    def blob(self, name):
        return FakeBlob(self.client, self.name, name)


class FakeGCSClient:
    def __init__(self):
        self.blobs = {}
        self.data = {}
        self.fail_with = None

    def bucket(self, name):
        return FakeBucket(self, name)

    def list_blobs(self, bucket, prefix=None):
        return [
            blob
            for (b, name), blob in self.blobs.items()
            if b == bucket and name.startswith(prefix or "")
        ]


def make_reference(url, resource_type=ResourceType.PDF, ext=".pdf", ordinal=0):
    return ResourceReference(
        source_text=url,
        normalized_url=url,
        resource_type=resource_type,
        file_extension=ext,
        is_external=True,
        originating_elements=(f'<a href="{url}">doc</a>',),
        ordinal_position=ordinal,
    )


def make_content(
    url="https://files.example.org/docs/report.pdf",
    body=b"%PDF-1.4 fake",
    filename="report.pdf",
    mime_type="application/pdf",
):
    return FetchedContent(
        reference=make_reference(url),
        content=body,
        byte_size=len(body),
        mime_type=mime_type,
        suggested_filename=filename,
        fetch_duration=0.01,
        fetched_at=utcnow(),
    )


@pytest.fixture
def dummy_fetcher():
    return DummyFetcher


@pytest.fixture
def dummy_response():
    return DummyResponse


@pytest.fixture
def pdf():
    return pdf_response


@pytest.fixture
def reference():
    return make_reference


@pytest.fixture
def content():
    return make_content


@pytest.fixture
def fake_gcs_client():
    return FakeGCSClient()
