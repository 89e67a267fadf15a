import hashlib
import threading
import time

import pytest
import requests

from doc_centralizer.core.config import FetchOptions
from doc_centralizer.core.errors import UpstreamError
from doc_centralizer.core.scraping.downloader import Downloader, suggest_filename


def fast_options(**kwargs):
    kwargs.setdefault("retry_base_delay", 0.0)
    kwargs.setdefault("retry_max_delay", 0.0)
    return FetchOptions(**kwargs)


def test_one_404_among_three(dummy_fetcher, dummy_response, pdf, reference):
    # Cenário C: o segundo link responde 404 e não é tentado de novo
    urls = [f"https://files.example.org/doc{i}.pdf" for i in range(3)]
    fetcher = dummy_fetcher(
        {
            urls[0]: pdf(),
            urls[1]: dummy_response(404, b"missing"),
            urls[2]: pdf(),
        }
    )
    d = Downloader(fetcher=fetcher, options=fast_options())
    batch = d.download_all([reference(u, ordinal=i) for i, u in enumerate(urls)])

    assert len(batch.successful) == 2
    assert len(batch.failed) == 1
    failure = batch.failed[0]
    assert failure.reference.normalized_url == urls[1]
    assert failure.status_code == 404
    assert failure.retry_attempts == 0
    assert fetcher.calls.count(urls[1]) == 1
    assert batch.summary["successful"] == 2
    assert batch.summary["failed"] == 1


def test_503_is_retried_then_succeeds(dummy_fetcher, dummy_response, pdf, reference):
    url = "https://files.example.org/flaky.pdf"
    fetcher = dummy_fetcher({url: [dummy_response(503), dummy_response(503), pdf()]})
    d = Downloader(fetcher=fetcher, options=fast_options(max_retries=3))
    batch = d.download_all([reference(url)])
    assert len(batch.successful) == 1
    assert fetcher.calls.count(url) == 3


def test_retries_are_bounded(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/down.pdf"
    fetcher = dummy_fetcher({url: dummy_response(503)})
    d = Downloader(fetcher=fetcher, options=fast_options(max_retries=2))
    batch = d.download_all([reference(url)])
    failure = batch.failed[0]
    assert failure.status_code == 503
    assert failure.retry_attempts == 2
    assert fetcher.calls.count(url) == 3


def test_429_is_retryable_but_403_is_not(dummy_fetcher, dummy_response, pdf, reference):
    a = "https://files.example.org/limited.pdf"
    b = "https://files.example.org/forbidden.pdf"
    fetcher = dummy_fetcher({a: [dummy_response(429), pdf()], b: dummy_response(403)})
    d = Downloader(fetcher=fetcher, options=fast_options())
    batch = d.download_all([reference(a), reference(b, ordinal=1)])
    assert [c.reference.normalized_url for c in batch.successful] == [a]
    assert batch.failed[0].retry_attempts == 0


def test_network_errors_are_classified(dummy_fetcher, reference):
    a = "https://files.example.org/conn.pdf"
    b = "https://files.example.org/slow.pdf"
    fetcher = dummy_fetcher(
        {a: requests.ConnectionError("refused"), b: requests.Timeout("too slow")}
    )
    d = Downloader(fetcher=fetcher, options=fast_options(max_retries=1))
    batch = d.download_all([reference(a), reference(b, ordinal=1)])
    by_url = {f.reference.normalized_url: f for f in batch.failed}
    assert by_url[a].error.classification == "network"
    assert by_url[a].retry_attempts == 1
    assert by_url[b].error.classification == "timeout"
    assert by_url[b].error.timed_out is True


def test_declared_size_over_limit_is_terminal(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/huge.pdf"
    resp = dummy_response(200, b"x" * 5, headers={"Content-Length": "1000"})
    fetcher = dummy_fetcher({url: resp})
    d = Downloader(fetcher=fetcher, options=fast_options(max_file_size=100))
    batch = d.download_all([reference(url)])
    assert batch.failed[0].error.classification == "too-large"
    assert batch.failed[0].retry_attempts == 0
    assert resp.closed


def test_streamed_size_over_limit_is_terminal(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/sneaky.pdf"
    fetcher = dummy_fetcher({url: dummy_response(200, chunks=[b"x" * 60, b"x" * 60])})
    d = Downloader(fetcher=fetcher, options=fast_options(max_file_size=100))
    batch = d.download_all([reference(url)])
    assert batch.failed[0].error.classification == "too-large"


def test_empty_body_is_rejected(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/empty.pdf"
    fetcher = dummy_fetcher({url: dummy_response(200, b"")})
    batch = Downloader(fetcher=fetcher, options=fast_options()).download_all([reference(url)])
    assert batch.failed[0].error.classification == "validation"


def test_content_metadata_and_hash(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/docs/relat%C3%B3rio%202024.pdf"
    body = b"%PDF-1.7 content"
    fetcher = dummy_fetcher(
        {url: dummy_response(200, body, headers={"Content-Type": "application/pdf; charset=binary"})}
    )
    d = Downloader(fetcher=fetcher, options=fast_options(calculate_hash=True))
    content = d.download(reference(url))
    assert content.content == body
    assert content.byte_size == len(body)
    assert content.mime_type == "application/pdf"
    assert content.suggested_filename == "relatório 2024.pdf"
    assert content.integrity_hash == hashlib.sha256(body).hexdigest()


def test_hash_is_optional(dummy_fetcher, pdf, reference):
    url = "https://files.example.org/a.pdf"
    content = Downloader(fetcher=dummy_fetcher({url: pdf()}), options=fast_options()).download(
        reference(url)
    )
    assert content.integrity_hash is None


def test_mime_guessed_from_filename_without_content_type(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/a.pdf"
    fetcher = dummy_fetcher({url: dummy_response(200, b"data")})
    content = Downloader(fetcher=fetcher, options=fast_options()).download(reference(url))
    assert content.mime_type == "application/pdf"


def test_suggest_filename():
    assert suggest_filename("https://a.com/files/report.pdf", "application/pdf") == "report.pdf"
    assert (
        suggest_filename("https://a.com/files/report", "application/pdf") == "report.pdf"
    )
    synthesized = suggest_filename("https://a.com/download/", "application/pdf")
    assert synthesized.startswith("resource_")
    assert synthesized.endswith(".pdf")
    assert suggest_filename("https://a.com/x/", "application/octet-stream").endswith(".bin")


def test_single_download_raises_classified_error(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/gone.pdf"
    d = Downloader(fetcher=dummy_fetcher({url: dummy_response(410)}), options=fast_options())
    with pytest.raises(UpstreamError) as exc:
        d.download(reference(url))
    assert exc.value.status_code == 410
    assert exc.value.retryable is False


def test_callbacks_run_once_per_item(dummy_fetcher, dummy_response, pdf, reference):
    urls = [f"https://files.example.org/{i}.pdf" for i in range(4)]
    routes = {u: pdf() for u in urls}
    routes[urls[3]] = dummy_response(404)
    progress, completed, failed = [], [], []
    d = Downloader(fetcher=dummy_fetcher(routes), options=fast_options(concurrency=2))
    batch = d.download_all(
        [reference(u, ordinal=i) for i, u in enumerate(urls)],
        on_progress=lambda done, total, nbytes: progress.append((done, total, nbytes)),
        on_complete=completed.append,
        on_fail=failed.append,
    )
    assert [p[0] for p in progress] == [1, 2, 3, 4]
    assert progress[-1][1] == 4
    assert progress[-1][2] == batch.summary["total_bytes"]
    assert len(completed) == 3
    assert len(failed) == 1
    # resultados voltam na ordem de entrada
    assert [c.reference.normalized_url for c in batch.successful] == urls[:3]


def test_cancel_before_start(dummy_fetcher, pdf, reference):
    urls = [f"https://files.example.org/{i}.pdf" for i in range(3)]
    fetcher = dummy_fetcher({u: pdf() for u in urls})
    cancel = threading.Event()
    cancel.set()
    batch = Downloader(fetcher=fetcher, options=fast_options()).download_all(
        [reference(u, ordinal=i) for i, u in enumerate(urls)], cancel_event=cancel
    )
    assert batch.successful == ()
    assert len(batch.failed) == 3
    assert all(f.cancelled for f in batch.failed)
    assert fetcher.calls == []


def test_cancel_during_stream(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/long.pdf"
    cancel = threading.Event()

    def chunks():
        yield b"first"
        cancel.set()
        yield b"second"

    resp = dummy_response(200, chunks=chunks())
    d = Downloader(fetcher=dummy_fetcher({url: resp}), options=fast_options())
    batch = d.download_all([reference(url)], cancel_event=cancel)
    assert batch.failed[0].cancelled
    assert resp.closed


def test_slow_trickle_hits_the_download_deadline(dummy_fetcher, dummy_response, reference):
    # cada pedaço chega dentro do timeout de leitura, mas o total passa do limite
    url = "https://files.example.org/trickle.pdf"

    def chunks():
        for _ in range(10):
            time.sleep(0.1)
            yield b"x"

    resp = dummy_response(200, chunks=chunks())
    options = fast_options(timeout=0.25, max_retries=0)
    d = Downloader(fetcher=dummy_fetcher({url: resp}), options=options)
    batch = d.download_all([reference(url)])

    failure = batch.failed[0]
    assert failure.error.classification == "timeout"
    assert failure.error.timed_out is True
    assert failure.error.retryable is True
    assert resp.closed


def test_stop_on_first_failure_skips_the_rest(dummy_fetcher, dummy_response, pdf, reference):
    urls = [f"https://files.example.org/{i}.pdf" for i in range(3)]
    fetcher = dummy_fetcher({urls[0]: dummy_response(404), urls[1]: pdf(), urls[2]: pdf()})
    failed = []
    d = Downloader(
        fetcher=fetcher, options=fast_options(concurrency=1, continue_on_error=False)
    )
    batch = d.download_all(
        [reference(u, ordinal=i) for i, u in enumerate(urls)], on_fail=failed.append
    )

    assert batch.successful == ()
    assert [f.error.classification for f in batch.failed] == ["upstream", "aborted", "aborted"]
    assert fetcher.calls == [urls[0]]
    assert len(failed) == 3
    assert batch.summary["failed"] == 3


def test_failures_do_not_stop_the_batch_by_default(dummy_fetcher, dummy_response, pdf, reference):
    urls = [f"https://files.example.org/{i}.pdf" for i in range(3)]
    fetcher = dummy_fetcher({urls[0]: dummy_response(404), urls[1]: pdf(), urls[2]: pdf()})
    d = Downloader(fetcher=fetcher, options=fast_options(concurrency=1))
    batch = d.download_all([reference(u, ordinal=i) for i, u in enumerate(urls)])
    assert len(batch.successful) == 2
    assert fetcher.calls == urls


def test_cancel_during_backoff_wait(dummy_fetcher, dummy_response, reference):
    url = "https://files.example.org/busy.pdf"
    fetcher = dummy_fetcher({url: dummy_response(503)})
    cancel = threading.Event()
    options = FetchOptions(max_retries=5, retry_base_delay=30.0, retry_max_delay=30.0)
    threading.Timer(0.2, cancel.set).start()

    started = time.monotonic()
    batch = Downloader(fetcher=fetcher, options=options).download_all(
        [reference(url)], cancel_event=cancel
    )

    assert time.monotonic() - started < 5
    assert batch.failed[0].cancelled
    assert fetcher.calls == [url]
