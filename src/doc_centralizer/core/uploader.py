"""Store uploader: pushes fetched bytes to a ContentStore.

Each item is validated, checked for an existing duplicate and uploaded with
retries. Every store call runs on its own daemon thread so that the wait is
bounded and a hung call can be abandoned without holding up other items.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, Iterable, Optional, Tuple

from doc_centralizer.core.config import UploadOptions
from doc_centralizer.core.errors import (
    ContentTooLargeError,
    PipelineCancelledError,
    PipelineError,
    StageAbortedError,
    StoreError,
    ValidationError,
)
from doc_centralizer.core.interfaces import ContentStore, StoredObject
from doc_centralizer.core.models import (
    FetchedContent,
    StoredContentRecord,
    UploadBatchResult,
    UploadFailure,
    utcnow,
)
from doc_centralizer.core.retry import is_cancelled, retry_policy

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1

# (record, error, retries performed)
_Outcome = Tuple[Optional[StoredContentRecord], Optional[PipelineError], int]


def classify_store_error(exc: Exception, url: Optional[str] = None) -> PipelineError:
    """Wrap whatever a store client raised into the error taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (OSError, TimeoutError)):
        return StoreError(f"Store I/O failure: {exc}", url=url, retryable=True)
    return StoreError(f"Store call failed: {exc}", url=url, retryable=False)


def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Upload callback %r raised", callback)


class StoreUploader:
    """Uploads `FetchedContent` items to a `ContentStore`.

    Usage:
        uploader = StoreUploader(store, UploadOptions(concurrency=2))
        batch = uploader.upload_all(fetch_result.successful)
        batch.url_mapping  # normalized_url -> public URL
    """

    def __init__(self, store: ContentStore, options: UploadOptions | None = None):
        self.store = store
        self.options = options or UploadOptions()

    # -- single item ----------------------------------------------------

    def upload(
        self,
        content: FetchedContent,
        cancel_event: Optional[threading.Event] = None,
    ) -> StoredContentRecord:
        """Upload one item (with retries) or raise the classified error."""
        record, error, _ = self._run(content, cancel_event)
        if error is not None:
            raise error
        return record

    def _validate(self, content: FetchedContent) -> None:
        url = content.reference.normalized_url
        if content.byte_size <= 0 or not content.content:
            raise ValidationError("Content is empty", url=url)
        if content.byte_size > self.options.max_file_size:
            raise ContentTooLargeError(
                f"Content size {content.byte_size} exceeds limit of "
                f"{self.options.max_file_size} bytes",
                url=url,
            )

    def _find_duplicate(self, content: FetchedContent) -> Optional[StoredObject]:
        # Not retried: a failing check just means "upload it again".
        try:
            return self.store.find_duplicate(
                content.suggested_filename, content.byte_size, content.mime_type
            )
        except Exception as exc:
            logger.warning(
                "Duplicate check failed for %s, uploading anyway: %s",
                content.suggested_filename,
                exc,
            )
            return None

    def public_url_for(self, remote_id: str) -> str:
        try:
            url = self.store.resolve_public_url(remote_id)
        except Exception as exc:
            logger.warning("Could not resolve public URL for %s: %s", remote_id, exc)
            url = None
        return url or self.options.fallback_url_template.format(remote_id=remote_id)

    def _start_store_call(self, content: FetchedContent) -> Future:
        future: Future = Future()

        def target() -> None:
            future.set_running_or_notify_cancel()
            try:
                future.set_result(
                    self.store.upload(
                        content.content, content.suggested_filename, content.mime_type
                    )
                )
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=target, name="store-call", daemon=True).start()
        return future

    def _call_store(
        self, content: FetchedContent, cancel_event: Optional[threading.Event]
    ) -> StoredObject:
        url = content.reference.normalized_url
        timeout = self.options.timeout
        deadline = time.monotonic() + timeout
        future = self._start_store_call(content)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 and not future.done():
                raise StoreError(
                    f"Upload timed out after {timeout}s", url=url, retryable=True
                )
            try:
                return future.result(timeout=max(min(_POLL_INTERVAL, remaining), 0))
            except FutureTimeout:
                if is_cancelled(cancel_event):
                    raise PipelineCancelledError("Upload cancelled", url=url)

    def _attempt(
        self, content: FetchedContent, cancel_event: Optional[threading.Event]
    ) -> StoredObject:
        url = content.reference.normalized_url
        if is_cancelled(cancel_event):
            raise PipelineCancelledError("Upload cancelled", url=url)
        try:
            return self._call_store(content, cancel_event)
        except Exception as exc:
            error = classify_store_error(exc, url)
            if error is exc:
                raise
            raise error from exc

    def _run(
        self, content: FetchedContent, cancel_event: Optional[threading.Event]
    ) -> _Outcome:
        ref = content.reference
        url = ref.normalized_url
        try:
            self._validate(content)
        except PipelineError as exc:
            return None, exc, 0

        if self.options.check_duplicates:
            existing = self._find_duplicate(content)
            if existing is not None:
                logger.info(
                    "Reusing stored object %s for %s", existing.remote_id, url
                )
                record = StoredContentRecord(
                    reference=ref,
                    remote_id=existing.remote_id,
                    public_url=existing.public_url
                    or self.public_url_for(existing.remote_id),
                    was_duplicate=True,
                    byte_size=content.byte_size,
                    uploaded_at=utcnow(),
                    thumbnail_url=existing.thumbnail_url,
                )
                return record, None, 0

        retries = 0
        policy = retry_policy(
            self.options.max_retries,
            self.options.retry_base_delay,
            self.options.retry_max_delay,
            cancel_event,
            label=f"upload of {url}",
        )
        try:
            for attempt in policy:
                with attempt:
                    retries = attempt.retry_state.attempt_number - 1
                    stored = self._attempt(content, cancel_event)
        except PipelineCancelledError:
            return None, PipelineCancelledError("Upload cancelled", url=url), retries
        except PipelineError as exc:
            logger.debug("Giving up on upload of %s after %d retries", url, retries)
            return None, exc, retries

        record = StoredContentRecord(
            reference=ref,
            remote_id=stored.remote_id,
            public_url=stored.public_url or self.public_url_for(stored.remote_id),
            was_duplicate=False,
            byte_size=content.byte_size,
            uploaded_at=utcnow(),
            thumbnail_url=stored.thumbnail_url,
        )
        logger.debug("Uploaded %s as %s", url, record.remote_id)
        return record, None, retries

    # -- batch ----------------------------------------------------------

    def upload_all(
        self,
        contents: Iterable[FetchedContent],
        on_progress: Optional[Callable[[int, int, int], None]] = None,
        on_complete: Optional[Callable[[StoredContentRecord], None]] = None,
        on_fail: Optional[Callable[[UploadFailure], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadBatchResult:
        """Upload every item with bounded concurrency.

        Always returns exactly one record or failure per input item. With
        `continue_on_error=False` the first failure stops scheduling and the
        items never started are reported as aborted.
        """
        items = list(contents)
        started = time.perf_counter()
        records: Dict[int, StoredContentRecord] = {}
        failures: Dict[int, UploadFailure] = {}
        bytes_sent = 0

        def fail(idx: int, error: PipelineError, retries: int) -> None:
            failure = UploadFailure(
                content=items[idx],
                error=error,
                status_code=error.status_code,
                retry_attempts=retries,
                failed_at=utcnow(),
            )
            failures[idx] = failure
            logger.info("Upload failed for %s: %s", error.url, error.message)
            _notify(on_fail, failure)

        if items:
            workers = min(self.options.concurrency, len(items))
            queue = deque(range(len(items)))
            stop_reason: Optional[PipelineError] = None
            pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload")
            try:
                in_flight: Dict = {}

                def schedule() -> None:
                    while queue and stop_reason is None and len(in_flight) < workers:
                        idx = queue.popleft()
                        fut = pool.submit(self._run, items[idx], cancel_event)
                        in_flight[fut] = idx

                schedule()
                while in_flight:
                    done, _ = wait(
                        set(in_flight), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED
                    )
                    if stop_reason is None and is_cancelled(cancel_event):
                        logger.info("Cancellation requested, stopping uploads")
                        stop_reason = PipelineCancelledError("Upload cancelled")

                    for fut in done:
                        idx = in_flight.pop(fut)
                        record, error, retries = fut.result()
                        if record is not None:
                            records[idx] = record
                            if not record.was_duplicate:
                                bytes_sent += record.byte_size
                            _notify(on_complete, record)
                        else:
                            fail(idx, error, retries)
                            if stop_reason is None and not self.options.continue_on_error:
                                stop_reason = StageAbortedError(
                                    "Upload aborted after an earlier failure"
                                )
                        _notify(
                            on_progress,
                            len(records) + len(failures),
                            len(items),
                            bytes_sent,
                        )
                    schedule()

                while queue:
                    idx = queue.popleft()
                    reason = stop_reason
                    url = items[idx].reference.normalized_url
                    if isinstance(reason, PipelineCancelledError):
                        error = PipelineCancelledError("Upload cancelled before start", url=url)
                    else:
                        error = StageAbortedError(
                            "Upload aborted after an earlier failure", url=url
                        )
                    fail(idx, error, 0)
                    _notify(
                        on_progress, len(records) + len(failures), len(items), bytes_sent
                    )
            finally:
                pool.shutdown(wait=True)

        ordered = [records[i] for i in sorted(records)]
        elapsed = time.perf_counter() - started
        summary = {
            "total": len(items),
            "successful": len(records),
            "failed": len(failures),
            "duplicates": sum(1 for r in ordered if r.was_duplicate),
            "total_bytes": bytes_sent,
        }
        logger.info(
            "Uploaded %d/%d items (%d duplicates) in %.2fs",
            len(records),
            len(items),
            summary["duplicates"],
            elapsed,
        )
        return UploadBatchResult(
            records=tuple(ordered),
            failures=tuple(failures[i] for i in sorted(failures)),
            url_mapping={r.reference.normalized_url: r.public_url for r in ordered},
            summary=summary,
            processing_time=elapsed,
        )
