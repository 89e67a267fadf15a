"""
Pipeline orchestrator (explicação para leigos)

Junta as quatro etapas em uma execução só:

1. PARSING: encontra os links para documentos no HTML;
2. DOWNLOADING: baixa os documentos;
3. UPLOADING: envia os bytes para o content store;
4. REPLACING: troca os links do HTML pelos endereços novos.

Cada documento tem uma linha no "livro-razão" (`PipelineRun.entries`), e cada
etapa só atualiza o status dessa linha. No fim a execução fica congelada em
COMPLETE ou FAILED e nada mais pode mudá-la.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from doc_centralizer.core.config import PipelineOptions
from doc_centralizer.core.errors import (
    PipelineCancelledError,
    PipelineError,
    ValidationError,
)
from doc_centralizer.core.interfaces import ContentStore
from doc_centralizer.core.models import (
    FetchedContent,
    FetchFailure,
    PipelineRun,
    ProcessingError,
    ProcessingStage,
    ProcessingWarning,
    ProgressEvent,
    ResourceError,
    ResourceStatus,
    StoredContentRecord,
    UploadFailure,
    utcnow,
)
from doc_centralizer.core.retry import is_cancelled
from doc_centralizer.core.rewriter import rewrite_urls
from doc_centralizer.core.scraping.downloader import Downloader
from doc_centralizer.core.scraping.fetcher import Fetcher
from doc_centralizer.core.scraping.parser import extract_resources
from doc_centralizer.core.uploader import StoreUploader

logger = logging.getLogger(__name__)

_STORE_METHODS = ("upload", "find_duplicate", "resolve_public_url")


class StageHalted(PipelineError):
    """A stage had failures and the run does not continue on error."""

    classification = "halted"


def resolve_options(
    options: Union[PipelineOptions, Dict[str, Any], None] = None, **overrides: Any
) -> PipelineOptions:
    """Merge options and keyword overrides into a validated PipelineOptions."""
    if options is None:
        data: Dict[str, Any] = {}
    elif isinstance(options, PipelineOptions):
        data = dict(options)
    elif isinstance(options, dict):
        data = dict(options)
    else:
        raise ValidationError(
            f"options must be PipelineOptions or dict, got {type(options).__name__}"
        )
    data.update(overrides)
    try:
        return PipelineOptions(**data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid pipeline options: {exc}") from exc


def process(
    markup: str,
    store: ContentStore,
    options: Union[PipelineOptions, Dict[str, Any], None] = None,
    *,
    fetcher: Optional[Fetcher] = None,
    **overrides: Any,
) -> PipelineRun:
    """Run the whole centralization pipeline over `markup`.

    Only `ValidationError` (bad arguments, detected before the run starts)
    is raised. Everything else ends up on the returned, frozen run.

    When `fetcher` is given it is used as is: its own per-request timeout,
    redirect limit and session settings win over `download_timeout` and
    `max_redirects`. The options still apply on top of it, since
    `request_headers` go out with every request and `download_timeout` also
    caps the whole streamed download.
    """
    opts = resolve_options(options, **overrides)
    if not isinstance(markup, str):
        raise ValidationError(f"markup must be a string, got {type(markup).__name__}")
    missing = [m for m in _STORE_METHODS if not callable(getattr(store, m, None))]
    if missing:
        raise ValidationError(f"store is missing required methods: {', '.join(missing)}")
    return PipelineOrchestrator(store, opts, fetcher=fetcher).run(markup)


class PipelineOrchestrator:
    """Sequences extraction, fetch, upload and rewrite over one PipelineRun."""

    def __init__(
        self,
        store: ContentStore,
        options: Optional[PipelineOptions] = None,
        fetcher: Optional[Fetcher] = None,
    ):
        self.options = options or PipelineOptions()
        self.store = store
        self.downloader = Downloader(fetcher=fetcher, options=self.options.fetch_options())
        self.uploader = StoreUploader(store, options=self.options.upload_options())

    @property
    def cancel_event(self):
        return self.options.cancel_event

    # -- events ----------------------------------------------------------

    def _emit(self, run: PipelineRun, name: str, *args: Any) -> None:
        callback = getattr(self.options, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.exception("Callback %s raised", name)
            run.add_warning(
                ProcessingWarning(f"Callback {name} raised: {exc}", run.stage, "callback")
            )

    def _progress(self, run: PipelineRun, started: float, done: int, total: int, nbytes: int):
        event = ProgressEvent(
            stage=run.stage,
            percent_complete=int(done * 100 / total) if total else 100,
            processed_count=done,
            total_count=total,
            bytes_transferred=nbytes,
            elapsed=time.perf_counter() - started,
        )
        self._emit(run, "on_progress", event)

    @contextmanager
    def _stage(self, run: PipelineRun, stage: ProcessingStage):
        if is_cancelled(self.cancel_event):
            raise PipelineCancelledError(f"Run cancelled before {stage.value}")
        run.transition(stage)
        logger.info("Run %s: %s started", run.run_id, stage.value)
        self._emit(run, "on_stage_start", stage)
        started = time.perf_counter()
        try:
            yield started
        finally:
            run.stage_durations[stage.value] = time.perf_counter() - started
        logger.info(
            "Run %s: %s finished in %.2fs",
            run.run_id,
            stage.value,
            run.stage_durations[stage.value],
        )
        self._emit(run, "on_stage_complete", stage, run.stage_durations[stage.value])

    def _skip(self, run: PipelineRun, message: str) -> None:
        logger.info("Run %s: %s", run.run_id, message)
        run.add_warning(ProcessingWarning(message, run.stage, "skipped"))

    def _check_cancelled(self, stage: ProcessingStage) -> None:
        if is_cancelled(self.cancel_event):
            raise PipelineCancelledError(f"Run cancelled during {stage.value}")

    def _halt_if_needed(self, stage: ProcessingStage, failed: int) -> None:
        if failed and not self.options.continue_on_error:
            raise StageHalted(f"{failed} resource(s) failed during {stage.value}")

    # -- run -------------------------------------------------------------

    def run(self, markup: str) -> PipelineRun:
        run = PipelineRun(markup, options=self.options.snapshot())
        started = time.perf_counter()
        logger.info("Run %s started (%d chars of markup)", run.run_id, len(markup))
        try:
            self._parse(run)
            self._download(run)
            self._upload(run)
            self._replace(run)
            run.transition(ProcessingStage.COMPLETE)
        except PipelineCancelledError as exc:
            run.cancelled = True
            self._fail(run, exc)
        except PipelineError as exc:
            self._fail(run, exc)
        except Exception as exc:
            logger.exception("Run %s: unexpected error at %s", run.run_id, run.stage.value)
            self._fail(run, exc)
        finally:
            self._finalize_statistics(run, started)
            if run.stage not in (ProcessingStage.COMPLETE, ProcessingStage.FAILED):
                run.transition(ProcessingStage.FAILED)
            run.freeze()

        stats = run.statistics
        logger.info(
            "Run %s %s: %d/%d resources centralized, %d failed, %.2fs",
            run.run_id,
            run.stage.value,
            stats.successful,
            stats.total_resources,
            stats.failed,
            stats.total_time,
        )
        return run

    def _fail(self, run: PipelineRun, exc: Exception) -> None:
        classification = getattr(exc, "classification", "unknown")
        run.add_error(
            ProcessingError(
                message=str(exc),
                stage=run.stage,
                classification=classification,
                recoverable=False,
                timestamp=utcnow(),
                url=getattr(exc, "url", None),
            )
        )
        logger.warning(
            "Run %s failed at %s (%s): %s",
            run.run_id,
            run.stage.value,
            classification,
            exc,
        )
        run.output_markup = run.original_markup
        run.transition(ProcessingStage.FAILED)

    # -- stages ----------------------------------------------------------

    def _parse(self, run: PipelineRun) -> None:
        with self._stage(run, ProcessingStage.PARSING):
            result = extract_resources(
                run.original_markup,
                base_url=self.options.base_url,
                external_only=self.options.external_only,
                max_url_length=self.options.max_url_length,
            )
            run.extraction = result
            for issue in result.errors:
                run.add_warning(
                    ProcessingWarning(issue.message, run.stage, "validation", url=issue.url)
                )
            for ref in result.references:
                run.register(ref)
            if not result.references:
                self._skip(run, "No downloadable resources found in markup")

    def _resource_error(self, stage, failure) -> ResourceError:
        return ResourceError(
            stage=stage,
            message=failure.error.message,
            classification=failure.error.classification,
            status_code=failure.status_code,
            retry_attempts=failure.retry_attempts,
        )

    def _download(self, run: PipelineRun) -> None:
        with self._stage(run, ProcessingStage.DOWNLOADING) as started:
            refs = [e.reference for e in run.entries_with(ResourceStatus.PENDING)]
            if not refs:
                self._skip(run, "Nothing to download")
                return
            for ref in refs:
                run.set_status(ref.normalized_url, ResourceStatus.DOWNLOADING, stamp="started")

            def on_complete(content: FetchedContent) -> None:
                run.set_status(
                    content.reference.normalized_url,
                    ResourceStatus.DOWNLOADING,
                    stamp="downloaded",
                    fetched=content,
                )

            def on_fail(failure: FetchFailure) -> None:
                entry = run.set_status(
                    failure.reference.normalized_url,
                    ResourceStatus.FAILED,
                    stamp="failed",
                    error=self._resource_error(ProcessingStage.DOWNLOADING, failure),
                )
                self._emit(run, "on_resource_fail", entry)

            batch = self.downloader.download_all(
                refs,
                on_progress=lambda d, t, b: self._progress(run, started, d, t, b),
                on_complete=on_complete,
                on_fail=on_fail,
                cancel_event=self.cancel_event,
            )
            self._check_cancelled(run.stage)
            if not batch.successful:
                self._skip(run, "No resource could be downloaded")
            self._halt_if_needed(run.stage, len(batch.failed))

    def _upload(self, run: PipelineRun) -> None:
        with self._stage(run, ProcessingStage.UPLOADING) as started:
            contents = [
                e.fetched
                for e in run.entries_with(ResourceStatus.DOWNLOADING)
                if e.fetched is not None
            ]
            if not contents:
                self._skip(run, "Nothing to upload")
                return
            for content in contents:
                run.set_status(content.reference.normalized_url, ResourceStatus.UPLOADING)

            def on_complete(record: StoredContentRecord) -> None:
                url = record.reference.normalized_url
                run.set_status(url, ResourceStatus.UPLOADING, stamp="uploaded", stored=record)
                entry = run.set_status(url, ResourceStatus.COMPLETED, stamp="completed")
                if record.was_duplicate:
                    run.add_warning(
                        ProcessingWarning(
                            f"Reused existing stored object {record.remote_id}",
                            run.stage,
                            "duplicate",
                            url=url,
                        )
                    )
                self._emit(run, "on_resource_complete", entry)

            def on_fail(failure: UploadFailure) -> None:
                entry = run.set_status(
                    failure.reference.normalized_url,
                    ResourceStatus.FAILED,
                    stamp="failed",
                    error=self._resource_error(ProcessingStage.UPLOADING, failure),
                )
                self._emit(run, "on_resource_fail", entry)

            batch = self.uploader.upload_all(
                contents,
                on_progress=lambda d, t, b: self._progress(run, started, d, t, b),
                on_complete=on_complete,
                on_fail=on_fail,
                cancel_event=self.cancel_event,
            )
            run.url_mapping = dict(batch.url_mapping)
            self._check_cancelled(run.stage)
            if not batch.records:
                self._skip(run, "No resource could be uploaded")
            self._halt_if_needed(run.stage, len(batch.failures))

    def _replace(self, run: PipelineRun) -> None:
        with self._stage(run, ProcessingStage.REPLACING):
            if not run.url_mapping:
                self._skip(run, "No URL mapping, markup left unchanged")
                return
            result = rewrite_urls(
                run.original_markup, run.url_mapping, self.options.rewrite_options()
            )
            run.rewrite = result
            run.output_markup = result.markup
            for warning in result.warnings:
                run.add_warning(
                    ProcessingWarning(warning.message, run.stage, warning.kind, url=warning.url)
                )

    # -- statistics ------------------------------------------------------

    def _finalize_statistics(self, run: PipelineRun, started: float) -> None:
        stats = run.statistics
        entries = list(run.entries.values())
        stats.total_resources = len(entries)
        stats.successful = sum(1 for e in entries if e.status == ResourceStatus.COMPLETED)
        stats.failed = sum(1 for e in entries if e.status == ResourceStatus.FAILED)
        stats.skipped = stats.total_resources - stats.successful - stats.failed
        stats.duplicates = sum(1 for e in entries if e.stored and e.stored.was_duplicate)
        stats.total_bytes_downloaded = sum(e.fetched.byte_size for e in entries if e.fetched)
        stats.total_bytes_uploaded = sum(
            e.stored.byte_size for e in entries if e.stored and not e.stored.was_duplicate
        )
        stats.stage_times = dict(run.stage_durations)
        stats.total_time = time.perf_counter() - started
        stats.average_time_per_resource = (
            stats.total_time / stats.total_resources if stats.total_resources else 0.0
        )
        by_type: Dict[str, Dict[str, int]] = {}
        for e in entries:
            bucket = by_type.setdefault(
                e.reference.resource_type.value, {"total": 0, "successful": 0, "failed": 0}
            )
            bucket["total"] += 1
            if e.status == ResourceStatus.COMPLETED:
                bucket["successful"] += 1
            elif e.status == ResourceStatus.FAILED:
                bucket["failed"] += 1
        stats.by_type = by_type
