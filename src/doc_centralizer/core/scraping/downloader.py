"""
Downloader (explicação para leigos)

Este arquivo contém o componente que baixa os documentos encontrados no HTML
(PDFs, planilhas, apresentações). A ideia principal é:

- baixar cada arquivo em pedaços (stream), parando cedo se passar do limite
  de tamanho;
- baixar vários arquivos ao mesmo tempo, mas com um número máximo de
  downloads simultâneos (pool de threads);
- tentar de novo quando a falha é passageira (rede, timeout, HTTP 5xx/429),
  esperando um pouco mais a cada tentativa;
- devolver um registro imutável por arquivo: sucesso (`FetchedContent`) ou
  falha (`FetchFailure`).

Comentários simples:
- "backoff": o tempo de espera entre tentativas dobra a cada falha, com um
  teto e um pouco de aleatoriedade para não sobrecarregar o servidor.
- "cancelamento": quem chama pode passar um `threading.Event`; quando ele é
  ligado, os downloads em andamento são interrompidos.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import posixpath
import re
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import unquote, urlsplit

import requests

from doc_centralizer.core.config import FetchOptions
from doc_centralizer.core.errors import (
    ContentTooLargeError,
    NetworkError,
    PipelineCancelledError,
    PipelineError,
    StageAbortedError,
    UpstreamError,
    ValidationError,
)
from doc_centralizer.core.models import (
    FetchBatchResult,
    FetchedContent,
    FetchFailure,
    ResourceReference,
    utcnow,
)
from doc_centralizer.core.retry import is_cancelled, retry_policy
from doc_centralizer.core.scraping.detector import (
    EXTENSION_FOR_MIME,
    EXTENSION_MAP,
    extension_from_url,
)
from doc_centralizer.core.scraping.fetcher import Fetcher, classify_request_error

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
DEFAULT_MIME_TYPE = "application/octet-stream"
_POLL_INTERVAL = 0.1
_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')

# (content, error, retries performed)
_Outcome = Tuple[Optional[FetchedContent], Optional[PipelineError], int]


def clean_mime_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def suggest_filename(url: str, mime_type: str, fallback_ext: str = "") -> str:
    """Nome do arquivo a partir da URL.

    Exemplos:
    - https://exemplo/arquivos/relatorio%202024.pdf -> 'relatorio 2024.pdf'
    - https://exemplo/download?id=123 (application/pdf) -> 'resource_<md5>.pdf'
    """
    path = urlsplit(url).path
    name = _UNSAFE_FILENAME_CHARS.sub("_", unquote(posixpath.basename(path))).strip()

    url_ext = extension_from_url(url)
    if url_ext in EXTENSION_MAP:
        ext = url_ext
    else:
        ext = (
            EXTENSION_FOR_MIME.get(mime_type)
            or mimetypes.guess_extension(mime_type or "")
            or fallback_ext
            or url_ext
        )

    if not name or name in (".", ".."):
        digest = hashlib.md5(url.encode("utf-8")).hexdigest()
        return f"resource_{digest}{ext or '.bin'}"
    if ext and not name.lower().endswith(ext):
        name = f"{name}{ext}"
    return name


def _guess_mime(content_type: Optional[str], filename: str) -> str:
    mime = clean_mime_type(content_type)
    if mime:
        return mime
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_MIME_TYPE


def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Fetch callback %r raised", callback)


class Downloader:
    """Classe responsável por baixar documentos e devolver registros imutáveis.

    Para um leigo:
    - `Downloader().download(ref)` baixa um único arquivo e levanta o erro
      classificado se não conseguir.
    - `Downloader().download_all(refs)` baixa vários em paralelo e nunca
      levanta exceção por causa de um arquivo: cada falha vira um
      `FetchFailure`.

    A classe recebe opcionalmente um `Fetcher` (que encapsula as requisições
    HTTP). Isso facilita testes: podemos injetar um `Fetcher` falso que
    devolve respostas controladas.
    """

    def __init__(
        self, fetcher: Fetcher | None = None, options: FetchOptions | None = None
    ):
        self.options = options or FetchOptions()
        # se nenhum fetcher for passado, criamos um padrão com as opções
        self.fetcher = fetcher or Fetcher(
            timeout=self.options.timeout,
            max_redirects=self.options.max_redirects,
            pool_size=self.options.concurrency,
        )
        self._inflight_lock = threading.Lock()
        self._inflight: set = set()

    # -- single resource ----------------------------------------------

    def download(
        self,
        reference: ResourceReference,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchedContent:
        """Baixa um arquivo (com tentativas) ou levanta o erro classificado."""
        content, error, _ = self._run(reference, cancel_event)
        if error is not None:
            raise error
        return content

    def _run(
        self, reference: ResourceReference, cancel_event: Optional[threading.Event]
    ) -> _Outcome:
        url = reference.normalized_url
        retries = 0
        policy = retry_policy(
            self.options.max_retries,
            self.options.retry_base_delay,
            self.options.retry_max_delay,
            cancel_event,
            label=url,
        )
        try:
            for attempt in policy:
                with attempt:
                    retries = attempt.retry_state.attempt_number - 1
                    if is_cancelled(cancel_event):
                        raise PipelineCancelledError("Download cancelled", url=url)
                    content = self._fetch_once(reference, cancel_event)
        except PipelineCancelledError:
            return None, PipelineCancelledError("Download cancelled", url=url), retries
        except PipelineError as exc:
            logger.debug("Giving up on %s after %d retries: %s", url, retries, exc)
            return None, exc, retries
        except Exception as exc:
            logger.exception("Unexpected error downloading %s", url)
            return None, PipelineError(f"Unexpected error: {exc}", url=url), retries
        return content, None, retries

    def _fetch_once(
        self, reference: ResourceReference, cancel_event: Optional[threading.Event]
    ) -> FetchedContent:
        url = reference.normalized_url
        limit = self.options.max_file_size
        timeout = self.options.timeout
        started = time.perf_counter()

        try:
            resp = self.fetcher.stream_get(url, headers=self.options.headers or None)
        except requests.RequestException as exc:
            raise classify_request_error(exc, url) from exc

        with self._inflight_lock:
            self._inflight.add(resp)
        try:
            status = resp.status_code
            if not 200 <= status < 300:
                raise UpstreamError(f"HTTP {status} for {url}", url=url, status_code=status)

            declared = resp.headers.get("Content-Length")
            if declared and declared.strip().isdigit() and int(declared) > limit:
                raise ContentTooLargeError(
                    f"Declared size {declared} exceeds limit of {limit} bytes", url=url
                )

            hasher = hashlib.sha256() if self.options.calculate_hash else None
            chunks = []
            total = 0
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if is_cancelled(cancel_event):
                        raise PipelineCancelledError("Download cancelled", url=url)
                    # the transport timeout only bounds each read
                    if time.perf_counter() - started > timeout:
                        raise NetworkError(
                            f"Download exceeded {timeout}s", url=url, timed_out=True
                        )
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > limit:
                        raise ContentTooLargeError(
                            f"Content exceeds limit of {limit} bytes", url=url
                        )
                    chunks.append(chunk)
                    if hasher is not None:
                        hasher.update(chunk)
            except PipelineError:
                raise
            except Exception as exc:
                # Closing the response from another thread surfaces here.
                if is_cancelled(cancel_event):
                    raise PipelineCancelledError("Download cancelled", url=url) from exc
                if isinstance(exc, requests.RequestException):
                    raise classify_request_error(exc, url) from exc
                raise

            if total == 0:
                raise ValidationError("Empty response body", url=url)

            mime_hint = clean_mime_type(resp.headers.get("Content-Type"))
            filename = suggest_filename(url, mime_hint, reference.file_extension)
            content = b"".join(chunks)
        finally:
            with self._inflight_lock:
                self._inflight.discard(resp)
            resp.close()

        logger.debug("Downloaded %s (%d bytes)", url, total)
        return FetchedContent(
            reference=reference,
            content=content,
            byte_size=total,
            mime_type=_guess_mime(resp.headers.get("Content-Type"), filename),
            suggested_filename=filename,
            fetch_duration=time.perf_counter() - started,
            fetched_at=utcnow(),
            integrity_hash=hasher.hexdigest() if hasher is not None else None,
        )

    def _close_inflight(self) -> None:
        with self._inflight_lock:
            responses = list(self._inflight)
        for resp in responses:
            try:
                resp.close()
            except Exception:
                logger.debug("Error closing in-flight response", exc_info=True)

    # -- batch ----------------------------------------------------------

    def download_all(
        self,
        references: Iterable[ResourceReference],
        on_progress: Optional[Callable[[int, int, int], None]] = None,
        on_complete: Optional[Callable[[FetchedContent], None]] = None,
        on_fail: Optional[Callable[[FetchFailure], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchBatchResult:
        """Baixa todas as referências com concorrência limitada.

        Callbacks rodam na thread que chamou, depois de cada item terminar.
        `on_progress` recebe (processados, total, bytes baixados).

        Com `continue_on_error=False`, a primeira falha para o agendamento:
        os arquivos que ainda não começaram viram falhas "aborted".
        """
        refs = list(references)
        started = time.perf_counter()
        successes: Dict[int, FetchedContent] = {}
        failures: Dict[int, FetchFailure] = {}
        total_bytes = 0

        def fail(idx: int, error: PipelineError, retries: int) -> None:
            failure = FetchFailure(
                reference=refs[idx],
                error=error,
                status_code=error.status_code,
                retry_attempts=retries,
                failed_at=utcnow(),
            )
            failures[idx] = failure
            logger.info("Failed %s: %s", refs[idx].normalized_url, error.message)
            _notify(on_fail, failure)

        if refs:
            workers = min(self.options.concurrency, len(refs))
            queue = deque(range(len(refs)))
            stop_reason: Optional[PipelineError] = None
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
                in_flight: Dict = {}

                def schedule() -> None:
                    while queue and stop_reason is None and len(in_flight) < workers:
                        idx = queue.popleft()
                        in_flight[pool.submit(self._run, refs[idx], cancel_event)] = idx

                schedule()
                while in_flight:
                    done, _ = wait(
                        set(in_flight), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED
                    )
                    if stop_reason is None and is_cancelled(cancel_event):
                        logger.info("Cancellation requested, stopping downloads")
                        stop_reason = PipelineCancelledError("Download cancelled")
                        self._close_inflight()

                    for fut in done:
                        idx = in_flight.pop(fut)
                        content, error, retries = fut.result()
                        if content is not None:
                            successes[idx] = content
                            total_bytes += content.byte_size
                            _notify(on_complete, content)
                        else:
                            fail(idx, error, retries)
                            if stop_reason is None and not self.options.continue_on_error:
                                logger.info("Stopping downloads after first failure")
                                stop_reason = StageAbortedError(
                                    "Download aborted after an earlier failure"
                                )
                        _notify(
                            on_progress,
                            len(successes) + len(failures),
                            len(refs),
                            total_bytes,
                        )
                    schedule()

                while queue:
                    idx = queue.popleft()
                    url = refs[idx].normalized_url
                    if isinstance(stop_reason, PipelineCancelledError):
                        error = PipelineCancelledError(
                            "Download cancelled before start", url=url
                        )
                    else:
                        error = StageAbortedError(
                            "Download aborted after an earlier failure", url=url
                        )
                    fail(idx, error, 0)
                    _notify(
                        on_progress,
                        len(successes) + len(failures),
                        len(refs),
                        total_bytes,
                    )

        elapsed = time.perf_counter() - started
        summary = {
            "total": len(refs),
            "successful": len(successes),
            "failed": len(failures),
            "total_bytes": total_bytes,
            "total_time": elapsed,
        }
        logger.info(
            "Fetched %d/%d resources (%d bytes) in %.2fs",
            len(successes),
            len(refs),
            total_bytes,
            elapsed,
        )
        return FetchBatchResult(
            successful=tuple(successes[i] for i in sorted(successes)),
            failed=tuple(failures[i] for i in sorted(failures)),
            summary=summary,
        )

    def close(self) -> None:
        self.fetcher.close()
