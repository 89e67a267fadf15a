"""Tarefas Prefect que usam os componentes do pipeline.

Este arquivo adapta as funções "baixas" (fetcher, orquestrador, relatório)
para o modelo de execução do Prefect. Prefect organiza trabalho em "tasks"
e "flows": cada task aqui é uma unidade de trabalho com tentativas (retries)
configuradas e logs.

Para quem não conhece Prefect:
- Um "task" é uma função executada por Prefect; ela pode ser reexecutada se
    falhar (retries) e tem logs/estado. Um "flow" compõe várias tasks em sequência.

O processamento em si não tem retry no Prefect: o pipeline já faz retry por
arquivo e nunca levanta exceção por causa de um arquivo só.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from prefect import get_run_logger, task

from doc_centralizer.core.interfaces import ContentStore
from doc_centralizer.core.models import PipelineRun
from doc_centralizer.core.pipeline import process
from doc_centralizer.core.scraping.fetcher import FetchedPage, Fetcher
from doc_centralizer.services.storage import save_run_report


@task(name="fetch_page", retries=2, retry_delay_seconds=3)
def fetch_page_task(url: str, timeout: float = 30.0) -> FetchedPage:
    logger = get_run_logger()
    logger.info("Fetching page: %s", url)
    f = Fetcher(timeout=timeout)
    try:
        page = f.fetch_page(url)
    finally:
        f.close()
    logger.info("Fetched %s (%d chars, base=%s)", url, len(page.html), page.base_url)
    return page


@task(name="centralize_markup", retries=0)
def process_markup_task(
    markup: str, store: ContentStore, options: Optional[Dict[str, Any]] = None
) -> PipelineRun:
    logger = get_run_logger()
    run = process(markup, store, options or {})
    stats = run.statistics
    logger.info(
        "Run %s ended at %s: %d centralized, %d failed, %d duplicates",
        run.run_id,
        run.stage.value,
        stats.successful,
        stats.failed,
        stats.duplicates,
    )
    for err in run.errors:
        logger.error("[%s] %s: %s", err.stage.value, err.classification, err.message)
    return run


@task(name="save_run_report", retries=2, retry_delay_seconds=5)
def save_report_task(
    run: PipelineRun, bucket: str, path: str, backend: str = "local"
) -> Optional[str]:
    logger = get_run_logger()
    location = save_run_report(run, bucket, path, backend=backend)
    if location is None:
        logger.warning("Run %s had no resources, no report written", run.run_id)
    else:
        logger.info("Report saved to %s", location)
    return location
