"""
Fluxo de centralização de documentos (explicado para leigos)

Este arquivo define um "flow" do Prefect que pega uma página HTML, baixa os
documentos que ela linka (PDFs, planilhas, apresentações), guarda cópias em
um content store e devolve o HTML com os links apontando para as cópias.

Visão geral simplificada do que o fluxo faz:

1. Valida a configuração do job (nome, origem, store de destino, etc.).
2. Se a configuração trouxer o HTML pronto (`markup`), usa ele; senão busca
    a página em `source_url`.
3. Monta o content store escolhido (GCS, pasta local ou memória).
4. Roda o pipeline (extrair, baixar, enviar, reescrever).
5. Salva um relatório CSV com uma linha por documento.
"""

from __future__ import annotations

from typing import Any, Dict

from prefect import flow, get_run_logger

from doc_centralizer.core.config import JobConfig
from doc_centralizer.core.interfaces import ContentStore
from doc_centralizer.core.scraping.normalizer import extract_base_url
from doc_centralizer.core.scraping.prefect_tasks import (
    fetch_page_task,
    process_markup_task,
    save_report_task,
)
from doc_centralizer.services.storage_backends import (
    GCSContentStore,
    InMemoryContentStore,
    LocalContentStore,
)


def build_store(config: JobConfig) -> ContentStore:
    """Escolhe o content store a partir de `store_backend`."""
    if config.store_backend == "memory":
        if config.public_base_url:
            return InMemoryContentStore(config.public_base_url)
        return InMemoryContentStore()
    if config.store_backend == "local":
        if not config.public_base_url:
            raise ValueError("public_base_url is required for the local store backend")
        return LocalContentStore(
            root=f"{config.destination_bucket}/{config.destination_path}",
            public_base_url=config.public_base_url,
        )
    return GCSContentStore(
        bucket=config.destination_bucket,
        prefix=f"{config.destination_path}/{config.job_name}",
        public_base_url=config.public_base_url,
    )


@flow(name="Document Centralizer", log_prints=True)
def centralize_documents_flow(config_dict: dict) -> Dict[str, Any]:
    """Centralize the documents linked from one page.

    config_dict: must conform to `JobConfig`.
    """
    logger = get_run_logger()
    try:
        config = JobConfig(**config_dict)
        logger.info("Config valid for job: %s", config.job_name)
    except Exception as e:
        logger.error("Invalid config: %s", e)
        raise

    options = dict(config.options)

    # O HTML pode vir pronto na configuração ou ser buscado na origem.
    if config.markup:
        markup = config.markup
        if config.source_url:
            options.setdefault("base_url", extract_base_url(config.source_url))
    else:
        page = fetch_page_task(config.source_url)
        markup = page.html
        options.setdefault("base_url", page.base_url)

    store = build_store(config)
    run = process_markup_task(markup, store, options)

    # O relatório é salvo mesmo quando a execução falha: é ele que explica
    # o que aconteceu com cada documento.
    report = save_report_task(
        run,
        config.destination_bucket,
        config.report_path,
        backend=config.report_backend,
    )

    stats = run.statistics
    return {
        "job_name": config.job_name,
        "run_id": run.run_id,
        "stage": run.stage.value,
        "cancelled": run.cancelled,
        "total_resources": stats.total_resources,
        "successful": stats.successful,
        "failed": stats.failed,
        "duplicates": stats.duplicates,
        "url_mapping": dict(run.url_mapping),
        "markup": run.output_markup,
        "report": report,
    }
