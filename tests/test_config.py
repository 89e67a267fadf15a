import threading

import pytest
from pydantic import ValidationError as PydanticValidationError

from doc_centralizer.core.config import JobConfig, PipelineOptions
from doc_centralizer.core.errors import ValidationError
from doc_centralizer.core.pipeline import resolve_options


def job(**kwargs):
    cfg = {
        "job_name": "Portal_Docs",
        "destination_bucket": "my-bucket",
        "destination_path": "centralized",
        "source_url": "https://portal.example.gov/docs",
        "execution_date": "2024-05-01",
    }
    cfg.update(kwargs)
    return JobConfig(**cfg)


def test_job_name_is_lowercased_and_report_path_partitioned():
    cfg = job()
    assert cfg.job_name == "portal_docs"
    assert cfg.store_backend == "gcs"
    assert cfg.report_path == "centralized/reports/portal_docs/data_captura=2024-05-01"


def test_job_config_validation():
    with pytest.raises(PydanticValidationError):
        job(job_name="has spaces")
    with pytest.raises(PydanticValidationError):
        job(source_url=None)
    with pytest.raises(PydanticValidationError):
        job(source_url="ftp://portal.example.gov/docs")
    with pytest.raises(PydanticValidationError):
        job(environment="qa")
    assert job(source_url=None, markup="<p></p>").markup == "<p></p>"


def test_pipeline_options_split_into_component_options():
    opts = PipelineOptions(
        download_concurrency=5,
        upload_concurrency=1,
        max_retries=2,
        max_file_size_bytes=1024,
        continue_on_error=False,
        case_sensitive=True,
        base_url="https://mysite.org/",
        request_headers={"Accept": "*/*"},
    )
    fetch = opts.fetch_options()
    assert (fetch.concurrency, fetch.max_retries, fetch.max_file_size) == (5, 2, 1024)
    assert fetch.headers == {"Accept": "*/*"}
    assert fetch.continue_on_error is False

    upload = opts.upload_options()
    assert (upload.concurrency, upload.continue_on_error) == (1, False)

    rewrite = opts.rewrite_options()
    assert rewrite.case_sensitive is True
    assert rewrite.base_url == "https://mysite.org/"


def test_snapshot_leaves_out_callbacks_and_event():
    opts = PipelineOptions(on_progress=print, cancel_event=threading.Event())
    snap = opts.snapshot()
    assert "on_progress" not in snap
    assert "cancel_event" not in snap
    assert snap["max_retries"] == 3


def test_resolve_options_merges_overrides():
    base = PipelineOptions(max_retries=1)
    merged = resolve_options(base, upload_concurrency=4)
    assert merged.max_retries == 1
    assert merged.upload_concurrency == 4
    assert resolve_options({"external_only": False}).external_only is False
    with pytest.raises(ValidationError):
        resolve_options("not options")
    with pytest.raises(ValidationError):
        resolve_options(max_retries=-1)
