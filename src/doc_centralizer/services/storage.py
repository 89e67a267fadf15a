"""Run report persistence.

A finished `PipelineRun` is flattened into one row per resource (pandas) and
written as CSV, either locally or to GCS.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import pandas as pd

from doc_centralizer.core.models import PipelineRun
from doc_centralizer.services.gcs import GCSUploader

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "normalized_url",
    "source_text",
    "resource_type",
    "is_external",
    "elements",
    "status",
    "filename",
    "byte_size",
    "mime_type",
    "remote_id",
    "public_url",
    "was_duplicate",
    "error_stage",
    "error",
    "error_classification",
    "status_code",
    "retry_attempts",
]


def run_to_dataframe(run: PipelineRun) -> pd.DataFrame:
    """One row per resource of the run, plus the run id and final stage."""
    snapshot = run.to_dict()
    df = pd.DataFrame(snapshot["resources"], columns=REPORT_COLUMNS)
    df.insert(0, "run_id", snapshot["run_id"])
    df["run_stage"] = snapshot["stage"]
    return df


class ReportStorage(ABC):
    """Abstract report backend interface."""

    @abstractmethod
    def save(self, df: pd.DataFrame, bucket: str, path: str) -> str:
        """Write the report and return where it went."""
        raise NotImplementedError()


class LocalReportStorage(ReportStorage):
    """Save the report locally under `<bucket>/<path>/report.csv`."""

    def save(self, df: pd.DataFrame, bucket: str, path: str) -> str:
        out_dir = Path(bucket) / path
        out_dir.mkdir(parents=True, exist_ok=True)
        out_file = out_dir / "report.csv"
        df.to_csv(out_file, index=False)
        return str(out_file)


class GCSReportStorage(ReportStorage):
    """Upload the report to `gs://<bucket>/<path>/report.csv`."""

    def __init__(self, uploader: Optional[GCSUploader] = None):
        self.uploader = uploader

    def save(self, df: pd.DataFrame, bucket: str, path: str) -> str:
        uploader = self.uploader or GCSUploader()
        data = df.to_csv(index=False).encode("utf-8")
        return uploader.upload_bytes(
            bucket, data, f"{path}/report.csv", content_type="text/csv"
        )


def get_report_storage(backend: str, uploader: Optional[GCSUploader] = None) -> ReportStorage:
    if backend == "local":
        return LocalReportStorage()
    if backend == "gcs":
        return GCSReportStorage(uploader)
    raise ValueError(f"Unknown report backend: {backend}")


def save_run_report(
    run: PipelineRun,
    bucket: str,
    path: str,
    backend: str = "local",
    uploader: Optional[GCSUploader] = None,
) -> Optional[str]:
    """Persist the per-resource report of `run`. Returns None for empty runs."""
    df = run_to_dataframe(run)
    if df.empty:
        logger.warning("Run %s has no resources, report not written", run.run_id)
        return None
    location = get_report_storage(backend, uploader).save(df, bucket, path)
    logger.info("Saved report for run %s to %s", run.run_id, location)
    return location
