import pandas as pd

from doc_centralizer.core.pipeline import process
from doc_centralizer.services.gcs import GCSUploader
from doc_centralizer.services.storage import (
    REPORT_COLUMNS,
    run_to_dataframe,
    save_run_report,
)
from doc_centralizer.services.storage_backends import InMemoryContentStore

OK_URL = "https://files.example.org/ok.pdf"
BAD_URL = "https://files.example.org/bad.pdf"


def finished_run(dummy_fetcher, dummy_response, pdf):
    markup = f'<a href="{OK_URL}">ok</a><a href="{BAD_URL}">bad</a>'
    fetcher = dummy_fetcher({OK_URL: pdf(), BAD_URL: dummy_response(500)})
    return process(
        markup,
        InMemoryContentStore(),
        {"retry_base_delay": 0, "retry_max_delay": 0, "max_retries": 1},
        fetcher=fetcher,
    )


def test_run_to_dataframe(dummy_fetcher, dummy_response, pdf):
    run = finished_run(dummy_fetcher, dummy_response, pdf)
    df = run_to_dataframe(run)

    assert list(df.columns) == ["run_id"] + REPORT_COLUMNS + ["run_stage"]
    assert len(df) == 2
    rows = df.set_index("normalized_url")
    assert rows.loc[OK_URL, "status"] == "completed"
    assert rows.loc[BAD_URL, "status"] == "failed"
    assert rows.loc[BAD_URL, "status_code"] == 500
    assert rows.loc[BAD_URL, "retry_attempts"] == 1
    assert (df["run_stage"] == "complete").all()


def test_save_local_report(tmp_path, dummy_fetcher, dummy_response, pdf):
    run = finished_run(dummy_fetcher, dummy_response, pdf)
    location = save_run_report(run, str(tmp_path), "reports/job/data_captura=2024-01-01")

    assert location.endswith("report.csv")
    saved = pd.read_csv(location)
    assert len(saved) == 2
    assert set(saved["run_id"]) == {run.run_id}


def test_save_gcs_report(fake_gcs_client, dummy_fetcher, dummy_response, pdf):
    run = finished_run(dummy_fetcher, dummy_response, pdf)
    location = save_run_report(
        run,
        "reports-bucket",
        "reports/job",
        backend="gcs",
        uploader=GCSUploader(client=fake_gcs_client),
    )
    assert location == "gs://reports-bucket/reports/job/report.csv"
    csv = fake_gcs_client.data[("reports-bucket", "reports/job/report.csv")].decode("utf-8")
    assert OK_URL in csv and BAD_URL in csv


def test_empty_run_writes_nothing(tmp_path):
    run = process("<p>no links</p>", InMemoryContentStore())
    assert save_run_report(run, str(tmp_path), "reports") is None
    assert list(tmp_path.iterdir()) == []
