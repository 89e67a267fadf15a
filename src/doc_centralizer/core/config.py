import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_FALLBACK_URL_TEMPLATE = "https://content.invalid/resources/{remote_id}"


def _check_http_url(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    parts = urlsplit(v)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError("must be an absolute http(s) URL")
    return v


class FetchOptions(BaseModel):
    """Knobs for the Resource Fetcher. Times are in seconds."""

    concurrency: int = Field(default=3, ge=1, le=32)
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    max_file_size: int = Field(default=50_000_000, gt=0)
    max_redirects: int = Field(default=5, ge=0, le=30)
    calculate_hash: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = True


class UploadOptions(BaseModel):
    """Knobs for the Store Uploader. Times are in seconds."""

    concurrency: int = Field(default=2, ge=1, le=16)
    timeout: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    check_duplicates: bool = True
    max_file_size: int = Field(default=50_000_000, gt=0)
    continue_on_error: bool = True
    fallback_url_template: str = DEFAULT_FALLBACK_URL_TEMPLATE

    @field_validator("fallback_url_template")
    def template_needs_remote_id(cls, v):
        if "{remote_id}" not in v:
            raise ValueError("fallback_url_template must contain '{remote_id}'")
        return v


class RewriteOptions(BaseModel):
    case_sensitive: bool = False
    normalize_urls: bool = True
    match_query_params: bool = True
    match_fragments: bool = False
    base_url: Optional[str] = None

    @field_validator("base_url")
    def base_url_must_be_absolute(cls, v):
        return _check_http_url(v)


class PipelineOptions(BaseModel):
    """
    Options accepted by `process()`.

    Everything except the callbacks and the cancellation event is plain data
    and ends up in the run snapshot.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    # Extraction
    base_url: Optional[str] = None
    external_only: bool = True
    max_url_length: int = Field(default=2048, ge=16)

    # Fetch / upload
    download_concurrency: int = Field(default=3, ge=1, le=32)
    upload_concurrency: int = Field(default=2, ge=1, le=16)
    max_retries: int = Field(default=3, ge=0, le=10)
    download_timeout: float = Field(default=30.0, gt=0)
    upload_timeout: float = Field(default=60.0, gt=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    max_file_size_bytes: int = Field(default=50_000_000, gt=0)
    max_redirects: int = Field(default=5, ge=0, le=30)
    calculate_hash: bool = False
    request_headers: Dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = True
    check_duplicates: bool = True
    fallback_url_template: str = DEFAULT_FALLBACK_URL_TEMPLATE

    # Rewrite
    case_sensitive: bool = False
    normalize_urls: bool = True
    match_query_params: bool = True
    match_fragments: bool = False

    # Events and cancellation
    on_progress: Optional[Callable[..., Any]] = None
    on_stage_start: Optional[Callable[..., Any]] = None
    on_stage_complete: Optional[Callable[..., Any]] = None
    on_resource_complete: Optional[Callable[..., Any]] = None
    on_resource_fail: Optional[Callable[..., Any]] = None
    cancel_event: Optional[threading.Event] = None

    @field_validator("base_url")
    def base_url_must_be_absolute(cls, v):
        return _check_http_url(v)

    @field_validator("fallback_url_template")
    def template_needs_remote_id(cls, v):
        if "{remote_id}" not in v:
            raise ValueError("fallback_url_template must contain '{remote_id}'")
        return v

    def fetch_options(self) -> FetchOptions:
        return FetchOptions(
            concurrency=self.download_concurrency,
            timeout=self.download_timeout,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
            max_file_size=self.max_file_size_bytes,
            max_redirects=self.max_redirects,
            calculate_hash=self.calculate_hash,
            headers=dict(self.request_headers),
            continue_on_error=self.continue_on_error,
        )

    def upload_options(self) -> UploadOptions:
        return UploadOptions(
            concurrency=self.upload_concurrency,
            timeout=self.upload_timeout,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
            check_duplicates=self.check_duplicates,
            max_file_size=self.max_file_size_bytes,
            continue_on_error=self.continue_on_error,
            fallback_url_template=self.fallback_url_template,
        )

    def rewrite_options(self) -> RewriteOptions:
        return RewriteOptions(
            case_sensitive=self.case_sensitive,
            normalize_urls=self.normalize_urls,
            match_query_params=self.match_query_params,
            match_fragments=self.match_fragments,
            base_url=self.base_url,
        )

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(
            exclude={
                "on_progress",
                "on_stage_start",
                "on_stage_complete",
                "on_resource_complete",
                "on_resource_fail",
                "cancel_event",
            }
        )


class JobConfig(BaseModel):
    """
    Contrato de configuração de um job de centralização.

    Define de onde vem o HTML, para qual store os arquivos vão e onde o
    relatório da execução é gravado.
    """

    job_name: str
    environment: str = Field(default="dev", pattern="^(dev|staging|prod)$")

    # Origem: HTML inline ou URL da página
    source_url: Optional[str] = None
    markup: Optional[str] = None

    # Destino
    store_backend: str = Field(default="gcs", pattern="^(gcs|local|memory)$")
    destination_bucket: str
    destination_path: str
    public_base_url: Optional[str] = None
    report_backend: str = Field(default="local", pattern="^(gcs|local)$")

    options: Dict[str, Any] = Field(default_factory=dict)

    execution_date: str = Field(
        default_factory=lambda: datetime.now().strftime("%Y-%m-%d")
    )

    @property
    def report_path(self) -> str:
        """Caminho padrão do relatório.

        Formato: <destination_path>/reports/<job_name>/data_captura=YYYY-MM-DD
        """
        return (
            f"{self.destination_path}/reports/"
            f"{self.job_name}/data_captura={self.execution_date}"
        )

    @field_validator("job_name")
    def job_name_must_be_slug(cls, v):
        if " " in v:
            raise ValueError("job_name must not contain spaces")
        return v.lower()

    @field_validator("source_url", "public_base_url")
    def urls_must_be_absolute(cls, v):
        return _check_http_url(v)

    @model_validator(mode="after")
    def needs_a_source(self):
        if not self.markup and not self.source_url:
            raise ValueError("either markup or source_url is required")
        return self
