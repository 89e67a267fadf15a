"""Domain records handed from stage to stage, plus the run ledger.

Stage outputs are frozen dataclasses keyed by `normalized_url`. The only
mutable object is `PipelineRun`, which the orchestrator owns.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from doc_centralizer.core.errors import PipelineError

if TYPE_CHECKING:
    from doc_centralizer.core.scraping.detector import ResourceType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResourceReference:
    """A normalized, deduplicated pointer to a linked document."""

    source_text: str
    normalized_url: str
    resource_type: ResourceType
    file_extension: str
    is_external: bool
    originating_elements: Tuple[str, ...]
    ordinal_position: int


@dataclass(frozen=True)
class ExtractionIssue:
    message: str
    kind: str  # parsing | validation | extraction
    url: Optional[str] = None
    element: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    references: Tuple[ResourceReference, ...]
    by_type: Dict[ResourceType, Tuple[ResourceReference, ...]]
    summary: Dict[str, Any]
    errors: Tuple[ExtractionIssue, ...]
    parse_time: float
    markup_length: int


@dataclass(frozen=True)
class FetchedContent:
    reference: ResourceReference
    content: bytes = field(repr=False)
    byte_size: int
    mime_type: str
    suggested_filename: str
    fetch_duration: float
    fetched_at: datetime
    integrity_hash: Optional[str] = None


@dataclass(frozen=True)
class FetchFailure:
    reference: ResourceReference
    error: PipelineError
    status_code: Optional[int]
    retry_attempts: int
    failed_at: datetime

    @property
    def cancelled(self) -> bool:
        return self.error.classification == "cancelled"


@dataclass(frozen=True)
class FetchBatchResult:
    successful: Tuple[FetchedContent, ...]
    failed: Tuple[FetchFailure, ...]
    summary: Dict[str, Any]


@dataclass(frozen=True)
class StoredContentRecord:
    reference: ResourceReference
    remote_id: str
    public_url: str
    was_duplicate: bool
    byte_size: int
    uploaded_at: datetime
    thumbnail_url: Optional[str] = None


@dataclass(frozen=True)
class UploadFailure:
    content: FetchedContent
    error: PipelineError
    status_code: Optional[int]
    retry_attempts: int
    failed_at: datetime

    @property
    def reference(self) -> ResourceReference:
        return self.content.reference

    @property
    def cancelled(self) -> bool:
        return self.error.classification == "cancelled"


@dataclass(frozen=True)
class UploadBatchResult:
    records: Tuple[StoredContentRecord, ...]
    failures: Tuple[UploadFailure, ...]
    url_mapping: Dict[str, str]
    summary: Dict[str, Any]
    processing_time: float


@dataclass(frozen=True)
class ReplacementWarning:
    message: str
    kind: str  # url-not-found | malformed-url | encoding-issue | duplicate-url | reserialized
    url: Optional[str] = None


@dataclass(frozen=True)
class RewriteResult:
    markup: str
    replacement_count: int
    unreplaced_urls: Tuple[str, ...]
    statistics: Dict[str, Any]
    warnings: Tuple[ReplacementWarning, ...]


class ProcessingStage(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    REPLACING = "replacing"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_ORDER = (
    ProcessingStage.IDLE,
    ProcessingStage.PARSING,
    ProcessingStage.DOWNLOADING,
    ProcessingStage.UPLOADING,
    ProcessingStage.REPLACING,
    ProcessingStage.COMPLETE,
)
TERMINAL_STAGES = (ProcessingStage.COMPLETE, ProcessingStage.FAILED)


class ResourceStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceError:
    stage: ProcessingStage
    message: str
    classification: str
    status_code: Optional[int] = None
    retry_attempts: int = 0


@dataclass
class ResourceEntry:
    """One ledger row: a reference and how far it got."""

    reference: ResourceReference
    status: ResourceStatus = ResourceStatus.PENDING
    fetched: Optional[FetchedContent] = None
    stored: Optional[StoredContentRecord] = None
    error: Optional[ResourceError] = None
    timestamps: Dict[str, datetime] = field(default_factory=dict)

    @property
    def normalized_url(self) -> str:
        return self.reference.normalized_url


@dataclass(frozen=True)
class ProcessingError:
    message: str
    stage: ProcessingStage
    classification: str
    recoverable: bool
    timestamp: datetime
    url: Optional[str] = None


@dataclass(frozen=True)
class ProcessingWarning:
    message: str
    stage: ProcessingStage
    kind: str  # duplicate | skipped | validation | callback | rewriter warning kinds
    url: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    stage: ProcessingStage
    percent_complete: int
    processed_count: int
    total_count: int
    bytes_transferred: int
    elapsed: float


@dataclass
class PipelineStatistics:
    total_resources: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    total_bytes_downloaded: int = 0
    total_bytes_uploaded: int = 0
    stage_times: Dict[str, float] = field(default_factory=dict)
    total_time: float = 0.0
    average_time_per_resource: float = 0.0
    by_type: Dict[str, Dict[str, int]] = field(default_factory=dict)


class FrozenRunError(RuntimeError):
    """Raised when something tries to mutate a finished run."""


class PipelineRun:
    """Aggregate root of one processing run.

    Holds the current stage, the per-resource ledger keyed by
    `normalized_url`, statistics, errors and warnings. Stage transitions are
    strictly forward; FAILED is reachable from any non-terminal stage. Once
    COMPLETE or FAILED the run is frozen.
    """

    def __init__(self, original_markup: str, options: Optional[Dict[str, Any]] = None):
        self.run_id = uuid.uuid4().hex
        self.stage = ProcessingStage.IDLE
        self.original_markup = original_markup
        self.output_markup = original_markup
        self.entries: Dict[str, ResourceEntry] = {}
        self.url_mapping: Dict[str, str] = {}
        self.extraction: Optional[ExtractionResult] = None
        self.rewrite: Optional[RewriteResult] = None
        self.statistics = PipelineStatistics()
        self.errors: List[ProcessingError] = []
        self.warnings: List[ProcessingWarning] = []
        self.stage_durations: Dict[str, float] = {}
        self.started_at = utcnow()
        self.completed_at: Optional[datetime] = None
        self.cancelled = False
        self.options = dict(options or {})
        self._frozen = False

    # -- state machine -------------------------------------------------

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def succeeded(self) -> bool:
        return self.stage == ProcessingStage.COMPLETE

    def _check_mutable(self) -> None:
        if self._frozen:
            raise FrozenRunError(f"Run {self.run_id} is frozen at {self.stage.value}")

    def transition(self, stage: ProcessingStage) -> None:
        self._check_mutable()
        if stage == ProcessingStage.FAILED:
            self.stage = stage
            return
        current = STAGE_ORDER.index(self.stage)
        if stage not in STAGE_ORDER or STAGE_ORDER.index(stage) != current + 1:
            raise ValueError(
                f"Illegal stage transition {self.stage.value} -> {stage.value}"
            )
        self.stage = stage

    def freeze(self) -> None:
        if self.stage not in TERMINAL_STAGES:
            raise ValueError(f"Cannot freeze a run at stage {self.stage.value}")
        self.completed_at = utcnow()
        self._frozen = True

    # -- ledger --------------------------------------------------------

    def register(self, reference: ResourceReference) -> ResourceEntry:
        self._check_mutable()
        entry = ResourceEntry(reference=reference)
        self.entries[reference.normalized_url] = entry
        return entry

    def entry(self, normalized_url: str) -> ResourceEntry:
        return self.entries[normalized_url]

    def set_status(
        self,
        normalized_url: str,
        status: ResourceStatus,
        stamp: Optional[str] = None,
        **updates: Any,
    ) -> ResourceEntry:
        """Move one entry to `status`, recording a timestamp under `stamp`."""
        self._check_mutable()
        entry = self.entries[normalized_url]
        entry.status = status
        for key, value in updates.items():
            setattr(entry, key, value)
        entry.timestamps[stamp or status.value] = utcnow()
        return entry

    def entries_with(self, status: ResourceStatus) -> List[ResourceEntry]:
        return [e for e in self.entries.values() if e.status == status]

    def add_error(self, error: ProcessingError) -> None:
        self._check_mutable()
        self.errors.append(error)

    def add_warning(self, warning: ProcessingWarning) -> None:
        self._check_mutable()
        self.warnings.append(warning)

    # -- reporting -----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly snapshot for archiving."""
        resources = []
        for entry in self.entries.values():
            ref = entry.reference
            resources.append(
                {
                    "normalized_url": ref.normalized_url,
                    "source_text": ref.source_text,
                    "resource_type": ref.resource_type.value,
                    "is_external": ref.is_external,
                    "elements": len(ref.originating_elements),
                    "status": entry.status.value,
                    "filename": entry.fetched.suggested_filename if entry.fetched else None,
                    "byte_size": entry.fetched.byte_size if entry.fetched else None,
                    "mime_type": entry.fetched.mime_type if entry.fetched else None,
                    "remote_id": entry.stored.remote_id if entry.stored else None,
                    "public_url": entry.stored.public_url if entry.stored else None,
                    "was_duplicate": entry.stored.was_duplicate if entry.stored else None,
                    "error_stage": entry.error.stage.value if entry.error else None,
                    "error": entry.error.message if entry.error else None,
                    "error_classification": (
                        entry.error.classification if entry.error else None
                    ),
                    "status_code": entry.error.status_code if entry.error else None,
                    "retry_attempts": entry.error.retry_attempts if entry.error else None,
                }
            )
        stats = self.statistics
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "url_mapping": dict(self.url_mapping),
            "resources": resources,
            "statistics": {
                "total_resources": stats.total_resources,
                "successful": stats.successful,
                "failed": stats.failed,
                "skipped": stats.skipped,
                "duplicates": stats.duplicates,
                "total_bytes_downloaded": stats.total_bytes_downloaded,
                "total_bytes_uploaded": stats.total_bytes_uploaded,
                "stage_times": dict(stats.stage_times),
                "total_time": stats.total_time,
                "average_time_per_resource": stats.average_time_per_resource,
                "by_type": {k: dict(v) for k, v in stats.by_type.items()},
            },
            "errors": [
                {
                    "message": e.message,
                    "stage": e.stage.value,
                    "classification": e.classification,
                    "recoverable": e.recoverable,
                    "url": e.url,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in self.errors
            ],
            "warnings": [
                {"message": w.message, "stage": w.stage.value, "kind": w.kind, "url": w.url}
                for w in self.warnings
            ],
        }
