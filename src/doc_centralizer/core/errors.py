"""Error taxonomy shared by every stage of the centralization pipeline.

Per-resource failures are carried as values (attached to the run ledger);
only `ValidationError` raised before a run starts ever reaches the caller.
"""

from __future__ import annotations

from typing import Optional

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable_status(status_code: Optional[int]) -> bool:
    """HTTP 5xx and 429 are retryable; every other status is terminal."""
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code <= 599


class PipelineError(Exception):
    """Base exception for all pipeline-related errors."""

    classification = "unknown"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return False


class ValidationError(PipelineError):
    """Raised for bad input or options."""

    classification = "validation"


class ContentTooLargeError(ValidationError):
    """Raised when a resource exceeds the configured byte limit."""

    classification = "too-large"


class NetworkError(PipelineError):
    """Connection failure or timeout while talking to an origin host."""

    classification = "network"

    def __init__(
        self, message: str, url: Optional[str] = None, timed_out: bool = False
    ) -> None:
        super().__init__(message, url=url)
        self.timed_out = timed_out
        if timed_out:
            self.classification = "timeout"

    @property
    def retryable(self) -> bool:
        return True


class UpstreamError(PipelineError):
    """Non-2xx response from an origin host."""

    classification = "upstream"

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status_code)


class StoreError(PipelineError):
    """Upload or duplicate-check failure against the content store.

    Without a status code the failure is treated as transient unless the
    store says otherwise through `retryable`.
    """

    classification = "store"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.status_code is None:
            return True
        return is_retryable_status(self.status_code)


class PipelineCancelledError(PipelineError):
    """The caller-supplied cancellation signal fired."""

    classification = "cancelled"


class StageAbortedError(PipelineError):
    """An item was never attempted because an earlier item in its stage failed."""

    classification = "aborted"
