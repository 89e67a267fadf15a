"""Retry policy shared by the fetch and upload stages.

Both stages drive their attempts through a tenacity `Retrying` built here:
only errors flagged `retryable` are retried, the delay grows exponentially
with jitter up to a cap, and the backoff sleep wakes up early (raising
`PipelineCancelledError`) when the cancel event fires.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from doc_centralizer.core.errors import PipelineCancelledError

logger = logging.getLogger(__name__)


def is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


def cancellable_sleep(cancel_event: Optional[threading.Event]) -> Callable[[float], None]:
    """Sleep function for tenacity that aborts the wait on cancellation."""

    def sleep(seconds: float) -> None:
        if cancel_event is None:
            time.sleep(seconds)
        elif cancel_event.wait(seconds):
            raise PipelineCancelledError("Cancelled while waiting to retry")

    return sleep


def retry_policy(
    max_retries: int,
    base_delay: float,
    max_delay: float,
    cancel_event: Optional[threading.Event] = None,
    label: str = "request",
) -> Retrying:
    """Build the `Retrying` controller for one resource.

    `max_retries` counts retries, so at most `max_retries + 1` attempts run.
    The last error is re-raised as is once the policy gives up.
    """

    def log_retry(state: RetryCallState) -> None:
        logger.warning(
            "Retrying %s in %.2fs (%d/%d): %s",
            label,
            state.next_action.sleep if state.next_action else 0.0,
            state.attempt_number,
            max_retries,
            state.outcome.exception() if state.outcome else None,
        )

    return Retrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential_jitter(
            initial=base_delay, max=max_delay, jitter=base_delay / 2
        ),
        sleep=cancellable_sleep(cancel_event),
        before_sleep=log_retry,
        reraise=True,
    )
