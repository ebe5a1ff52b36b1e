"""Failure classification and job-level exponential backoff.

A failed job is either returned to pending with a delay of
2^retry_count minutes or failed permanently. Only rate-limit and
timeout failures from the transcription service are retried; unknown
errors surface immediately instead of being retried silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from transcription_worker.utils.errors import FailureKind

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = frozenset({FailureKind.RATE_LIMIT, FailureKind.TIMEOUT})

BACKOFF_BASE = 2
BACKOFF_UNIT = timedelta(minutes=1)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of the retry policy for one failed job run."""

    retryable: bool
    next_retry_count: int
    next_attempt_at: datetime | None
    delay: timedelta | None = None


def classify_failure(exc: BaseException) -> bool:
    """Return True if the error should be retried.

    Never raises: anything without a recognised FailureKind is fatal.

    Args:
        exc: The error raised by a pipeline step.

    Returns:
        True for rate-limit and timeout failures, False otherwise.
    """
    try:
        kind = getattr(exc, "kind", FailureKind.FATAL)
        return kind in RETRYABLE_KINDS
    except Exception:
        logger.warning("Could not classify %r, treating as fatal", exc)
        return False


def compute_backoff_delay(
    retry_count: int, max_delay: timedelta | None = None
) -> timedelta:
    """Delay before attempt number ``retry_count`` becomes claimable.

    Delay follows the formula: 2^retry_count minutes. Growth is unbounded
    unless ``max_delay`` is given.
    """
    delay = BACKOFF_UNIT * (BACKOFF_BASE**retry_count)
    if max_delay is not None and delay > max_delay:
        return max_delay
    return delay


def schedule_retry(
    retry_count: int,
    max_retries: int,
    retryable: bool,
    now: datetime,
    max_delay: timedelta | None = None,
) -> RetryDecision:
    """Decide whether a failed job is rescheduled or failed permanently.

    Args:
        retry_count: Retries already consumed by the job.
        max_retries: Retry budget of the job.
        retryable: Output of classify_failure() for the error.
        now: Current time, used as the base for next_attempt_at.
        max_delay: Optional cap on the backoff delay.

    Returns:
        RetryDecision. For a non-retryable error the retry count is left
        unchanged; for an exhausted budget it is incremented past
        max_retries so the persisted row shows the exhaustion.
    """
    if not retryable:
        return RetryDecision(
            retryable=False,
            next_retry_count=retry_count,
            next_attempt_at=None,
        )

    next_retry_count = retry_count + 1
    if next_retry_count > max_retries:
        return RetryDecision(
            retryable=False,
            next_retry_count=next_retry_count,
            next_attempt_at=None,
        )

    delay = compute_backoff_delay(next_retry_count, max_delay)
    return RetryDecision(
        retryable=True,
        next_retry_count=next_retry_count,
        next_attempt_at=now + delay,
        delay=delay,
    )
