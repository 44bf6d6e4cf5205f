"""
Error Taxonomy

Closed set of error kinds the queue core distinguishes. Every handling site
(queue retry bookkeeping, processor, HTTP layer) switches on ``ErrorKind``
rather than inspecting exception messages.

Lock contention is deliberately absent from the exception classes: a job that
cannot take the pull request lock resolves with ``JobOutcome.DUPLICATE``.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Error kinds recognised by the queue core."""
    VALIDATION = "validation"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    LOCK_CONTENTION = "lock_contention"
    PIPELINE_FAILURE = "pipeline_failure"
    EXHAUSTED_RETRIES = "exhausted_retries"


class ReviewQueueError(Exception):
    """Base class for queue core errors."""

    kind: ErrorKind = ErrorKind.PIPELINE_FAILURE
    retryable: bool = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": str(self),
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidJobPayload(ReviewQueueError):
    """Raised synchronously at enqueue when the payload is malformed."""
    kind = ErrorKind.VALIDATION
    retryable = False


class RateLimitExceeded(ReviewQueueError):
    """The owner-scoped review budget is spent for the current window."""
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    retryable = True

    def __init__(self, identifier: str, limit: int, window_seconds: int):
        super().__init__(
            f"Rate limit exceeded for {identifier}: {limit} per {window_seconds}s",
            details={
                "identifier": identifier,
                "limit": limit,
                "window_seconds": window_seconds,
            },
        )
        self.identifier = identifier


class PipelineFailure(ReviewQueueError):
    """Wraps a fetch, analyze, persist or publish error raised mid-pipeline."""
    kind = ErrorKind.PIPELINE_FAILURE
    retryable = True

    def __init__(self, step: str, cause: BaseException):
        super().__init__(
            f"Pipeline step '{step}' failed: {cause}",
            details={"step": step, "cause": type(cause).__name__},
        )
        self.step = step
        self.cause = cause


class ExhaustedRetries(ReviewQueueError):
    """A job ran out of attempts; its last error is kept as ``last_error``."""
    kind = ErrorKind.EXHAUSTED_RETRIES
    retryable = False

    def __init__(self, job_id: str, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            f"Job {job_id} failed after {attempts} attempt(s): {last_error}",
            details={"job_id": job_id, "attempts": attempts},
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


def error_kind_of(error: BaseException) -> ErrorKind:
    """Classify any exception raised by a job handler."""
    if isinstance(error, ReviewQueueError):
        return error.kind
    return ErrorKind.PIPELINE_FAILURE


def is_retryable(error: BaseException) -> bool:
    kind = error_kind_of(error)
    if kind in (ErrorKind.RATE_LIMIT_EXCEEDED, ErrorKind.PIPELINE_FAILURE):
        return getattr(error, "retryable", True)
    if kind in (ErrorKind.VALIDATION, ErrorKind.EXHAUSTED_RETRIES, ErrorKind.LOCK_CONTENTION):
        return False
    raise ValueError(f"Unhandled error kind: {kind}")
