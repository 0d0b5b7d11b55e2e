"""
errors.py — Error taxonomy for the discovery pipeline.

Every error carries the HTTP status a web caller would map it to, and a
``retryable`` flag the job runner consults.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    http_status = 500
    retryable = False
    kind = "error"

    def __init__(self, message: str = "", kind: Optional[str] = None):
        super().__init__(message)
        if kind:
            self.kind = kind


class RateLimited(PipelineError):
    """Quota exhausted for an actor/action. No action was taken."""
    http_status = 429
    kind = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded"):
        super().__init__(message)


class UntrustedSource(PipelineError):
    """URL failed the allow-list; no request was issued."""
    http_status = 400
    kind = "untrusted_source"


class FetchFailed(PipelineError):
    """Network or HTTP error while fetching a source."""
    http_status = 502
    retryable = True
    kind = "fetch_failed"

    def __init__(self, message: str, status_code: Optional[int] = None, kind: Optional[str] = None):
        super().__init__(message, kind=kind)
        self.status_code = status_code


class ClassificationFailed(PipelineError):
    """Extraction service error or an unparsable response."""
    http_status = 502
    retryable = True
    kind = "classification_failed"


class ValidationFailed(PipelineError):
    """A single candidate is missing mandatory fields."""
    http_status = 422
    kind = "validation_failed"


class WriteFailed(PipelineError):
    """Persistence error for a single candidate."""
    http_status = 500
    kind = "write_failed"


class InvalidRequest(PipelineError):
    """Caller supplied a malformed batch or search request."""
    http_status = 400
    kind = "invalid_request"


class DuplicateSession(PipelineError):
    """A session id was reused."""
    http_status = 409
    kind = "duplicate_session"


class InvalidTransition(PipelineError):
    """A progress update tried to move a record along a forbidden edge."""
    http_status = 409
    kind = "invalid_transition"


def describe(error: Exception) -> str:
    """Render an error for a ProgressRecord's error_message."""
    if isinstance(error, FetchFailed) and error.kind == "timeout":
        return f"timeout: {error}"
    if isinstance(error, ClassificationFailed) and error.kind == "timeout":
        return f"timeout: {error}"
    message = str(error) or type(error).__name__
    return message
