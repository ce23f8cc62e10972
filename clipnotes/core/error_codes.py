"""
Standardised error handling for ClipNotes.
"""

from clipnotes.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    default_code = ErrorCode.UNEXPECTED

    def __init__(self, message: str, code: str | None = None, retryable: bool | None = None):
        self.code = code or self.default_code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")


class ValidationError(JobError):
    """Bad input shape or vocabulary, detected before any external call."""
    default_code = ErrorCode.VALIDATION


class ExternalUnavailable(JobError):
    """A dependency call failed for a reason other than rate limiting."""
    default_code = ErrorCode.EXTERNAL_UNAVAILABLE


class ModelError(ExternalUnavailable):
    """The text-generation provider kept failing after all retries."""
    default_code = ErrorCode.MODEL


class RateLimited(JobError):
    """Provider asked us to slow down. Carries the parsed signal."""
    default_code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, signal=None, code: str | None = None):
        super().__init__(message, code=code)
        self.signal = signal


class ParseError(JobError):
    """Model output did not match the structured summary contract."""
    default_code = ErrorCode.PARSE


class SlugExhausted(JobError):
    default_code = ErrorCode.SLUG_EXHAUSTED


class NotFound(JobError):
    default_code = ErrorCode.NOT_FOUND
