"""Error taxonomy for calendar aggregation.

Every error raised by a source provider, the credential store, the retrying
cloud client or the scheduler derives from :class:`CalendarError` and carries a
stable ``code`` string.  Per-source errors are never allowed to abort an
aggregation; the aggregator converts them into
:class:`~calsync.models.SourceFailure` records via :func:`build_source_failure`.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from calsync.models import SourceFailure

_MAX_ERROR_MESSAGE_CHARS = 200


class CalendarError(RuntimeError):
    """Base error for calendar aggregation failures."""

    code: ClassVar[str] = "CALENDAR_ERROR"

    def __init__(self, message: str, *, source: str | None = None) -> None:
        self.message = message
        self.source = source
        super().__init__(message)


class PermissionDenied(CalendarError):
    """Access to a calendar source was refused by the user or the OS."""

    code = "PERMISSION_DENIED"


class SourceUnavailable(CalendarError):
    """A source could not be reached: helper missing, failed to start, or timed out."""

    code = "SOURCE_UNAVAILABLE"


class ParseError(CalendarError):
    """A source produced a record (or payload) that could not be interpreted."""

    code = "PARSE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        record_index: int | None = None,
        record: Any = None,
    ) -> None:
        super().__init__(message, source=source)
        self.record_index = record_index
        self.record = record


class InvalidCalendarFile(CalendarError):
    """An imported calendar file is missing, oversize, or has the wrong type."""

    code = "INVALID_FILE"


class PathTraversalRejected(InvalidCalendarFile):
    """An imported file path resolved outside the allowed root directory."""

    code = "PATH_TRAVERSAL_REJECTED"


class RateLimited(CalendarError):
    """The cloud API kept rate-limiting after all retry attempts."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        attempts: int = 0,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, source=source)
        self.attempts = attempts
        self.status_code = status_code


class TokenExpired(CalendarError):
    """The cloud API rejected the access token, or the refresh token was revoked."""

    code = "TOKEN_EXPIRED"


class CloudRequestError(CalendarError):
    """A cloud calendar API request failed with a non-retryable status."""

    code = "CLOUD_REQUEST_FAILED"

    def __init__(self, *, status_code: int, message: str, source: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(
            f"Cloud calendar request failed ({status_code}): {message}",
            source=source,
        )
        self.message = message


class OAuthExchangeError(CalendarError):
    """The OAuth token endpoint or user-info endpoint returned an unusable response."""

    code = "OAUTH_FAILED"


class CloudNotConfigured(CalendarError):
    """Cloud accounts were requested but no OAuth client is configured."""

    code = "CLOUD_NOT_CONFIGURED"


class AccountLimitExceeded(CalendarError):
    """Adding an account would exceed the account ceiling."""

    code = "ACCOUNT_LIMIT_EXCEEDED"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum of {limit} cloud accounts allowed")


class AccountAlreadyConnected(CalendarError):
    """An account with the same (case-insensitive) email is already connected."""

    code = "ACCOUNT_EXISTS"

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"Account {email} is already connected")


class AccountNotFound(CalendarError):
    """No connected account matches the given email."""

    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"Account {email} not found")


class SyncInProgress(CalendarError):
    """A sync was requested while another one is still running."""

    code = "SYNC_IN_PROGRESS"

    def __init__(self, message: str = "Sync already in progress") -> None:
        super().__init__(message)


class SyncCancelled(CalendarError):
    """The scheduler was stopped while an aggregation was in flight."""

    code = "SYNC_CANCELLED"

    def __init__(self, message: str = "Sync was cancelled; results discarded") -> None:
        super().__init__(message)


class AllSourcesFailed(CalendarError):
    """Every configured source failed during one aggregation."""

    code = "ALL_SOURCES_FAILED"

    def __init__(self, failures: Sequence[SourceFailure]) -> None:
        self.failures = list(failures)
        labels = ", ".join(f"{f.source} ({f.code})" for f in self.failures)
        super().__init__(f"All calendar sources failed: {labels}")


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|token|code"


def redact_credential_values(message: str) -> str:
    """Redact credential values embedded in an error message."""
    redacted = message
    # key=value
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON / dict style quoted values
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact, collapse whitespace and truncate an error message for display."""
    redacted = redact_credential_values(message)
    return " ".join(redacted.split())[:_MAX_ERROR_MESSAGE_CHARS]


def build_source_failure(exc: BaseException, *, source: str, fatal: bool = True) -> SourceFailure:
    """Convert an exception raised by a provider into a ``SourceFailure`` record."""
    from calsync.models import SourceFailure

    code = exc.code if isinstance(exc, CalendarError) else "UNEXPECTED_ERROR"
    record_index = exc.record_index if isinstance(exc, ParseError) else None
    return SourceFailure(
        source=source,
        error_type=type(exc).__name__,
        code=code,
        message=sanitize_error_message(str(exc)) or type(exc).__name__,
        fatal=fatal,
        record_index=record_index,
    )
