"""Custom exception types for the job application tracker.

Error messages follow the same standard throughout the package:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)

Propagation rules for the sync pipeline:
- AuthenticationError / MailTransportError raised while fetching are
  terminal for that owner's run (watermark untouched)
- OracleError and per-email faults are absorbed as skips by the orchestrator
- The scheduler never lets any of these escape its loop
"""


class JobTrackerError(Exception):
    """Base exception for all job tracker errors."""

    pass


class ConfigValidationError(JobTrackerError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(JobTrackerError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(JobTrackerError):
    """Raised when a mailbox credential is invalid, revoked, or expired.

    Attributes:
        owner_id: Owner whose credential failed (if known)
    """

    def __init__(self, message: str, owner_id: str | None = None):
        super().__init__(message)
        self.owner_id = owner_id


class MailTransportError(JobTrackerError):
    """Raised when the Gmail API or token endpoint cannot be reached or fails.

    Attributes:
        status_code: HTTP status code from the API (None for network errors)
        error_code: Error reason from the Gmail error payload (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(MailTransportError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    Raised by the token bucket when it would have to block for an
    excessive time (>20 seconds), and by the Gmail client when 429
    responses persist after all retries.
    """

    def __init__(self, message: str):
        super().__init__(message, status_code=429, error_code="rateLimitExceeded")


class OracleError(JobTrackerError):
    """Raised when the Claude extraction call fails at the API level.

    Malformed model output is not an OracleError; the extractor treats it
    as a soft failure and returns None.

    Attributes:
        message_id: Gmail message ID being extracted (if known)
    """

    def __init__(self, message: str, message_id: str | None = None):
        super().__init__(message)
        self.message_id = message_id


class RecordValidationError(JobTrackerError):
    """Raised when an application record is missing company or role."""

    pass


class NoCredentialError(JobTrackerError):
    """Raised when a sync is requested for an owner without a connected mailbox.

    Attributes:
        owner_id: Owner that has no stored refresh token
    """

    def __init__(self, message: str, owner_id: str | None = None):
        super().__init__(message)
        self.owner_id = owner_id


class DatabaseError(JobTrackerError):
    """Raised when SQLite operations fail."""

    pass
