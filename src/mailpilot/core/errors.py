"""Custom exception types for MailPilot.

Error messages follow the same shape everywhere:
- What failed (specific operation or entity)
- Why it failed (the specific condition)
- How to fix it, when there is something the caller can do

Domain errors (not found, conflict, validation) are surfaced to callers
untouched. Upstream errors from the mail provider are typed so the staging
pipeline can tell "message gone" and "rate limited" apart from everything else.
"""


class MailPilotError(Exception):
    """Base exception for all MailPilot errors."""

    pass


class ConfigValidationError(MailPilotError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailPilotError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailPilotError):
    """Raised when MSAL cannot acquire an app-only token."""

    pass


class DatabaseError(MailPilotError):
    """Raised when SQLite operations fail."""

    pass


# ---------------------------------------------------------------------------
# Domain errors
# ---------------------------------------------------------------------------


class EntityNotFoundError(MailPilotError):
    """Raised when a pattern, staged action, audit entry or mailbox does not
    exist or does not belong to the caller.

    Attributes:
        entity: Entity kind ('pattern', 'staged_action', 'audit_entry', ...)
        entity_id: The ID that was looked up
    """

    def __init__(self, message: str, entity: str, entity_id: str | None = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(MailPilotError):
    """Raised when an entity is not in the status required for an operation.

    Covers illegal status transitions, expired undo windows and entries that
    were already undone.
    """

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class ActionValidationError(MailPilotError):
    """Raised when an action definition or customization is malformed."""

    pass


# ---------------------------------------------------------------------------
# Upstream (mail provider) errors
# ---------------------------------------------------------------------------


class GraphAPIError(MailPilotError):
    """Raised when Microsoft Graph API returns an error.

    Anything that is not a more specific subclass is treated as an unknown
    upstream failure: logged and left for the next sweep.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
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


class MessageNotFoundError(GraphAPIError):
    """Raised when the target message no longer exists upstream (404).

    The message was deleted, purged by retention or moved out of reach.
    Automation code treats this as already resolved rather than as a failure.
    """

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message, status_code=404, error_code=error_code)


class RateLimitExceeded(GraphAPIError):
    """Raised when Graph API keeps answering 429 after client retries.

    Attributes:
        retry_after: Seconds suggested by the Retry-After header, if any
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429, error_code="TooManyRequests")
        self.retry_after = retry_after
