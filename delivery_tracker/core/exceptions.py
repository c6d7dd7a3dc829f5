"""
Platform-wide exception hierarchy.

Services raise these types; the application factory registers one JSON
handler per type so every blueprint returns the same status codes.

Usage:
    from delivery_tracker.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=project_id)
    raise ValidationError("client_name is required", details={"client_name": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested project, queue item or issue does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Project", "ConversionIssue").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input was well-formed but violates a business rule.

    Maps to HTTP 422. Never retried by the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStageKey(ValidationError):
    """The stage key is not one of the six pipeline stages."""

    def __init__(self, stage_key: str) -> None:
        from delivery_tracker.models.stage import STAGE_KEYS

        self.stage_key = stage_key
        super().__init__(
            f"Unknown stage '{stage_key}'",
            details={"stage_key": f"must be one of: {', '.join(STAGE_KEYS)}"},
        )


class MissingBlockingReason(ValidationError):
    """A stage was moved to 'blocked' without a blocking reason."""

    def __init__(self, stage_key: str) -> None:
        self.stage_key = stage_key
        super().__init__(
            f"Stage '{stage_key}' cannot be blocked without a blocking_reason",
            details={"blocking_reason": "required when status is 'blocked'"},
        )


class InvalidDateRange(ValidationError):
    """end_date lies before start_date."""

    def __init__(self, stage_key: str, start, end) -> None:
        self.stage_key = stage_key
        super().__init__(
            f"Stage '{stage_key}' end_date {end.isoformat()} is before start_date {start.isoformat()}",
            details={"end_date": "must be on or after start_date"},
        )


class ConflictError(Exception):
    """Raised when an operation would duplicate something that must be unique.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose uniqueness would be violated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConcurrencyAnomaly(Exception):
    """Raised when a write is based on a stale version of the row.

    Maps to HTTP 409. The caller should reload and decide whether to retry.
    """

    def __init__(self, resource: str, resource_id: str, expected=None, actual=None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected is not None:
            msg += f" (expected version {expected}, found {actual})"
        super().__init__(msg)


class PersistenceError(Exception):
    """Raised when the database rejects a commit.

    Maps to HTTP 503. The original SQLAlchemy error is chained as __cause__.
    """
