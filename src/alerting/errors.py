"""Exception taxonomy for the alerting engine.

Errors raised outside the per-destination delivery loop (unknown alert,
broken custom predicate) propagate to the caller. Errors raised inside it
are caught, logged and written to that destination's delivery record.
"""


class AlertingError(Exception):
    """Base exception for alerting engine errors."""


class ConfigurationError(AlertingError):
    """Raised when a channel is disabled or missing credentials, or a rule
    references an unregistered predicate."""


class NotFoundError(AlertingError):
    """Raised for an unknown alert code/id or template code."""


class ValidationError(AlertingError):
    """Raised for malformed destination data (e.g. push subscription JSON)."""


class DeliveryError(AlertingError):
    """Raised when a provider rejects a send."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
