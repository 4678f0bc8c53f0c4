"""Custom exceptions for the pitch tracker.

Every layer raises from this hierarchy so callers can separate input
problems (reported immediately) from upstream failures (recorded on the
affected record or backfill job and published asynchronously).
"""


class TrackerError(Exception):
    """Base exception for all tracker errors."""


class ValidationError(TrackerError):
    """Raised for malformed subjects, URLs, or record attributes. Never retried."""


class UpstreamError(TrackerError):
    """Raised when an external service returns a non-success or cannot be reached.

    Attributes:
        kind: Short machine-readable category ("not_found", "http_status",
            "transport", "parse", "config", "no_data").
        service: Name of the external service that failed.
    """

    def __init__(self, message: str, kind: str = "transport", service: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.service = service


class RetryTimeoutError(TrackerError):
    """Raised when a bulk retry does not finish within its bounded wait.

    Partial state is kept: records already re-enriched stay enriched.
    """

    def __init__(self, message: str, pending: int = 0) -> None:
        super().__init__(message)
        self.pending = pending
