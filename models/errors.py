class ValidationError(Exception):
    """Bad or missing request input. Surfaced to the caller, never retried."""


class NotFoundError(Exception):
    """Unknown job id, or no data stored for the requested source."""


class DependencyUnavailableError(Exception):
    """Store, queue or cache could not be reached. *details* end up in the health document."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}
