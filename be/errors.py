"""Error kinds shared by the pipelines, job runners and the API layer."""
from __future__ import annotations


class IngestHubError(Exception):
    """Base class for domain errors."""
    pass


class ValidationError(IngestHubError):
    """Raised when a required id or payload is missing or malformed."""
    pass


class NotFoundError(IngestHubError):
    """Raised when a job, record or project does not exist."""
    pass


class InvalidStateError(IngestHubError):
    """Raised when an entity exists but cannot serve the request yet.

    For example, similarity search on a record that has no embedding.
    """
    pass
