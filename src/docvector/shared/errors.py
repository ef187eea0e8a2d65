"""
Errors Module - Exception taxonomy for the indexing service.
============================================================

Every failure surfaced by the core falls into one of four families:

- ConfigurationError: fatal, raised at startup or repository binding time
- TransientFailure: retryable (rate limits, timeouts, unavailable stores)
- PermanentFailure: never retried (bad input, dimension mismatch)
- NotFoundError: the addressed repository or document does not exist

Third-party exceptions are translated into this hierarchy at the adapter
boundary so coordinators only ever reason about these types.
"""

from typing import Optional


class DocVectorError(Exception):
    """Base class for all docvector errors."""


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────


class ConfigurationError(DocVectorError):
    """Unknown model, missing credential, or invalid binding."""


class RepositoryConflict(ConfigurationError):
    """Repository already exists or can no longer be modified."""


# ─────────────────────────────────────────────────────────────────────────────
# Transient
# ─────────────────────────────────────────────────────────────────────────────


class TransientFailure(DocVectorError):
    """A retryable failure (rate limit, network error, timeout)."""


class BackpressureError(TransientFailure):
    """
    Admission queue for a backend is full.

    Raised immediately instead of queuing further work so callers can shed
    load or retry later.
    """

    def __init__(self, model_id: str, max_queue: int):
        self.model_id = model_id
        self.max_queue = max_queue
        super().__init__(
            f"Backend for model '{model_id}' is saturated "
            f"(wait queue full at {max_queue})"
        )


class StoreUnavailable(TransientFailure):
    """Vector index store could not be reached or timed out."""


class MetadataUnavailable(TransientFailure):
    """Metadata database could not complete an operation."""


# ─────────────────────────────────────────────────────────────────────────────
# Permanent
# ─────────────────────────────────────────────────────────────────────────────


class PermanentFailure(DocVectorError):
    """A failure that retrying will not fix."""


class StoreRejected(PermanentFailure):
    """Vector index store refused the request (e.g. dimension mismatch)."""


class InvalidDocument(PermanentFailure):
    """Submitted document content or metadata is not acceptable."""


class InvalidQuery(PermanentFailure):
    """Search request is malformed."""


class RepositoryInactive(PermanentFailure):
    """Repository has been deactivated and accepts no new documents."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Repository '{name}' is deactivated")


# ─────────────────────────────────────────────────────────────────────────────
# Not Found
# ─────────────────────────────────────────────────────────────────────────────


class NotFoundError(DocVectorError):
    """Addressed entity does not exist."""


class RepositoryNotFound(NotFoundError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Repository '{name}' not found")


class DocumentNotFound(NotFoundError):
    def __init__(self, document_id: str, repository: Optional[str] = None):
        self.document_id = document_id
        self.repository = repository
        where = f" in repository '{repository}'" if repository else ""
        super().__init__(f"Document '{document_id}' not found{where}")
