"""
Shared Module - Common utilities, configuration, schemas, errors and logging.
=============================================================================

This module provides foundational components used across all other modules:

- config: Configuration loading and management
- logging: Structured logging setup
- errors: Exception taxonomy (configuration / transient / permanent / not found)
- schemas: Pydantic data models
- utils: Hashing, id generation, bounded calls
"""

from docvector.shared.config import Settings, get_settings, load_settings
from docvector.shared.errors import (
    BackpressureError,
    ConfigurationError,
    DocVectorError,
    DocumentNotFound,
    InvalidDocument,
    InvalidQuery,
    MetadataUnavailable,
    NotFoundError,
    PermanentFailure,
    RepositoryConflict,
    RepositoryInactive,
    RepositoryNotFound,
    StoreRejected,
    StoreUnavailable,
    TransientFailure,
)
from docvector.shared.logging import get_logger, setup_logging
from docvector.shared.schemas import (
    Chunk,
    DeleteResult,
    DistanceMetric,
    Document,
    DocumentStatus,
    Embedding,
    FailureReason,
    IndexEntry,
    IngestResult,
    Page,
    Repository,
    SearchHit,
    VectorHit,
)
from docvector.shared.utils import (
    call_with_timeout,
    compute_hash,
    generate_document_id,
    generate_vector_id,
    normalize_content,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "load_settings",
    # Logging
    "get_logger",
    "setup_logging",
    # Errors
    "DocVectorError",
    "ConfigurationError",
    "RepositoryConflict",
    "TransientFailure",
    "BackpressureError",
    "StoreUnavailable",
    "MetadataUnavailable",
    "PermanentFailure",
    "StoreRejected",
    "InvalidDocument",
    "InvalidQuery",
    "RepositoryInactive",
    "NotFoundError",
    "RepositoryNotFound",
    "DocumentNotFound",
    # Schemas
    "Repository",
    "Document",
    "DocumentStatus",
    "FailureReason",
    "DistanceMetric",
    "Chunk",
    "Embedding",
    "IndexEntry",
    "VectorHit",
    "SearchHit",
    "IngestResult",
    "DeleteResult",
    "Page",
    # Utils
    "compute_hash",
    "normalize_content",
    "generate_document_id",
    "generate_vector_id",
    "call_with_timeout",
]
