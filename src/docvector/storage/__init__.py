"""
Storage Module - Durable metadata for repositories and documents.
=================================================================

- models: SQLAlchemy ORM tables
- metadata_store: MetadataStore interface and SQL implementation
"""

from docvector.storage.metadata_store import MetadataStore, SqlMetadataStore
from docvector.storage.models import Base, DocumentModel, RepositoryModel

__all__ = [
    "MetadataStore",
    "SqlMetadataStore",
    "Base",
    "DocumentModel",
    "RepositoryModel",
]
