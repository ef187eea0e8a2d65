"""
Storage Models Module - SQLAlchemy ORM models for the metadata store.
=====================================================================

Two tables:
- repositories: one row per logical index namespace
- documents: one row per document, keyed by its content-hash id

Enums are stored as strings (native_enum=False) so the same schema works
on SQLite and PostgreSQL.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docvector.shared.schemas import DistanceMetric, DocumentStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all metadata store tables."""

    pass


class TimestampMixin:
    """
    created_at is set once on insert; updated_at is refreshed on every update.

    Both are UTC.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )


class RepositoryModel(Base, TimestampMixin):
    """
    Repository row.

    Attributes:
        name: Unique repository name (also the vector collection name)
        model_id: Embedding model identifier bound to the repository
        dimensions: Vector dimensionality of the collection
        metric: Distance metric of the collection
        chunk_size / chunk_overlap: Chunking policy
        index_store: Vector store kind the collection lives in
        active: False once deactivated; ingestion is then refused
    """

    __tablename__ = "repositories"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    metric: Mapped[DistanceMetric] = mapped_column(
        Enum(DistanceMetric, native_enum=False),
        nullable=False,
        default=DistanceMetric.COSINE,
    )
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_overlap: Mapped[int] = mapped_column(Integer, nullable=False)
    index_store: Mapped[str] = mapped_column(String(32), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class DocumentModel(Base, TimestampMixin):
    """
    Document row tracking the indexing lifecycle.

    Lifecycle: pending -> embedding -> indexed, or failed(reason) from
    either intermediate state. Rows are never deleted automatically.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_repository_created", "repository", "created_at"),
        Index("ix_documents_status_updated", "status", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    repository: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("repositories.name"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    doc_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, native_enum=False),
        nullable=False,
        default=DocumentStatus.PENDING,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    boundaries: Mapped[Optional[list[int]]] = mapped_column(JSON, nullable=True)
