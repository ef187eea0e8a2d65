"""
Metadata Store Module - Durable records of repositories and documents.
======================================================================

Provides the relational store behind the service:
- Repository administration (create, list, deactivate)
- Document rows with their indexing status
- Paged listing and stale-document queries for reconciliation

Every operation runs in its own transaction and commits before returning.
Database errors surface as MetadataUnavailable (transient); mutating a
missing row raises DocumentNotFound / RepositoryNotFound.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from docvector.shared.errors import (
    DocumentNotFound,
    MetadataUnavailable,
    RepositoryConflict,
    RepositoryNotFound,
)
from docvector.shared.logging import get_logger
from docvector.shared.schemas import Document, DocumentStatus, Page, Repository
from docvector.shared.utils import ensure_directory
from docvector.storage.models import Base, DocumentModel, RepositoryModel

logger = get_logger(__name__)

# Fields that may change on a repository until it holds documents
MUTABLE_REPOSITORY_FIELDS = frozenset(
    {"model_id", "dimensions", "metric", "chunk_size", "chunk_overlap", "index_store"}
)


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; every stored value is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Abstract Base Class
# ─────────────────────────────────────────────────────────────────────────────


class MetadataStore(ABC):
    """Abstract interface of the metadata store."""

    # Documents

    @abstractmethod
    def upsert_document(self, document: Document) -> Document:
        """Insert a document row or replace its mutable fields."""

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        """Get a document by id, or None."""

    @abstractmethod
    def get_documents(self, document_ids: list[str]) -> dict[str, Document]:
        """Get several documents by id; missing ids are absent."""

    @abstractmethod
    def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        reason: Optional[str] = None,
        chunk_count: Optional[int] = None,
    ) -> Document:
        """Record a status transition."""

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        """Delete a document row."""

    @abstractmethod
    def list_by_repository(
        self,
        repository: str,
        offset: int = 0,
        limit: int = 50,
        status: Optional[DocumentStatus] = None,
    ) -> Page:
        """Page through a repository's documents, oldest first."""

    @abstractmethod
    def list_stale(
        self,
        statuses: list[DocumentStatus],
        older_than: datetime,
        limit: int = 100,
    ) -> list[Document]:
        """Documents in `statuses` not updated since `older_than`."""

    # Repositories

    @abstractmethod
    def create_repository(self, repository: Repository) -> Repository:
        """Create a repository row."""

    @abstractmethod
    def get_repository(self, name: str) -> Optional[Repository]:
        """Get a repository by name, or None."""

    @abstractmethod
    def list_repositories(self, include_inactive: bool = True) -> list[Repository]:
        """List repositories by name."""

    @abstractmethod
    def update_repository(self, name: str, **changes) -> Repository:
        """Change a repository's binding while it holds no documents."""

    @abstractmethod
    def deactivate_repository(self, name: str) -> Repository:
        """Soft-deactivate a repository."""

    @abstractmethod
    def count_documents(self, repository: str, status: Optional[DocumentStatus] = None) -> int:
        """Count a repository's documents, optionally by status."""

    @abstractmethod
    def status_counts(self, repository: str) -> dict[str, int]:
        """Document counts per status for one repository."""

    def close(self) -> None:
        """Release resources. Default is a no-op."""


# ─────────────────────────────────────────────────────────────────────────────
# SQLAlchemy Implementation
# ─────────────────────────────────────────────────────────────────────────────


class SqlMetadataStore(MetadataStore):
    """
    SQLAlchemy-backed metadata store (SQLite, PostgreSQL, ...).

    Example:
        >>> store = SqlMetadataStore("sqlite:///data/docvector.db")
        >>> store.create_repository(Repository(name="docs", model_id="m", dimensions=384))
        >>> store.upsert_document(document)
        >>> store.set_status(document.id, DocumentStatus.INDEXED, chunk_count=3)
    """

    def __init__(self, db_url: str, echo: bool = False):
        """
        Initialize the store and create missing tables.

        Args:
            db_url: SQLAlchemy database URL
            echo: Log every SQL statement
        """
        self.db_url = db_url
        self._engine = self._create_engine(db_url, echo)
        self._session_factory = sessionmaker(
            bind=self._engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

        # A single shared in-memory connection must not interleave transactions
        self._serial_lock: Optional[threading.Lock] = (
            threading.Lock() if self._is_memory_sqlite(db_url) else None
        )

        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise MetadataUnavailable(f"Cannot initialize metadata store: {e}") from e

        logger.info(f"Metadata store initialized: {self._engine.url.render_as_string()}")

    @staticmethod
    def _is_memory_sqlite(db_url: str) -> bool:
        url = make_url(db_url)
        return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")

    def _create_engine(self, db_url: str, echo: bool):
        url = make_url(db_url)

        if url.get_backend_name() != "sqlite":
            return create_engine(db_url, echo=echo, pool_pre_ping=True)

        if self._is_memory_sqlite(db_url):
            return create_engine(
                db_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )

        ensure_directory(Path(url.database).parent)
        return create_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        with self._serial_lock or nullcontext():
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise MetadataUnavailable(f"Metadata store error: {e}") from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def close(self) -> None:
        self._engine.dispose()

    # ─────────────────────────────────────────────────────────────────────────
    # Conversion
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _to_document(row: DocumentModel) -> Document:
        return Document(
            id=row.id,
            repository=row.repository,
            content=row.content,
            metadata=dict(row.doc_metadata or {}),
            status=row.status,
            failure_reason=row.failure_reason,
            chunk_count=row.chunk_count,
            boundaries=list(row.boundaries) if row.boundaries is not None else None,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _to_repository(row: RepositoryModel) -> Repository:
        return Repository(
            name=row.name,
            model_id=row.model_id,
            dimensions=row.dimensions,
            metric=row.metric,
            chunk_size=row.chunk_size,
            chunk_overlap=row.chunk_overlap,
            index_store=row.index_store,
            active=row.active,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Documents
    # ─────────────────────────────────────────────────────────────────────────

    def upsert_document(self, document: Document) -> Document:
        with self._transaction() as session:
            row = session.get(DocumentModel, document.id)
            if row is None:
                row = DocumentModel(
                    id=document.id,
                    repository=document.repository,
                    content=document.content,
                    doc_metadata=dict(document.metadata),
                    status=document.status,
                    failure_reason=document.failure_reason,
                    chunk_count=document.chunk_count,
                    boundaries=document.boundaries,
                )
                session.add(row)
            else:
                row.content = document.content
                row.doc_metadata = dict(document.metadata)
                row.status = document.status
                row.failure_reason = document.failure_reason
                row.chunk_count = document.chunk_count
                row.boundaries = document.boundaries
            session.flush()
            return self._to_document(row)

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._transaction() as session:
            row = session.get(DocumentModel, document_id)
            return self._to_document(row) if row is not None else None

    def get_documents(self, document_ids: list[str]) -> dict[str, Document]:
        if not document_ids:
            return {}
        with self._transaction() as session:
            stmt = select(DocumentModel).where(DocumentModel.id.in_(sorted(set(document_ids))))
            return {row.id: self._to_document(row) for row in session.scalars(stmt).all()}

    def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        reason: Optional[str] = None,
        chunk_count: Optional[int] = None,
    ) -> Document:
        status = DocumentStatus(status)
        with self._transaction() as session:
            row = session.get(DocumentModel, document_id)
            if row is None:
                raise DocumentNotFound(document_id)
            row.status = status
            row.failure_reason = reason if status == DocumentStatus.FAILED else None
            if chunk_count is not None:
                row.chunk_count = chunk_count
            session.flush()
            document = self._to_document(row)

        logger.debug(f"Document {document_id[:12]} -> {document.status_label}")
        return document

    def delete_document(self, document_id: str) -> None:
        with self._transaction() as session:
            row = session.get(DocumentModel, document_id)
            if row is None:
                raise DocumentNotFound(document_id)
            session.delete(row)

    def list_by_repository(
        self,
        repository: str,
        offset: int = 0,
        limit: int = 50,
        status: Optional[DocumentStatus] = None,
    ) -> Page:
        with self._transaction() as session:
            conditions = [DocumentModel.repository == repository]
            if status is not None:
                conditions.append(DocumentModel.status == DocumentStatus(status))

            total = session.scalar(
                select(func.count()).select_from(DocumentModel).where(*conditions)
            )
            stmt = (
                select(DocumentModel)
                .where(*conditions)
                .order_by(DocumentModel.created_at, DocumentModel.id)
                .offset(offset)
                .limit(limit)
            )
            rows = session.scalars(stmt).all()
            return Page(
                items=[self._to_document(r) for r in rows],
                total=total or 0,
                offset=offset,
                limit=limit,
            )

    def list_stale(
        self,
        statuses: list[DocumentStatus],
        older_than: datetime,
        limit: int = 100,
    ) -> list[Document]:
        with self._transaction() as session:
            stmt = (
                select(DocumentModel)
                .where(
                    DocumentModel.status.in_([DocumentStatus(s) for s in statuses]),
                    DocumentModel.updated_at < older_than,
                )
                .order_by(DocumentModel.updated_at, DocumentModel.id)
                .limit(limit)
            )
            return [self._to_document(r) for r in session.scalars(stmt).all()]

    # ─────────────────────────────────────────────────────────────────────────
    # Repositories
    # ─────────────────────────────────────────────────────────────────────────

    def create_repository(self, repository: Repository) -> Repository:
        with self._transaction() as session:
            if session.get(RepositoryModel, repository.name) is not None:
                raise RepositoryConflict(f"Repository already exists: {repository.name}")

            row = RepositoryModel(
                name=repository.name,
                model_id=repository.model_id,
                dimensions=repository.dimensions,
                metric=repository.metric,
                chunk_size=repository.chunk_size,
                chunk_overlap=repository.chunk_overlap,
                index_store=repository.index_store,
                active=repository.active,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as e:
                raise RepositoryConflict(f"Repository already exists: {repository.name}") from e
            created = self._to_repository(row)

        logger.info(f"Created repository: {created.name} (model={created.model_id})")
        return created

    def get_repository(self, name: str) -> Optional[Repository]:
        with self._transaction() as session:
            row = session.get(RepositoryModel, name)
            return self._to_repository(row) if row is not None else None

    def list_repositories(self, include_inactive: bool = True) -> list[Repository]:
        with self._transaction() as session:
            stmt = select(RepositoryModel).order_by(RepositoryModel.name)
            if not include_inactive:
                stmt = stmt.where(RepositoryModel.active.is_(True))
            return [self._to_repository(r) for r in session.scalars(stmt).all()]

    def update_repository(self, name: str, **changes) -> Repository:
        unknown = set(changes) - MUTABLE_REPOSITORY_FIELDS
        if unknown:
            raise RepositoryConflict(
                f"Cannot change repository fields: {', '.join(sorted(unknown))}"
            )

        with self._transaction() as session:
            row = session.get(RepositoryModel, name)
            if row is None:
                raise RepositoryNotFound(name)

            documents = session.scalar(
                select(func.count())
                .select_from(DocumentModel)
                .where(DocumentModel.repository == name)
            )
            if documents:
                raise RepositoryConflict(
                    f"Repository {name} holds {documents} documents and can no longer change"
                )

            for field, value in changes.items():
                setattr(row, field, value)
            session.flush()
            return self._to_repository(row)

    def deactivate_repository(self, name: str) -> Repository:
        with self._transaction() as session:
            row = session.get(RepositoryModel, name)
            if row is None:
                raise RepositoryNotFound(name)
            row.active = False
            session.flush()
            repository = self._to_repository(row)

        logger.info(f"Deactivated repository: {name}")
        return repository

    def count_documents(self, repository: str, status: Optional[DocumentStatus] = None) -> int:
        with self._transaction() as session:
            stmt = (
                select(func.count())
                .select_from(DocumentModel)
                .where(DocumentModel.repository == repository)
            )
            if status is not None:
                stmt = stmt.where(DocumentModel.status == DocumentStatus(status))
            return session.scalar(stmt) or 0

    def status_counts(self, repository: str) -> dict[str, int]:
        """Document counts per status for one repository."""
        with self._transaction() as session:
            stmt = (
                select(DocumentModel.status, func.count())
                .where(DocumentModel.repository == repository)
                .group_by(DocumentModel.status)
            )
            counts = {status.value: 0 for status in DocumentStatus}
            for status, count in session.execute(stmt).all():
                counts[DocumentStatus(status).value] = count
            return counts
