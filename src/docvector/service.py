"""
Service Module - Wiring and public API of the indexing service.
===============================================================

IndexService builds every component from settings and exposes:
- Repository administration (create, list, deactivate)
- Ingestion API (ingest, delete, get/list documents)
- Query API (search)
- Reconciliation (one-off pass or background sweeper)

The router, vector index and metadata store are explicit instances shared
by both coordinators; nothing here is module-level state.
"""

import re
from typing import Any, Optional

from docvector.indexing.router import ModelRouter
from docvector.indexing.vector_store import VectorIndexAdapter, call_store, create_vector_index
from docvector.ingestion.chunker import ChunkerConfig
from docvector.ingestion.coordinator import IngestionCoordinator
from docvector.ingestion.ownership import OwnershipRegistry
from docvector.ingestion.reconciler import ReconciliationSweeper, SweepReport
from docvector.retrieval.query import QueryCoordinator
from docvector.shared.config import Settings, get_settings
from docvector.shared.errors import (
    ConfigurationError,
    DocumentNotFound,
    RepositoryConflict,
    RepositoryNotFound,
)
from docvector.shared.logging import get_logger
from docvector.shared.schemas import (
    DeleteResult,
    DistanceMetric,
    Document,
    DocumentStatus,
    IngestResult,
    Page,
    Repository,
    SearchHit,
)
from docvector.storage.metadata_store import MetadataStore, SqlMetadataStore

logger = get_logger(__name__)

# Also a valid collection name for every supported vector store
REPOSITORY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{1,61}[A-Za-z0-9]$")


class IndexService:
    """
    Document-to-vector indexing service.

    Example:
        >>> service = IndexService.from_settings()
        >>> service.create_repository("docs", "all-minilm-l12-v2")
        >>> result = service.ingest("docs", "the quick brown fox")
        >>> hits = service.search("docs", "quick fox", top_k=1)
        >>> service.close()
    """

    def __init__(
        self,
        settings: Settings,
        metadata_store: MetadataStore,
        vector_index: VectorIndexAdapter,
        router: ModelRouter,
        ownership: Optional[OwnershipRegistry] = None,
    ):
        self.settings = settings
        self.metadata_store = metadata_store
        self.vector_index = vector_index
        self.router = router
        self.ownership = ownership or OwnershipRegistry()

        self.ingestion = IngestionCoordinator.from_settings(
            settings, metadata_store, vector_index, router, self.ownership
        )
        self.queries = QueryCoordinator.from_settings(
            settings, metadata_store, vector_index, router
        )
        self.sweeper = ReconciliationSweeper.from_config(
            settings.reconciliation, metadata_store, self.ingestion
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "IndexService":
        """
        Build the service from settings.

        Args:
            settings: Service settings (cached global settings if None)

        Returns:
            IndexService instance; the reconciliation sweeper is started
            when reconciliation.enabled is set
        """
        settings = settings or get_settings()

        service = cls(
            settings=settings,
            metadata_store=SqlMetadataStore(settings.get_effective_db_url()),
            vector_index=create_vector_index(settings),
            router=ModelRouter.from_settings(settings),
        )

        logger.info(
            f"Index service ready: store={service.vector_index.store_name}, "
            f"models={', '.join(service.router.model_ids()) or 'none'}"
        )

        if settings.reconciliation.enabled:
            service.start_reconciler()
        return service

    def __enter__(self) -> "IndexService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Repository Administration
    # ─────────────────────────────────────────────────────────────────────────

    def create_repository(
        self,
        name: str,
        model_id: str,
        metric: DistanceMetric = DistanceMetric.COSINE,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> Repository:
        """
        Create a repository bound to a model and a new vector collection.

        The collection is created first; the repository row is written only
        once the collection exists.

        Args:
            name: Repository name (also the collection name)
            model_id: Model identifier from available_models
            metric: Distance metric of the collection
            chunk_size: Characters per chunk (settings default if None)
            chunk_overlap: Overlap between chunks (settings default if None)

        Returns:
            Created Repository

        Raises:
            ConfigurationError: Invalid name, unknown model, bad chunk policy
            RepositoryConflict: Name already taken
        """
        if not REPOSITORY_NAME_PATTERN.match(name or ""):
            raise ConfigurationError(
                f"Invalid repository name '{name}': use 3-63 letters, digits, '.', '_' or '-', "
                "starting and ending with a letter or digit"
            )
        if self.metadata_store.get_repository(name) is not None:
            raise RepositoryConflict(f"Repository already exists: {name}")

        chunking = ChunkerConfig(
            chunk_size=chunk_size if chunk_size is not None else self.settings.ingestion.chunk_size,
            chunk_overlap=(
                chunk_overlap
                if chunk_overlap is not None
                else self.settings.ingestion.chunk_overlap
            ),
        )

        backend = self.router.resolve(model_id)
        metric = DistanceMetric(metric)

        call_store(
            self.vector_index.create_collection,
            name,
            backend.dimensions,
            metric,
            timeout=self.settings.ingestion.store_timeout_seconds,
            max_retries=self.settings.ingestion.store_max_retries,
            min_wait=self.settings.ingestion.store_retry_min_wait,
            max_wait=self.settings.ingestion.store_retry_max_wait,
        )

        return self.metadata_store.create_repository(
            Repository(
                name=name,
                model_id=model_id,
                dimensions=backend.dimensions,
                metric=metric,
                chunk_size=chunking.chunk_size,
                chunk_overlap=chunking.chunk_overlap,
                index_store=self.vector_index.store_name,
            )
        )

    def get_repository(self, name: str) -> Repository:
        repo = self.metadata_store.get_repository(name)
        if repo is None:
            raise RepositoryNotFound(name)
        return repo

    def list_repositories(self, include_inactive: bool = True) -> list[Repository]:
        return self.metadata_store.list_repositories(include_inactive=include_inactive)

    def deactivate_repository(self, name: str) -> Repository:
        """Stop accepting ingestion; search and delete keep working."""
        return self.metadata_store.deactivate_repository(name)

    def repository_stats(self, name: str) -> dict[str, Any]:
        """Document counts per status and the number of stored vectors."""
        repo = self.get_repository(name)
        counts = self.metadata_store.status_counts(repo.name)
        return {
            "repository": repo.name,
            "model_id": repo.model_id,
            "dimensions": repo.dimensions,
            "active": repo.active,
            "documents": sum(counts.values()),
            "by_status": counts,
            "vectors": call_store(
                self.vector_index.count,
                repo.collection_name,
                timeout=self.settings.ingestion.store_timeout_seconds,
                max_retries=self.settings.ingestion.store_max_retries,
                min_wait=self.settings.ingestion.store_retry_min_wait,
                max_wait=self.settings.ingestion.store_retry_max_wait,
            ),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Ingestion API
    # ─────────────────────────────────────────────────────────────────────────

    def ingest(
        self,
        repository: str,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
        boundaries: Optional[list[int]] = None,
        timeout: Optional[float] = None,
    ) -> IngestResult:
        return self.ingestion.ingest(
            repository, content, metadata=metadata, boundaries=boundaries, timeout=timeout
        )

    def delete(
        self,
        repository: str,
        document_id: str,
        timeout: Optional[float] = None,
    ) -> DeleteResult:
        return self.ingestion.delete(repository, document_id, timeout=timeout)

    def get_document(self, repository: str, document_id: str) -> Document:
        document = self.metadata_store.get_document(document_id)
        if document is None or document.repository != repository:
            raise DocumentNotFound(document_id, repository)
        return document

    def list_documents(
        self,
        repository: str,
        offset: int = 0,
        limit: int = 50,
        status: Optional[DocumentStatus] = None,
    ) -> Page:
        self.get_repository(repository)
        return self.metadata_store.list_by_repository(
            repository, offset=offset, limit=limit, status=status
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Query API
    # ─────────────────────────────────────────────────────────────────────────

    def search(
        self,
        repository: str,
        query_text: str,
        top_k: Optional[int] = None,
        filters: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[SearchHit]:
        return self.queries.search(
            repository, query_text, top_k=top_k, filters=filters, timeout=timeout
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Reconciliation and Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def reconcile(self) -> SweepReport:
        """Run one reconciliation pass now."""
        return self.sweeper.sweep_once()

    def start_reconciler(self) -> None:
        self.sweeper.start()

    def close(self) -> None:
        """Stop the sweeper and release store clients."""
        self.sweeper.stop()
        self.vector_index.close()
        self.metadata_store.close()
        logger.debug("Index service closed")
