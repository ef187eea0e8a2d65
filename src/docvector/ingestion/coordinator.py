"""
Coordinator Module - Per-document ingestion pipeline.
======================================================

Turns a document into indexed vectors across two stores that share no
transaction. Writes follow a fixed order so that every observable state is
safe and every step can be repeated:

1. metadata row -> pending, then embedding (with the chunk count)
2. chunk deterministically, skip chunks whose entry is already stored
3. embed through the ModelRouter
4. upsert entries into the vector index, drop entries of an older chunking
5. metadata row -> indexed

Vector ids are derived from (document id, chunk sequence), so a retried or
resumed pipeline overwrites its own entries instead of duplicating them.
Pipeline failures end in failed(reason) and are returned, not raised. A
configuration problem or an unexpected error is recorded as failed(reason)
too, then re-raised so it is not mistaken for an ordinary outcome.
"""

from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from docvector.indexing.router import ModelRouter
from docvector.indexing.vector_store import VectorIndexAdapter, call_store
from docvector.ingestion.chunker import Chunker, ChunkerConfig
from docvector.ingestion.ownership import OwnershipRegistry
from docvector.shared.errors import (
    BackpressureError,
    ConfigurationError,
    DocumentNotFound,
    InvalidDocument,
    PermanentFailure,
    RepositoryInactive,
    RepositoryNotFound,
    StoreRejected,
    StoreUnavailable,
    TransientFailure,
)
from docvector.shared.logging import get_logger
from docvector.shared.schemas import (
    RESERVED_PAYLOAD_KEYS,
    DeleteResult,
    Document,
    DocumentStatus,
    Embedding,
    FailureReason,
    IndexEntry,
    IngestResult,
    Repository,
    build_payload,
)
from docvector.shared.utils import (
    generate_document_id,
    generate_vector_id,
    normalize_content,
)
from docvector.storage.metadata_store import MetadataStore

if TYPE_CHECKING:
    from docvector.shared.config import Settings

logger = get_logger(__name__)

T = TypeVar("T")


class IngestionCoordinator:
    """
    Runs the ingestion pipeline for one document at a time per id.

    Example:
        >>> coordinator = IngestionCoordinator(metadata_store, vector_index, router)
        >>> result = coordinator.ingest("docs", "the quick brown fox")
        >>> print(result.status_label)  # indexed
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        vector_index: VectorIndexAdapter,
        router: ModelRouter,
        ownership: Optional[OwnershipRegistry] = None,
        store_timeout: Optional[float] = 30.0,
        store_max_retries: int = 3,
        store_retry_min_wait: float = 0.5,
        store_retry_max_wait: float = 8.0,
    ):
        """
        Initialize the coordinator.

        Args:
            metadata_store: Durable document/repository records
            vector_index: Vector index adapter
            router: Model router shared with the query path
            ownership: Per-document ownership tokens (shared with the sweeper)
            store_timeout: Default timeout for each vector store call
            store_max_retries: Retries of StoreUnavailable before giving up
            store_retry_min_wait: Minimum backoff between store retries
            store_retry_max_wait: Maximum backoff between store retries
        """
        self.metadata_store = metadata_store
        self.vector_index = vector_index
        self.router = router
        self.ownership = ownership or OwnershipRegistry()
        self.store_timeout = store_timeout
        self.store_max_retries = store_max_retries
        self.store_retry_min_wait = store_retry_min_wait
        self.store_retry_max_wait = store_retry_max_wait

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        metadata_store: MetadataStore,
        vector_index: VectorIndexAdapter,
        router: ModelRouter,
        ownership: Optional[OwnershipRegistry] = None,
    ) -> "IngestionCoordinator":
        ingestion = settings.ingestion
        return cls(
            metadata_store=metadata_store,
            vector_index=vector_index,
            router=router,
            ownership=ownership,
            store_timeout=ingestion.store_timeout_seconds,
            store_max_retries=ingestion.store_max_retries,
            store_retry_min_wait=ingestion.store_retry_min_wait,
            store_retry_max_wait=ingestion.store_retry_max_wait,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def ingest(
        self,
        repository: str,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
        boundaries: Optional[list[int]] = None,
        timeout: Optional[float] = None,
    ) -> IngestResult:
        """
        Index a document.

        Args:
            repository: Repository name
            content: Raw document content
            metadata: Scalar-valued metadata stored with the document
            boundaries: Optional chunk cut offsets into the normalized content
            timeout: Per-call timeout for backend and store calls

        Returns:
            IngestResult with status indexed or failed(reason)

        Raises:
            RepositoryNotFound: Unknown repository
            RepositoryInactive: Repository was deactivated
            ConfigurationError: Repository model cannot be bound
            InvalidDocument: Empty content, reserved metadata keys, bad boundaries
            MetadataUnavailable: Metadata store failed
        """
        repo = self._resolve_repository(repository, for_write=True)
        self.router.resolve(repo.model_id)

        if not isinstance(content, str):
            raise InvalidDocument("Document content must be a string")
        normalized = normalize_content(content)
        if not normalized:
            raise InvalidDocument("Document content is empty")

        metadata = self._validate_metadata(metadata)
        boundaries = list(boundaries) if boundaries else None
        if boundaries:
            self._chunker_for(repo).spans_from_boundaries(normalized, boundaries)

        document_id = generate_document_id(repo.name, normalized)

        with self.ownership.hold(document_id):
            existing = self.metadata_store.get_document(document_id)
            if existing is not None and existing.status == DocumentStatus.INDEXED:
                logger.info(f"Document {document_id[:12]} already indexed in {repo.name}, skipping")
                return self._result(existing, skipped=True)

            document = self.metadata_store.upsert_document(
                Document(
                    id=document_id,
                    repository=repo.name,
                    content=content,
                    metadata=metadata,
                    status=DocumentStatus.PENDING,
                    # Keep the previous count so entries of an older chunking are found
                    chunk_count=existing.chunk_count if existing is not None else 0,
                    boundaries=boundaries,
                )
            )
            return self._run_pipeline(repo, document, timeout)

    def resume(
        self,
        document_id: str,
        timeout: Optional[float] = None,
        blocking: bool = True,
    ) -> Optional[IngestResult]:
        """
        Re-run the pipeline for a stored document.

        Entries already upserted with matching payloads are not re-embedded,
        so a document stuck between upsert and the final status flip is
        completed without backend calls.

        Args:
            document_id: Stored document id
            timeout: Per-call timeout for backend and store calls
            blocking: If False, return None when another pipeline owns the id

        Returns:
            IngestResult, or None if the ownership token was busy

        Raises:
            DocumentNotFound: Unknown document
            RepositoryNotFound: The document's repository is gone
        """
        with self.ownership.hold(document_id, blocking=blocking) as acquired:
            if not acquired:
                return None

            document = self.metadata_store.get_document(document_id)
            if document is None:
                raise DocumentNotFound(document_id)
            if document.status == DocumentStatus.INDEXED:
                return self._result(document, skipped=True)

            repo = self._resolve_repository(document.repository, for_write=False)
            logger.info(
                f"Resuming document {document_id[:12]} in {repo.name} "
                f"(was {document.status_label})"
            )
            return self._run_pipeline(repo, document, timeout)

    def delete(
        self,
        repository: str,
        document_id: str,
        timeout: Optional[float] = None,
    ) -> DeleteResult:
        """
        Remove a document's vector entries, then its metadata row.

        Args:
            repository: Repository name
            document_id: Document id
            timeout: Per-call timeout for store calls

        Returns:
            DeleteResult

        Raises:
            RepositoryNotFound: Unknown repository
            DocumentNotFound: Unknown document
            StoreUnavailable: Vector entries could not be removed (row kept)
        """
        repo = self._resolve_repository(repository, for_write=False)

        with self.ownership.hold(document_id):
            document = self.metadata_store.get_document(document_id)
            if document is None or document.repository != repo.name:
                raise DocumentNotFound(document_id, repo.name)

            vector_ids = document.vector_ids
            if vector_ids:
                self._store_call(
                    self.vector_index.delete,
                    timeout,
                    repo.collection_name,
                    vector_ids,
                    owner=document_id,
                )
            self.metadata_store.delete_document(document_id)

        logger.info(
            f"Deleted document {document_id[:12]} from {repo.name} "
            f"({len(vector_ids)} vectors)"
        )
        return DeleteResult(
            document_id=document_id,
            repository=repo.name,
            vectors_removed=len(vector_ids),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────────

    def _run_pipeline(
        self,
        repo: Repository,
        document: Document,
        timeout: Optional[float],
    ) -> IngestResult:
        normalized = normalize_content(document.content)
        chunks = self._chunker_for(repo).chunk(document.id, normalized, document.boundaries)
        previous_count = document.chunk_count

        self.metadata_store.set_status(
            document.id,
            DocumentStatus.EMBEDDING,
            chunk_count=max(previous_count, len(chunks)),
        )

        try:
            stored = self._store_call(
                self.vector_index.fetch,
                timeout,
                repo.collection_name,
                [c.vector_id for c in chunks],
                owner=document.id,
            )
            todo = [c for c in chunks if stored.get(c.vector_id) != build_payload(c, document.metadata)]

            if todo:
                vectors = self.router.submit(repo.model_id, [c.text for c in todo], timeout=timeout)
                entries = [
                    IndexEntry.from_chunk(
                        chunk,
                        Embedding(vector=vector, model_id=repo.model_id),
                        document.metadata,
                    )
                    for chunk, vector in zip(todo, vectors)
                ]
                self._store_call(
                    self.vector_index.upsert,
                    timeout,
                    repo.collection_name,
                    entries,
                    owner=document.id,
                )

            stale = [
                generate_vector_id(document.id, seq)
                for seq in range(len(chunks), previous_count)
            ]
            if stale:
                self._store_call(
                    self.vector_index.delete,
                    timeout,
                    repo.collection_name,
                    stale,
                    owner=document.id,
                )

        except BackpressureError as e:
            return self._fail(document, FailureReason.EMBEDDING_BACKPRESSURE, e, len(chunks))
        except StoreUnavailable as e:
            return self._fail(document, FailureReason.STORE_UNAVAILABLE, e, len(chunks))
        except StoreRejected as e:
            return self._fail(document, FailureReason.STORE_REJECTED, e, len(chunks))
        except TransientFailure as e:
            return self._fail(document, FailureReason.EMBEDDING_TRANSIENT, e, len(chunks))
        except PermanentFailure as e:
            return self._fail(document, FailureReason.EMBEDDING_PERMANENT, e, len(chunks))
        except ConfigurationError as e:
            self._fail(document, FailureReason.CONFIGURATION, e, len(chunks))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error indexing document {document.id[:12]}")
            self._fail(document, FailureReason.INTERNAL, e, len(chunks))
            raise

        indexed = self.metadata_store.set_status(
            document.id, DocumentStatus.INDEXED, chunk_count=len(chunks)
        )
        logger.info(
            f"Indexed document {document.id[:12]} in {repo.name}: "
            f"{len(chunks)} chunks, {len(todo)} embedded"
        )
        return self._result(indexed)

    def _fail(
        self,
        document: Document,
        reason: FailureReason,
        error: Exception,
        chunk_count: int,
    ) -> IngestResult:
        logger.error(f"Document {document.id[:12]} failed ({reason.value}): {error}")
        self.metadata_store.set_status(document.id, DocumentStatus.FAILED, reason=reason.value)
        return IngestResult(
            document_id=document.id,
            repository=document.repository,
            status=DocumentStatus.FAILED,
            failure_reason=reason.value,
            chunk_count=chunk_count,
            error=str(error),
        )

    def _store_call(
        self,
        func: Callable[..., T],
        timeout: Optional[float],
        *args: Any,
        owner: Optional[str] = None,
    ) -> T:
        """Run a store call; an abandoned attempt keeps `owner` held until it finishes."""
        return call_store(
            func,
            *args,
            on_abandoned=partial(self.ownership.release_when_done, owner) if owner else None,
            timeout=timeout if timeout is not None else self.store_timeout,
            max_retries=self.store_max_retries,
            min_wait=self.store_retry_min_wait,
            max_wait=self.store_retry_max_wait,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _resolve_repository(self, name: str, for_write: bool) -> Repository:
        repo = self.metadata_store.get_repository(name)
        if repo is None:
            raise RepositoryNotFound(name)
        if for_write and not repo.active:
            raise RepositoryInactive(name)
        return repo

    @staticmethod
    def _chunker_for(repo: Repository) -> Chunker:
        return Chunker(ChunkerConfig(chunk_size=repo.chunk_size, chunk_overlap=repo.chunk_overlap))

    @staticmethod
    def _validate_metadata(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
        if metadata is None:
            return {}
        if not isinstance(metadata, dict):
            raise InvalidDocument("Document metadata must be a mapping")
        for key in metadata:
            if not isinstance(key, str) or not key:
                raise InvalidDocument(f"Metadata keys must be non-empty strings, got {key!r}")
        reserved = RESERVED_PAYLOAD_KEYS.intersection(metadata)
        if reserved:
            raise InvalidDocument(f"Metadata uses reserved keys: {', '.join(sorted(reserved))}")
        return dict(metadata)

    @staticmethod
    def _result(document: Document, skipped: bool = False) -> IngestResult:
        return IngestResult(
            document_id=document.id,
            repository=document.repository,
            status=document.status,
            failure_reason=document.failure_reason,
            chunk_count=document.chunk_count,
            skipped=skipped,
        )
