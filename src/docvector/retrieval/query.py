"""
Query Module - Semantic search over a repository.
=================================================

Handles query embedding and result enrichment:
- Embeds the query through the repository's bound model
- Overfetches from the vector index so several chunks of one document do
  not crowd others out
- Keeps the best chunk per document and drops hits whose document is gone
  or not indexed
- Orders by descending score, ties by ascending vector id
"""

from typing import TYPE_CHECKING, Any, Optional

from docvector.indexing.router import ModelRouter
from docvector.indexing.vector_store import VectorIndexAdapter, call_store, validate_filter
from docvector.shared.errors import InvalidQuery, RepositoryNotFound
from docvector.shared.logging import get_logger
from docvector.shared.schemas import DocumentStatus, Repository, SearchHit, VectorHit
from docvector.storage.metadata_store import MetadataStore

if TYPE_CHECKING:
    from docvector.shared.config import Settings

logger = get_logger(__name__)

# Widening rounds when deduplication leaves fewer than top_k documents
MAX_FETCH_ROUNDS = 3


class QueryCoordinator:
    """
    Answers search requests for a repository.

    Example:
        >>> queries = QueryCoordinator(metadata_store, vector_index, router)
        >>> hits = queries.search("docs", "quick fox", top_k=1)
        >>> for hit in hits:
        ...     print(f"{hit.document_id[:12]}: {hit.score:.3f}")
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        vector_index: VectorIndexAdapter,
        router: ModelRouter,
        default_top_k: int = 10,
        overfetch: int = 3,
        store_timeout: Optional[float] = 30.0,
        store_max_retries: int = 3,
        store_retry_min_wait: float = 0.5,
        store_retry_max_wait: float = 8.0,
    ):
        """
        Initialize the query coordinator.

        Args:
            metadata_store: Durable document/repository records
            vector_index: Vector index adapter
            router: Model router shared with ingestion
            default_top_k: top_k used when the caller passes None
            overfetch: Multiplier on top_k for the first index query
            store_timeout: Default timeout for each vector store call
            store_max_retries: Retries of StoreUnavailable before giving up
        """
        self.metadata_store = metadata_store
        self.vector_index = vector_index
        self.router = router
        self.default_top_k = default_top_k
        self.overfetch = max(1, overfetch)
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
    ) -> "QueryCoordinator":
        ingestion = settings.ingestion
        return cls(
            metadata_store=metadata_store,
            vector_index=vector_index,
            router=router,
            default_top_k=settings.query.top_k,
            overfetch=settings.query.overfetch,
            store_timeout=ingestion.store_timeout_seconds,
            store_max_retries=ingestion.store_max_retries,
            store_retry_min_wait=ingestion.store_retry_min_wait,
            store_retry_max_wait=ingestion.store_retry_max_wait,
        )

    def search(
        self,
        repository: str,
        query_text: str,
        top_k: Optional[int] = None,
        filters: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[SearchHit]:
        """
        Search a repository for the documents closest to a query.

        Args:
            repository: Repository name (inactive repositories are searchable)
            query_text: Query text
            top_k: Maximum number of documents to return
            filters: Payload metadata filters ({key: value} or {key: [values]})
            timeout: Per-call timeout for backend and store calls

        Returns:
            SearchHits ordered by descending score, ties by ascending vector id

        Raises:
            InvalidQuery: Empty query, top_k < 1, or malformed filters
            RepositoryNotFound: Unknown repository
            TransientFailure / PermanentFailure: Embedding or store failure
        """
        if not isinstance(query_text, str) or not query_text.strip():
            raise InvalidQuery("Query text is empty")

        top_k = self.default_top_k if top_k is None else top_k
        if top_k < 1:
            raise InvalidQuery(f"top_k must be at least 1, got {top_k}")

        filters = validate_filter(filters)

        repo = self.metadata_store.get_repository(repository)
        if repo is None:
            raise RepositoryNotFound(repository)

        vector = self.router.submit(
            repo.model_id, [query_text.strip()], timeout=timeout, query=True
        )[0]

        fetch_k = top_k * self.overfetch
        hits: list[SearchHit] = []
        for _ in range(MAX_FETCH_ROUNDS):
            raw = call_store(
                self.vector_index.query,
                repo.collection_name,
                vector,
                fetch_k,
                filters,
                timeout=timeout if timeout is not None else self.store_timeout,
                max_retries=self.store_max_retries,
                min_wait=self.store_retry_min_wait,
                max_wait=self.store_retry_max_wait,
            )
            hits = self._enrich(repo, self._best_per_document(raw))
            if len(hits) >= top_k or len(raw) < fetch_k:
                break
            fetch_k *= 2

        logger.debug(
            f"Search in {repo.name}: {len(hits[:top_k])} hits for query "
            f"'{query_text[:40]}' (top_k={top_k})"
        )
        return hits[:top_k]

    @staticmethod
    def _best_per_document(raw: list[VectorHit]) -> list[VectorHit]:
        ordered = sorted(raw, key=lambda h: (-h.score, h.vector_id))
        seen: set[str] = set()
        best = []
        for hit in ordered:
            document_id = hit.document_id
            if document_id is None or document_id in seen:
                continue
            seen.add(document_id)
            best.append(hit)
        return best

    def _enrich(self, repo: Repository, candidates: list[VectorHit]) -> list[SearchHit]:
        documents = self.metadata_store.get_documents([h.document_id for h in candidates])

        hits = []
        for candidate in candidates:
            document = documents.get(candidate.document_id)
            if document is None or document.repository != repo.name:
                logger.warning(
                    f"Dropping hit {candidate.vector_id}: document "
                    f"{candidate.document_id[:12]} is missing"
                )
                continue
            if document.status != DocumentStatus.INDEXED:
                logger.debug(
                    f"Dropping hit {candidate.vector_id}: document is {document.status_label}"
                )
                continue

            hits.append(
                SearchHit(
                    document_id=document.id,
                    repository=repo.name,
                    score=candidate.score,
                    metadata=document.metadata,
                    vector_id=candidate.vector_id,
                    chunk_sequence=candidate.chunk_sequence or 0,
                )
            )
        return hits
