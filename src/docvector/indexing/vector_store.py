"""
Vector Store Module - Vector index adapter interface and in-memory store.
=========================================================================

Every vector store the service talks to implements VectorIndexAdapter:

- create_collection: idempotent collection setup (dimension + metric)
- upsert / fetch / delete: keyed by deterministic vector id, idempotent
- query: nearest neighbors, ordered by descending score, ties broken by
  ascending vector id
- count: number of entries in a collection

Scores are "higher is better" for every metric: cosine similarity, dot
product, or negated euclidean distance.

Failures are translated at this boundary:
- StoreUnavailable: transient (connection refused, timeout, 5xx)
- StoreRejected: permanent (dimension mismatch, unknown collection)
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, TypeVar

import numpy as np
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docvector.shared.errors import (
    ConfigurationError,
    InvalidQuery,
    StoreRejected,
    StoreUnavailable,
)
from docvector.shared.logging import get_logger
from docvector.shared.schemas import DistanceMetric, IndexEntry, VectorHit
from docvector.shared.utils import call_with_timeout

if TYPE_CHECKING:
    from docvector.shared.config import Settings

logger = get_logger(__name__)

T = TypeVar("T")

# Filter mapping: {key: value} equality or {key: [v1, v2]} membership, ANDed
VectorFilter = dict[str, Any]


# ─────────────────────────────────────────────────────────────────────────────
# Shared Helpers
# ─────────────────────────────────────────────────────────────────────────────


def validate_filter(filters: Optional[VectorFilter]) -> Optional[VectorFilter]:
    """
    Check a filter mapping and drop empty conditions.

    Raises:
        InvalidQuery: If a value is not a scalar or a list of scalars
    """
    if not filters:
        return None

    cleaned: VectorFilter = {}
    for key, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            values = list(value)
            if not values:
                continue
            for item in values:
                if not isinstance(item, (str, int, float, bool)):
                    raise InvalidQuery(f"Filter values for '{key}' must be scalars")
            cleaned[key] = values
        elif isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            raise InvalidQuery(f"Filter value for '{key}' must be a scalar or a list")
    return cleaned or None


def matches_filter(payload: dict[str, Any], filters: Optional[VectorFilter]) -> bool:
    """Evaluate a validated filter against one payload."""
    if not filters:
        return True
    for key, expected in filters.items():
        if key not in payload:
            return False
        actual = payload[key]
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def rank_hits(hits: Iterable[VectorHit], top_k: int) -> list[VectorHit]:
    """Order by descending score, then ascending vector id, and truncate."""
    return sorted(hits, key=lambda h: (-h.score, h.vector_id))[:top_k]


def check_dimensions(collection: str, expected: int, vectors: Iterable[list[float]]) -> None:
    for vector in vectors:
        if len(vector) != expected:
            raise StoreRejected(
                f"Collection {collection} expects {expected}-dim vectors, got {len(vector)}"
            )


def _bounded_call(
    func: Callable[..., T],
    timeout: Optional[float],
    *args: Any,
    on_abandoned: Optional[Callable[[Future], None]] = None,
) -> T:
    try:
        return call_with_timeout(func, timeout, *args, on_abandoned=on_abandoned)
    except TimeoutError as e:
        raise StoreUnavailable(f"Vector store call timed out: {e}") from e


def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
    max_retries: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
    on_abandoned: Optional[Callable[[Future], None]] = None,
) -> T:
    """
    Call a vector index operation with a timeout, retrying StoreUnavailable.

    Args:
        func: Bound adapter method
        *args: Arguments for func
        timeout: Seconds per attempt (None for no limit)
        max_retries: Retries after the first attempt
        min_wait / max_wait: Exponential backoff bounds in seconds
        on_abandoned: Receives the future of an attempt that timed out while
            still running

    Raises:
        StoreUnavailable: Still unavailable after the last retry
        StoreRejected: Not retried
    """
    retryer = Retrying(
        retry=retry_if_exception_type(StoreUnavailable),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(min=min_wait, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retryer(_bounded_call, func, timeout, *args, on_abandoned=on_abandoned)


# ─────────────────────────────────────────────────────────────────────────────
# Abstract Base Class
# ─────────────────────────────────────────────────────────────────────────────


class VectorIndexAdapter(ABC):
    """
    Abstract base class for vector index stores.

    Implementations must provide all operations below; each must be safe to
    call concurrently from multiple threads.
    """

    @property
    @abstractmethod
    def store_name(self) -> str:
        """Get the store kind identifier (chroma, qdrant, memory)."""
        pass

    @abstractmethod
    def create_collection(
        self,
        name: str,
        dimension: int,
        metric: DistanceMetric = DistanceMetric.COSINE,
    ) -> None:
        """
        Create a collection, or confirm an existing one matches.

        Raises:
            StoreRejected: Existing collection has a different dimension
            StoreUnavailable: Store unreachable
        """
        pass

    @abstractmethod
    def upsert(self, collection: str, entries: list[IndexEntry]) -> None:
        """Insert or replace entries by vector id."""
        pass

    @abstractmethod
    def fetch(self, collection: str, vector_ids: list[str]) -> dict[str, dict[str, Any]]:
        """
        Get payloads of existing entries.

        Returns:
            Mapping of vector id to payload; missing ids are absent
        """
        pass

    @abstractmethod
    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int,
        filters: Optional[VectorFilter] = None,
    ) -> list[VectorHit]:
        """Nearest-neighbor search, best first, ties by ascending vector id."""
        pass

    @abstractmethod
    def delete(self, collection: str, vector_ids: list[str]) -> int:
        """
        Delete entries by vector id. Missing ids are ignored.

        Returns:
            Number of ids submitted for deletion
        """
        pass

    @abstractmethod
    def count(self, collection: str) -> int:
        """Get the number of entries in a collection."""
        pass

    def close(self) -> None:
        """Release client resources. Default is a no-op."""

    def get_info(self) -> dict:
        return {"store": self.store_name}


# ─────────────────────────────────────────────────────────────────────────────
# In-Memory Store
# ─────────────────────────────────────────────────────────────────────────────


class _MemoryCollection:
    def __init__(self, dimension: int, metric: DistanceMetric):
        self.dimension = dimension
        self.metric = metric
        self.vectors: dict[str, np.ndarray] = {}
        self.payloads: dict[str, dict[str, Any]] = {}


class InMemoryVectorIndex(VectorIndexAdapter):
    """
    Brute-force vector index held in process memory.

    Used for tests and single-process deployments without a vector server.

    Example:
        >>> index = InMemoryVectorIndex()
        >>> index.create_collection("docs", 384)
        >>> index.upsert("docs", entries)
        >>> hits = index.query("docs", query_vector, top_k=5)
    """

    def __init__(self):
        self._collections: dict[str, _MemoryCollection] = {}
        self._lock = threading.RLock()

    @property
    def store_name(self) -> str:
        return "memory"

    def _get(self, name: str) -> _MemoryCollection:
        collection = self._collections.get(name)
        if collection is None:
            raise StoreRejected(f"Unknown collection: {name}")
        return collection

    def create_collection(
        self,
        name: str,
        dimension: int,
        metric: DistanceMetric = DistanceMetric.COSINE,
    ) -> None:
        with self._lock:
            existing = self._collections.get(name)
            if existing is not None:
                if existing.dimension != dimension:
                    raise StoreRejected(
                        f"Collection {name} exists with dimension {existing.dimension}, "
                        f"requested {dimension}"
                    )
                return
            self._collections[name] = _MemoryCollection(dimension, DistanceMetric(metric))
        logger.info(f"Created in-memory collection: {name} (dim={dimension}, metric={metric})")

    def upsert(self, collection: str, entries: list[IndexEntry]) -> None:
        if not entries:
            return
        with self._lock:
            target = self._get(collection)
            check_dimensions(collection, target.dimension, (e.vector for e in entries))
            for entry in entries:
                target.vectors[entry.vector_id] = np.asarray(entry.vector, dtype=np.float64)
                target.payloads[entry.vector_id] = dict(entry.payload)

    def fetch(self, collection: str, vector_ids: list[str]) -> dict[str, dict[str, Any]]:
        with self._lock:
            target = self._get(collection)
            return {
                vid: dict(target.payloads[vid]) for vid in vector_ids if vid in target.payloads
            }

    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int,
        filters: Optional[VectorFilter] = None,
    ) -> list[VectorHit]:
        filters = validate_filter(filters)
        with self._lock:
            target = self._get(collection)
            check_dimensions(collection, target.dimension, [vector])
            candidates = [
                (vid, target.vectors[vid], target.payloads[vid])
                for vid in target.vectors
                if matches_filter(target.payloads[vid], filters)
            ]
            metric = target.metric

        if not candidates:
            return []

        query_vec = np.asarray(vector, dtype=np.float64)
        matrix = np.vstack([c[1] for c in candidates])
        scores = _score(matrix, query_vec, metric)

        hits = [
            VectorHit(vector_id=vid, score=float(score), payload=dict(payload))
            for (vid, _, payload), score in zip(candidates, scores)
        ]
        return rank_hits(hits, top_k)

    def delete(self, collection: str, vector_ids: list[str]) -> int:
        with self._lock:
            target = self._get(collection)
            for vid in vector_ids:
                target.vectors.pop(vid, None)
                target.payloads.pop(vid, None)
        return len(vector_ids)

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._get(collection).vectors)


def _score(matrix: np.ndarray, query: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    if metric == DistanceMetric.COSINE:
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        return (matrix @ query) / norms
    if metric == DistanceMetric.DOT:
        return matrix @ query
    return -np.linalg.norm(matrix - query, axis=1)


# ─────────────────────────────────────────────────────────────────────────────
# Factory Function
# ─────────────────────────────────────────────────────────────────────────────


def create_vector_index(settings: "Settings") -> VectorIndexAdapter:
    """
    Create the vector index adapter selected in settings.

    Args:
        settings: Service settings (index_config section)

    Returns:
        VectorIndexAdapter instance

    Raises:
        ConfigurationError: If the store kind is unknown
    """
    store = settings.get_effective_index_store()

    if store == "memory":
        return InMemoryVectorIndex()

    if store == "chroma":
        from docvector.indexing.vector_store_chroma import ChromaVectorIndex

        return ChromaVectorIndex(
            persist_directory=settings.resolve_path(
                settings.index_config.chroma.persist_directory
            ),
        )

    if store == "qdrant":
        from docvector.indexing.vector_store_qdrant import QdrantVectorIndex

        qdrant = settings.index_config.qdrant
        return QdrantVectorIndex(
            url=qdrant.addr,
            api_key=qdrant.api_key or None,
            timeout=qdrant.timeout,
        )

    raise ConfigurationError(
        f"Unknown index store: {store}. Valid options: chroma, qdrant, memory"
    )
