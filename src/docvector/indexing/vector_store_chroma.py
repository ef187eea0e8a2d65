"""
Chroma Vector Store Module - ChromaDB-backed vector index.
==========================================================

Persistent local vector storage through ChromaDB:
- One Chroma collection per repository
- Distance space chosen from the repository metric (cosine, ip, l2)
- Payload metadata filtering through Chroma `where` clauses

Embeddings are always computed by the service; Chroma never embeds text
itself.
"""

import math
import threading
from pathlib import Path
from typing import Any, Optional

import chromadb
from chromadb.config import Settings as ChromaSettings
from chromadb.errors import ChromaError

from docvector.indexing.vector_store import (
    VectorFilter,
    VectorIndexAdapter,
    check_dimensions,
    rank_hits,
    validate_filter,
)
from docvector.shared.errors import StoreRejected, StoreUnavailable
from docvector.shared.logging import get_logger
from docvector.shared.schemas import DistanceMetric, IndexEntry, VectorHit
from docvector.shared.utils import ensure_directory

logger = get_logger(__name__)


CHROMA_SPACES = {
    DistanceMetric.COSINE: "cosine",
    DistanceMetric.DOT: "ip",
    DistanceMetric.EUCLIDEAN: "l2",
}

# Chroma limits the size of a single add/upsert call
UPSERT_BATCH_SIZE = 500

# Extra neighbors requested so ties at the top_k boundary are ordered by id
TIE_MARGIN = 8


class ChromaVectorIndex(VectorIndexAdapter):
    """
    ChromaDB wrapper implementing VectorIndexAdapter.

    Example:
        >>> index = ChromaVectorIndex(persist_directory=Path("data/index"))
        >>> index.create_collection("docs", 384)
        >>> index.upsert("docs", entries)
        >>> hits = index.query("docs", vector, top_k=5)
    """

    def __init__(
        self,
        persist_directory: Optional[Path] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize the Chroma index.

        Args:
            persist_directory: Directory for persistent storage
            client: Pre-built Chroma client (e.g. chromadb.EphemeralClient())
        """
        if client is None:
            if persist_directory is None:
                raise ValueError("persist_directory is required when no client is given")
            ensure_directory(persist_directory)
            client = chromadb.PersistentClient(
                path=str(persist_directory),
                settings=ChromaSettings(
                    anonymized_telemetry=False,
                    allow_reset=True,
                ),
            )

        self.persist_directory = persist_directory
        self._client = client
        self._collections: dict[str, Any] = {}
        self._lock = threading.Lock()

        logger.info(f"Chroma vector index initialized: persist_dir={self.persist_directory}")

    @property
    def store_name(self) -> str:
        return "chroma"

    def _collection(self, name: str):
        with self._lock:
            cached = self._collections.get(name)
        if cached is not None:
            return cached

        try:
            collection = self._client.get_collection(name=name)
        except (ValueError, ChromaError) as e:
            raise StoreRejected(f"Unknown collection: {name}") from e

        with self._lock:
            self._collections[name] = collection
        return collection

    def _existing(self, name: str):
        try:
            return self._client.get_collection(name=name)
        except (ValueError, ChromaError):
            return None

    @staticmethod
    def _dimension_of(collection) -> Optional[int]:
        metadata = collection.metadata or {}
        value = metadata.get("dimension")
        return int(value) if value is not None else None

    def create_collection(
        self,
        name: str,
        dimension: int,
        metric: DistanceMetric = DistanceMetric.COSINE,
    ) -> None:
        space = CHROMA_SPACES[DistanceMetric(metric)]
        try:
            # Metadata of an existing collection is left as created
            collection = self._existing(name)
            if collection is None:
                collection = self._client.create_collection(
                    name=name,
                    metadata={"hnsw:space": space, "dimension": dimension},
                )
        except (ValueError, ChromaError) as e:
            raise StoreRejected(f"Chroma rejected collection {name}: {e}") from e
        except (OSError, RuntimeError) as e:
            raise StoreUnavailable(f"Chroma unavailable: {e}") from e

        existing = self._dimension_of(collection)
        if existing is not None and existing != dimension:
            raise StoreRejected(
                f"Collection {name} exists with dimension {existing}, requested {dimension}"
            )

        with self._lock:
            self._collections[name] = collection

        logger.info(
            f"Chroma collection ready: {name} (dim={dimension}, space={space}, "
            f"existing_count={collection.count()})"
        )

    def upsert(self, collection: str, entries: list[IndexEntry]) -> None:
        if not entries:
            return

        target = self._collection(collection)
        expected = self._dimension_of(target)
        if expected is not None:
            check_dimensions(collection, expected, (e.vector for e in entries))

        for i in range(0, len(entries), UPSERT_BATCH_SIZE):
            batch = entries[i : i + UPSERT_BATCH_SIZE]
            try:
                target.upsert(
                    ids=[e.vector_id for e in batch],
                    embeddings=[e.vector for e in batch],
                    metadatas=[e.payload for e in batch],
                )
            except (ValueError, ChromaError) as e:
                raise StoreRejected(f"Chroma rejected upsert into {collection}: {e}") from e
            except (OSError, RuntimeError) as e:
                raise StoreUnavailable(f"Chroma unavailable: {e}") from e

            logger.debug(f"Upserted batch {i // UPSERT_BATCH_SIZE + 1} into {collection}")

    def fetch(self, collection: str, vector_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not vector_ids:
            return {}

        target = self._collection(collection)
        try:
            results = target.get(ids=list(vector_ids), include=["metadatas"])
        except (ValueError, ChromaError) as e:
            raise StoreRejected(f"Chroma rejected fetch from {collection}: {e}") from e
        except (OSError, RuntimeError) as e:
            raise StoreUnavailable(f"Chroma unavailable: {e}") from e

        metadatas = results.get("metadatas") or []
        return {
            vid: dict(metadatas[i] or {}) if i < len(metadatas) else {}
            for i, vid in enumerate(results.get("ids") or [])
        }

    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int,
        filters: Optional[VectorFilter] = None,
    ) -> list[VectorHit]:
        filters = validate_filter(filters)
        target = self._collection(collection)

        expected = self._dimension_of(target)
        if expected is not None:
            check_dimensions(collection, expected, [vector])

        try:
            available = target.count()
            if available == 0:
                return []
            results = target.query(
                query_embeddings=[vector],
                n_results=min(top_k + TIE_MARGIN, available),
                where=self._build_where_clause(filters) if filters else None,
                include=["metadatas", "distances"],
            )
        except (ValueError, ChromaError) as e:
            raise StoreRejected(f"Chroma rejected query on {collection}: {e}") from e
        except (OSError, RuntimeError) as e:
            raise StoreUnavailable(f"Chroma unavailable: {e}") from e

        space = (target.metadata or {}).get("hnsw:space", "cosine")
        return rank_hits(self._results_to_hits(results, space), top_k)

    def delete(self, collection: str, vector_ids: list[str]) -> int:
        if not vector_ids:
            return 0

        target = self._collection(collection)
        try:
            target.delete(ids=list(vector_ids))
        except (ValueError, ChromaError) as e:
            raise StoreRejected(f"Chroma rejected delete from {collection}: {e}") from e
        except (OSError, RuntimeError) as e:
            raise StoreUnavailable(f"Chroma unavailable: {e}") from e

        logger.debug(f"Deleted {len(vector_ids)} entries from {collection}")
        return len(vector_ids)

    def count(self, collection: str) -> int:
        target = self._collection(collection)
        try:
            return target.count()
        except (OSError, RuntimeError) as e:
            raise StoreUnavailable(f"Chroma unavailable: {e}") from e

    def _build_where_clause(self, filters: VectorFilter) -> dict[str, Any]:
        """Build ChromaDB where clause from filters."""
        conditions = []

        for key, value in filters.items():
            if isinstance(value, list):
                conditions.append({key: {"$in": value}})
            else:
                conditions.append({key: value})

        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    def _results_to_hits(self, results: dict, space: str) -> list[VectorHit]:
        """Convert ChromaDB results to VectorHit objects."""
        if not results or not results.get("ids") or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        metadatas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []

        hits = []
        for i, vector_id in enumerate(ids):
            distance = distances[i] if i < len(distances) else 0.0
            # cosine and ip distances are 1 - similarity; l2 is squared distance
            if space == "l2":
                score = -math.sqrt(max(distance, 0.0))
            else:
                score = 1.0 - distance
            hits.append(
                VectorHit(
                    vector_id=vector_id,
                    score=float(score),
                    payload=dict(metadatas[i] or {}) if i < len(metadatas) else {},
                )
            )
        return hits

    def get_info(self) -> dict:
        info = super().get_info()
        info["persist_directory"] = str(self.persist_directory) if self.persist_directory else None
        return info
