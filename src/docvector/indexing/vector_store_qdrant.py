"""
Qdrant Vector Store Module - Qdrant-backed vector index.
========================================================

Remote vector storage through a Qdrant server:
- One Qdrant collection per repository, vector size fixed at creation
- Point ids are the UUID-formatted vector ids
- Payload filters become must-conditions (MatchValue / MatchAny)

Error translation:
- connection failures, timeouts, 429 and 5xx -> StoreUnavailable
- other 4xx (unknown collection, wrong vector size) -> StoreRejected
"""

from typing import Any, Optional

import httpx
from pydantic import ValidationError
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    Range,
    VectorParams,
)

from docvector.indexing.vector_store import (
    VectorFilter,
    VectorIndexAdapter,
    check_dimensions,
    rank_hits,
    validate_filter,
)
from docvector.shared.errors import (
    DocVectorError,
    InvalidQuery,
    StoreRejected,
    StoreUnavailable,
)
from docvector.shared.logging import get_logger
from docvector.shared.schemas import PAYLOAD_DOCUMENT_ID, DistanceMetric, IndexEntry, VectorHit

logger = get_logger(__name__)


QDRANT_DISTANCES = {
    DistanceMetric.COSINE: Distance.COSINE,
    DistanceMetric.DOT: Distance.DOT,
    DistanceMetric.EUCLIDEAN: Distance.EUCLID,
}

TIE_MARGIN = 8


def _translate(error: Exception, action: str) -> DocVectorError:
    if isinstance(error, UnexpectedResponse):
        code = error.status_code
        if code is not None and (code == 429 or code >= 500):
            return StoreUnavailable(f"Qdrant {action} failed ({code}): {error}")
        return StoreRejected(f"Qdrant rejected {action} ({code}): {error}")
    return StoreUnavailable(f"Qdrant {action} failed: {error}")


_QDRANT_ERRORS = (
    UnexpectedResponse,
    ResponseHandlingException,
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)


def _uniform(values: list, kind: type) -> bool:
    # bool is an int subclass but Qdrant keeps booleans apart
    return all(type(v) is kind for v in values)


def _match_condition(key: str, value: Any) -> FieldCondition:
    if isinstance(value, float):
        return FieldCondition(key=key, range=Range(gte=value, lte=value))
    return FieldCondition(key=key, match=MatchValue(value=value))


class QdrantVectorIndex(VectorIndexAdapter):
    """
    Qdrant client wrapper implementing VectorIndexAdapter.

    Example:
        >>> index = QdrantVectorIndex(url="http://localhost:6333")
        >>> index.create_collection("docs", 384)
        >>> index.upsert("docs", entries)
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: Optional[str] = None,
        timeout: int = 10,
        client: Optional[Any] = None,
    ):
        """
        Initialize the Qdrant index.

        Args:
            url: Qdrant server address
            api_key: Optional API key
            timeout: Request timeout in seconds
            client: Pre-built client (e.g. QdrantClient(":memory:"))
        """
        self.url = url
        self._client = client or QdrantClient(url=url, api_key=api_key, timeout=timeout)
        self._dimensions: dict[str, int] = {}
        self._metrics: dict[str, DistanceMetric] = {}

        logger.info(f"Qdrant vector index initialized: url={url}")

    @property
    def store_name(self) -> str:
        return "qdrant"

    def _describe(self, collection: str) -> tuple[int, DistanceMetric]:
        """Get (dimension, metric) for a collection, caching the answer."""
        if collection in self._dimensions:
            return self._dimensions[collection], self._metrics[collection]

        try:
            info = self._client.get_collection(collection_name=collection)
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"describe {collection}") from e
        except ValueError as e:
            raise StoreRejected(f"Unknown collection: {collection}") from e

        params = info.config.params.vectors
        reverse = {v: k for k, v in QDRANT_DISTANCES.items()}
        self._dimensions[collection] = params.size
        self._metrics[collection] = reverse.get(params.distance, DistanceMetric.COSINE)
        return self._dimensions[collection], self._metrics[collection]

    def create_collection(
        self,
        name: str,
        dimension: int,
        metric: DistanceMetric = DistanceMetric.COSINE,
    ) -> None:
        metric = DistanceMetric(metric)
        try:
            exists = self._client.collection_exists(collection_name=name)
            if not exists:
                self._client.create_collection(
                    collection_name=name,
                    vectors_config=VectorParams(size=dimension, distance=QDRANT_DISTANCES[metric]),
                )
                self._client.create_payload_index(
                    collection_name=name,
                    field_name=PAYLOAD_DOCUMENT_ID,
                    field_schema=PayloadSchemaType.KEYWORD,
                )
                logger.info(f"Created Qdrant collection: {name} (dim={dimension}, metric={metric})")
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"create collection {name}") from e

        existing, _ = self._describe(name)
        if existing != dimension:
            raise StoreRejected(
                f"Collection {name} exists with dimension {existing}, requested {dimension}"
            )

    def upsert(self, collection: str, entries: list[IndexEntry]) -> None:
        if not entries:
            return

        dimension, _ = self._describe(collection)
        check_dimensions(collection, dimension, (e.vector for e in entries))

        points = [
            PointStruct(id=e.vector_id, vector=e.vector, payload=e.payload) for e in entries
        ]
        try:
            self._client.upsert(collection_name=collection, points=points, wait=True)
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"upsert into {collection}") from e

        logger.debug(f"Upserted {len(points)} points into {collection}")

    def fetch(self, collection: str, vector_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not vector_ids:
            return {}
        try:
            records = self._client.retrieve(
                collection_name=collection,
                ids=list(vector_ids),
                with_payload=True,
                with_vectors=False,
            )
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"fetch from {collection}") from e

        return {str(record.id): dict(record.payload or {}) for record in records}

    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int,
        filters: Optional[VectorFilter] = None,
    ) -> list[VectorHit]:
        filters = validate_filter(filters)
        dimension, metric = self._describe(collection)
        check_dimensions(collection, dimension, [vector])
        query_filter = self._build_filter(filters) if filters else None

        try:
            response = self._client.query_points(
                collection_name=collection,
                query=vector,
                limit=top_k + TIE_MARGIN,
                query_filter=query_filter,
                with_payload=True,
            )
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"query on {collection}") from e

        hits = []
        for point in response.points:
            # Qdrant reports euclidean distance, lower is better
            score = -point.score if metric == DistanceMetric.EUCLIDEAN else point.score
            hits.append(
                VectorHit(
                    vector_id=str(point.id),
                    score=float(score),
                    payload=dict(point.payload or {}),
                )
            )
        return rank_hits(hits, top_k)

    def delete(self, collection: str, vector_ids: list[str]) -> int:
        if not vector_ids:
            return 0
        try:
            self._client.delete(
                collection_name=collection,
                points_selector=PointIdsList(points=list(vector_ids)),
                wait=True,
            )
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"delete from {collection}") from e

        logger.debug(f"Deleted {len(vector_ids)} points from {collection}")
        return len(vector_ids)

    def count(self, collection: str) -> int:
        try:
            return self._client.count(collection_name=collection, exact=True).count
        except _QDRANT_ERRORS as e:
            raise _translate(e, f"count on {collection}") from e

    def _build_filter(self, filters: VectorFilter) -> Filter:
        """
        Translate a validated filter into a Qdrant Filter.

        MatchValue and MatchAny only take strings and integers, so floats
        become closed ranges and lists of any other mix become a `should`
        of single-value conditions.

        Raises:
            InvalidQuery: If Qdrant cannot express a value
        """
        try:
            conditions: list[Any] = []
            for key, value in filters.items():
                if not isinstance(value, list):
                    conditions.append(_match_condition(key, value))
                elif _uniform(value, str) or _uniform(value, int):
                    conditions.append(FieldCondition(key=key, match=MatchAny(any=value)))
                else:
                    conditions.append(Filter(should=[_match_condition(key, v) for v in value]))
            return Filter(must=conditions)
        except ValidationError as e:
            raise InvalidQuery(f"Filter cannot be expressed for Qdrant: {e}") from e

    def close(self) -> None:
        self._client.close()

    def get_info(self) -> dict:
        info = super().get_info()
        info["url"] = self.url
        return info
