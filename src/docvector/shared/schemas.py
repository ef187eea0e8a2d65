"""
Schemas Module - Pydantic data models for the service.
======================================================

Defines all data contracts used across the service:
- Repository and document records (mirrors of the metadata store rows)
- Chunks, embeddings and index entries flowing through ingestion
- Vector and search hits flowing through queries
- Result envelopes returned by the ingestion API
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from docvector.shared.utils import compute_hash, generate_vector_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class DocumentStatus(str, Enum):
    """
    Document indexing lifecycle.

    PENDING: row recorded, pipeline not started
    EMBEDDING: chunks are being embedded and written to the vector store
    INDEXED: every chunk has an index entry
    FAILED: pipeline stopped; failure_reason says why
    """

    PENDING = "pending"
    EMBEDDING = "embedding"
    INDEXED = "indexed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Reasons recorded alongside FAILED."""

    EMBEDDING_TRANSIENT = "embedding-transient"
    EMBEDDING_PERMANENT = "embedding-permanent"
    EMBEDDING_BACKPRESSURE = "embedding-backpressure"
    STORE_UNAVAILABLE = "store-unavailable"
    STORE_REJECTED = "store-rejected"
    CONFIGURATION = "configuration"
    INTERNAL = "internal-error"


class DistanceMetric(str, Enum):
    """Similarity metric of a vector collection."""

    COSINE = "cosine"
    DOT = "dot"
    EUCLIDEAN = "euclidean"


# ─────────────────────────────────────────────────────────────────────────────
# Repository and Document
# ─────────────────────────────────────────────────────────────────────────────


class Repository(BaseModel):
    """A logical index namespace binding a model and a vector collection."""

    name: str = Field(..., min_length=1, max_length=128)
    model_id: str = Field(..., description="Embedding model identifier")
    dimensions: int = Field(..., gt=0, description="Vector dimensionality")
    metric: DistanceMetric = DistanceMetric.COSINE
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    index_store: str = Field(default="chroma", description="Vector store kind")
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def collection_name(self) -> str:
        """Vector store collection backing this repository."""
        return self.name


class Document(BaseModel):
    """
    A unit of content submitted for indexing.

    The id is the content hash (see generate_document_id); `boundaries`
    holds caller-supplied cut offsets so a resumed pipeline reproduces the
    original chunking.
    """

    id: str
    repository: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: DocumentStatus = DocumentStatus.PENDING
    failure_reason: Optional[str] = None
    chunk_count: int = 0
    boundaries: Optional[list[int]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def status_label(self) -> str:
        """Status as shown to users, e.g. 'failed(store-unavailable)'."""
        return format_status(self.status, self.failure_reason)

    @property
    def vector_ids(self) -> list[str]:
        """Vector ids of every chunk recorded for this document."""
        return [generate_vector_id(self.id, i) for i in range(self.chunk_count)]


def format_status(status: DocumentStatus, reason: Optional[str] = None) -> str:
    status = DocumentStatus(status)
    if status == DocumentStatus.FAILED and reason:
        return f"{status.value}({reason})"
    return status.value


# ─────────────────────────────────────────────────────────────────────────────
# Ingestion Models
# ─────────────────────────────────────────────────────────────────────────────

# Payload keys owned by the service; user metadata may not use them.
PAYLOAD_DOCUMENT_ID = "document_id"
PAYLOAD_CHUNK_SEQUENCE = "chunk_sequence"
PAYLOAD_TEXT_HASH = "text_hash"
RESERVED_PAYLOAD_KEYS = frozenset(
    {PAYLOAD_DOCUMENT_ID, PAYLOAD_CHUNK_SEQUENCE, PAYLOAD_TEXT_HASH}
)


class Chunk(BaseModel):
    """A deterministic sub-span of a document's normalized content."""

    document_id: str
    sequence: int = Field(..., ge=0)
    text: str
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    vector_id: str
    text_hash: str

    @classmethod
    def create(
        cls,
        document_id: str,
        sequence: int,
        text: str,
        start: int,
        end: int,
    ) -> "Chunk":
        """Create a chunk, deriving its vector id and text hash."""
        return cls(
            document_id=document_id,
            sequence=sequence,
            text=text,
            start=start,
            end=end,
            vector_id=generate_vector_id(document_id, sequence),
            text_hash=compute_hash(text),
        )


class Embedding(BaseModel):
    """Vector for one chunk. Held only until it is written to the store."""

    vector: list[float]
    model_id: str

    @property
    def dimensions(self) -> int:
        return len(self.vector)


class IndexEntry(BaseModel):
    """One record in the vector store, keyed by vector id."""

    vector_id: str
    vector: list[float]
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_chunk(
        cls,
        chunk: Chunk,
        embedding: Embedding,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "IndexEntry":
        """
        Build an entry with the minimal payload needed to map a hit back
        to its document, plus scalar metadata usable by store-side filters.
        """
        return cls(
            vector_id=chunk.vector_id,
            vector=embedding.vector,
            payload=build_payload(chunk, metadata),
        )


def build_payload(chunk: Chunk, metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Payload stored with a chunk's vector."""
    payload = filterable_metadata(metadata or {})
    payload[PAYLOAD_DOCUMENT_ID] = chunk.document_id
    payload[PAYLOAD_CHUNK_SEQUENCE] = chunk.sequence
    payload[PAYLOAD_TEXT_HASH] = chunk.text_hash
    return payload


def filterable_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten metadata to scalar values accepted by every vector store.

    None values are dropped; non-scalar values are JSON encoded.
    """
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        else:
            flat[key] = json.dumps(value, sort_keys=True, default=str)
    return flat


# ─────────────────────────────────────────────────────────────────────────────
# Query Models
# ─────────────────────────────────────────────────────────────────────────────


class VectorHit(BaseModel):
    """Raw nearest-neighbor hit from a vector store."""

    vector_id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def document_id(self) -> Optional[str]:
        return self.payload.get(PAYLOAD_DOCUMENT_ID)

    @property
    def chunk_sequence(self) -> Optional[int]:
        value = self.payload.get(PAYLOAD_CHUNK_SEQUENCE)
        return int(value) if value is not None else None


class SearchHit(BaseModel):
    """A search result enriched from the metadata store."""

    document_id: str
    repository: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)
    vector_id: str
    chunk_sequence: int


# ─────────────────────────────────────────────────────────────────────────────
# Result Envelopes
# ─────────────────────────────────────────────────────────────────────────────


class IngestResult(BaseModel):
    """Definitive outcome of an ingest call."""

    document_id: str
    repository: str
    status: DocumentStatus
    failure_reason: Optional[str] = None
    chunk_count: int = 0
    skipped: bool = Field(
        default=False, description="True when an already-indexed document short-circuited"
    )
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DocumentStatus.INDEXED

    @property
    def status_label(self) -> str:
        return format_status(self.status, self.failure_reason)


class DeleteResult(BaseModel):
    """Outcome of a delete call."""

    document_id: str
    repository: str
    vectors_removed: int = 0
    deleted: bool = True


class Page(BaseModel):
    """A page of documents from list_by_repository."""

    items: list[Document] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 50

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total
