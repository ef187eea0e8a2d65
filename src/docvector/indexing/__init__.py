"""
Indexing Module - Model backends, routing and vector storage.
=============================================================

This module handles embedding generation and vector index operations:

- embeddings_base: Abstract interface for model backends
- embeddings_sbert: SBERT (sentence-transformers) local backend
- embeddings_gemini: Gemini API remote backend
- router: Model routing with admission control and retries
- vector_store: Vector index interface, in-memory store and factory
- vector_store_chroma / vector_store_qdrant: store adapters (loaded on demand)

Backend abstraction allows binding each repository to a local or remote
model without changing ingestion or query logic.
"""

from docvector.indexing.embeddings_base import BackendKind, ModelBackend, build_backend
from docvector.indexing.embeddings_sbert import SBERTBackend
from docvector.indexing.embeddings_gemini import GeminiBackend
from docvector.indexing.router import (
    AdmissionController,
    AdmissionLimits,
    AdmissionStats,
    ModelRouter,
)
from docvector.indexing.vector_store import (
    InMemoryVectorIndex,
    VectorIndexAdapter,
    create_vector_index,
)

__all__ = [
    # Backends
    "BackendKind",
    "ModelBackend",
    "build_backend",
    "SBERTBackend",
    "GeminiBackend",
    # Router
    "ModelRouter",
    "AdmissionController",
    "AdmissionLimits",
    "AdmissionStats",
    # Vector Store
    "VectorIndexAdapter",
    "InMemoryVectorIndex",
    "create_vector_index",
]
