"""
docvector - Document-to-Vector Indexing Service
===============================================

Accepts documents, converts them to embeddings with one of several
configurable model backends, makes them searchable through a pluggable
vector index, and keeps a durable metadata record of every document and
its indexing state.

The ingestion coordinator keeps the vector index and the metadata store
consistent without a shared transaction: writes happen in a fixed order
with idempotent keys, and a reconciliation sweep completes documents that
were interrupted mid-pipeline.
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Public API - lazy imports to avoid circular dependencies and speed up startup
__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Main modules (imported on demand)
    "shared",
    "indexing",
    "storage",
    "ingestion",
    "retrieval",
    "service",
    "cli",
]
