"""
Ingestion Module - Document pipeline and consistency.
=====================================================

- chunker: Deterministic fixed-size / boundary chunking
- ownership: Per-document ownership tokens
- coordinator: chunk -> embed -> index-write -> metadata-commit pipeline
- reconciler: Background completion of interrupted documents
"""

from docvector.ingestion.chunker import Chunker, ChunkerConfig
from docvector.ingestion.coordinator import IngestionCoordinator
from docvector.ingestion.ownership import OwnershipRegistry
from docvector.ingestion.reconciler import ReconciliationSweeper, SweepReport

__all__ = [
    "Chunker",
    "ChunkerConfig",
    "OwnershipRegistry",
    "IngestionCoordinator",
    "ReconciliationSweeper",
    "SweepReport",
]
