"""
Retrieval Module - Search over indexed repositories.
====================================================

- query: QueryCoordinator (embed query, search index, enrich from metadata)
"""

from docvector.retrieval.query import QueryCoordinator

__all__ = ["QueryCoordinator"]
