"""
Tests Package - Unit and integration tests for docvector.
=========================================================

Test modules:
- test_shared: Normalization, ids, schemas and errors
- test_config: Settings loading and logging setup
- test_chunker: Chunk windows and caller boundaries
- test_backends: Local and remote model backends
- test_router: Admission control, batching and retries
- test_vector_store: Vector index adapters
- test_metadata_store: SQL metadata store
- test_ingestion: Ingestion coordinator, resume and delete
- test_query: Search and enrichment
- test_reconciler: Reconciliation sweeper
- test_service: Service facade and wiring
- test_cli: Command-line interface

Run tests with:
    pytest tests/
    pytest tests/ -m "not slow and not integration"
"""
