"""
Tests for the Index Service.
============================

Tests for:
- Repository administration
- End-to-end ingest, search, delete through the public API
- Wiring from settings
"""

from unittest.mock import patch

import pytest

from tests.fakes import FAKE_DIMENSIONS, FAKE_MODEL


# ─────────────────────────────────────────────────────────────────────────────
# Repository Administration Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestRepositoryAdministration:
    """Tests for creating and managing repositories."""

    def test_create_repository(self, service, vector_index):
        """Test that a repository takes its dimensions from the model."""
        repo = service.create_repository("docs", FAKE_MODEL)

        assert repo.dimensions == FAKE_DIMENSIONS
        assert repo.chunk_size == 50
        assert repo.chunk_overlap == 10
        assert repo.index_store == "memory"
        assert vector_index.count("docs") == 0

    def test_create_with_custom_chunking_and_metric(self, service):
        from docvector.shared.schemas import DistanceMetric

        repo = service.create_repository(
            "points", FAKE_MODEL, metric="euclidean", chunk_size=200, chunk_overlap=0
        )

        assert repo.metric == DistanceMetric.EUCLIDEAN
        assert repo.chunk_size == 200
        assert service.get_repository("points").chunk_overlap == 0

    def test_duplicate_name(self, service):
        from docvector.shared.errors import RepositoryConflict

        service.create_repository("docs", FAKE_MODEL)

        with pytest.raises(RepositoryConflict):
            service.create_repository("docs", FAKE_MODEL)

    @pytest.mark.parametrize("name", ["", "x", "-docs", "docs-", "has space", "a/b"])
    def test_invalid_name(self, service, name):
        from docvector.shared.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            service.create_repository(name, FAKE_MODEL)

    def test_name_length_bounds(self, service):
        from docvector.shared.errors import ConfigurationError

        with pytest.raises(ConfigurationError, match="3-63"):
            service.create_repository("ab", FAKE_MODEL)
        with pytest.raises(ConfigurationError, match="3-63"):
            service.create_repository("a" * 64, FAKE_MODEL)

        assert service.create_repository("abc", FAKE_MODEL).name == "abc"
        assert service.create_repository("a" * 63, FAKE_MODEL).name == "a" * 63

    def test_unknown_model(self, service, vector_index):
        """Test that no collection or row is created for an unknown model."""
        from docvector.shared.errors import ConfigurationError, StoreRejected

        with pytest.raises(ConfigurationError):
            service.create_repository("docs", "no-such-model")

        assert service.list_repositories() == []
        with pytest.raises(StoreRejected):
            vector_index.count("docs")

    def test_invalid_chunking(self, service):
        from docvector.shared.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            service.create_repository("docs", FAKE_MODEL, chunk_size=10, chunk_overlap=10)

    def test_row_not_written_when_collection_fails(self, service, vector_index):
        from docvector.shared.errors import StoreRejected

        with patch.object(vector_index, "create_collection", side_effect=StoreRejected("no")):
            with pytest.raises(StoreRejected):
                service.create_repository("docs", FAKE_MODEL)

        assert service.list_repositories() == []

    def test_get_unknown_repository(self, service):
        from docvector.shared.errors import RepositoryNotFound

        with pytest.raises(RepositoryNotFound):
            service.get_repository("missing")

    def test_deactivate_blocks_ingest_only(self, service):
        """Test that a deactivated repository stays searchable and deletable."""
        from docvector.shared.errors import RepositoryInactive

        service.create_repository("docs", FAKE_MODEL)
        ingested = service.ingest("docs", "the quick brown fox")

        service.deactivate_repository("docs")

        with pytest.raises(RepositoryInactive):
            service.ingest("docs", "another document")
        assert service.search("docs", "fox")[0].document_id == ingested.document_id
        assert service.delete("docs", ingested.document_id).deleted
        assert [r.name for r in service.list_repositories(include_inactive=False)] == []

    def test_repository_stats(self, service, backend):
        from docvector.shared.errors import PermanentFailure

        service.create_repository("docs", FAKE_MODEL)
        indexed = service.ingest("docs", "the quick brown fox jumps over the lazy dog again")
        backend.failures = [PermanentFailure("rejected")]
        service.ingest("docs", "a document that fails")

        stats = service.repository_stats("docs")

        assert stats["documents"] == 2
        assert stats["by_status"]["indexed"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["vectors"] == indexed.chunk_count
        assert stats["model_id"] == FAKE_MODEL


# ─────────────────────────────────────────────────────────────────────────────
# End-to-End Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestEndToEnd:
    """Tests for the public ingest/search/delete API."""

    def test_ingest_search_delete(self, service):
        """Test that a deleted document disappears from search."""
        service.create_repository("docs", FAKE_MODEL)
        ingested = service.ingest("docs", "the quick brown fox", metadata={"source": "test"})

        hits = service.search("docs", "quick fox", top_k=1)
        assert [h.document_id for h in hits] == [ingested.document_id]
        assert hits[0].metadata == {"source": "test"}

        service.delete("docs", ingested.document_id)

        assert service.search("docs", "quick fox", top_k=1) == []
        assert service.repository_stats("docs")["vectors"] == 0

    def test_get_and_list_documents(self, service):
        from docvector.shared.errors import DocumentNotFound

        service.create_repository("docs", FAKE_MODEL)
        service.create_repository("notes", FAKE_MODEL)
        ids = [service.ingest("docs", f"document number {i}").document_id for i in range(3)]

        assert service.get_document("docs", ids[0]).status_label == "indexed"
        with pytest.raises(DocumentNotFound):
            service.get_document("notes", ids[0])

        page = service.list_documents("docs", offset=1, limit=1)
        assert page.total == 3
        assert len(page.items) == 1
        assert page.has_more

    def test_list_documents_unknown_repository(self, service):
        from docvector.shared.errors import RepositoryNotFound

        with pytest.raises(RepositoryNotFound):
            service.list_documents("missing")

    def test_reconcile_runs_one_pass(self, service):
        report = service.reconcile()

        assert report.examined == 0


# ─────────────────────────────────────────────────────────────────────────────
# Wiring Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestFromSettings:
    """Tests for IndexService.from_settings()."""

    def test_builds_components(self, settings, temp_dir):
        from docvector.indexing.vector_store import InMemoryVectorIndex
        from docvector.service import IndexService

        with IndexService.from_settings(settings) as service:
            assert isinstance(service.vector_index, InMemoryVectorIndex)
            assert service.router.model_ids() == [FAKE_MODEL]
            assert not service.sweeper.running
            assert service.queries.default_top_k == settings.query.top_k

        assert (temp_dir / "docvector.db").exists()

    def test_starts_sweeper_when_enabled(self, settings):
        from docvector.service import IndexService

        settings.reconciliation.enabled = True
        settings.reconciliation.interval_seconds = 60

        service = IndexService.from_settings(settings)
        try:
            assert service.sweeper.running
        finally:
            service.close()

        assert not service.sweeper.running
