"""
Tests for the Metadata Store.
=============================

Tests for:
- Document rows: upsert, status transitions, paging, stale listing
- Repository rows: create, update rules, deactivation
- Error translation to MetadataUnavailable
"""

from datetime import timedelta
from unittest.mock import patch

import pytest


def _document(doc_id: str, repository: str = "docs", **kwargs):
    from docvector.shared.schemas import Document

    kwargs.setdefault("content", f"content of {doc_id}")
    return Document(id=doc_id, repository=repository, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Document Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestDocuments:
    """Tests for document rows."""

    def test_upsert_and_get(self, metadata_store, repository):
        """Test that every document field survives a round trip."""
        from docvector.shared.schemas import DocumentStatus

        metadata_store.upsert_document(
            _document("d1", metadata={"lang": "en", "tags": ["a"]}, boundaries=[3, 7])
        )

        stored = metadata_store.get_document("d1")

        assert stored.repository == "docs"
        assert stored.content == "content of d1"
        assert stored.metadata == {"lang": "en", "tags": ["a"]}
        assert stored.boundaries == [3, 7]
        assert stored.status == DocumentStatus.PENDING
        assert stored.created_at.tzinfo is not None

    def test_upsert_replaces_existing_row(self, metadata_store, repository):
        from docvector.shared.schemas import DocumentStatus

        metadata_store.upsert_document(_document("d1", chunk_count=2))
        metadata_store.upsert_document(
            _document("d1", metadata={"v": 2}, status=DocumentStatus.EMBEDDING, chunk_count=5)
        )

        stored = metadata_store.get_document("d1")

        assert stored.metadata == {"v": 2}
        assert stored.status == DocumentStatus.EMBEDDING
        assert stored.chunk_count == 5

    def test_get_missing_document(self, metadata_store):
        assert metadata_store.get_document("missing") is None

    def test_get_documents_skips_missing(self, metadata_store, repository):
        metadata_store.upsert_document(_document("d1"))
        metadata_store.upsert_document(_document("d2"))

        found = metadata_store.get_documents(["d2", "d1", "missing", "d1"])

        assert sorted(found) == ["d1", "d2"]
        assert metadata_store.get_documents([]) == {}

    def test_failure_reason_only_while_failed(self, metadata_store, repository):
        """Test that leaving FAILED clears the failure reason."""
        from docvector.shared.schemas import DocumentStatus

        metadata_store.upsert_document(_document("d1"))

        failed = metadata_store.set_status("d1", DocumentStatus.FAILED, reason="store-unavailable")
        assert failed.status_label == "failed(store-unavailable)"

        indexed = metadata_store.set_status("d1", DocumentStatus.INDEXED, chunk_count=3)
        assert indexed.failure_reason is None
        assert indexed.chunk_count == 3

    def test_set_status_missing_document(self, metadata_store):
        from docvector.shared.errors import DocumentNotFound
        from docvector.shared.schemas import DocumentStatus

        with pytest.raises(DocumentNotFound):
            metadata_store.set_status("missing", DocumentStatus.INDEXED)

    def test_delete_document(self, metadata_store, repository):
        from docvector.shared.errors import DocumentNotFound

        metadata_store.upsert_document(_document("d1"))
        metadata_store.delete_document("d1")

        assert metadata_store.get_document("d1") is None
        with pytest.raises(DocumentNotFound):
            metadata_store.delete_document("d1")

    def test_list_by_repository_pages(self, metadata_store, repository):
        """Test offset/limit paging and status filtering."""
        from docvector.shared.schemas import DocumentStatus

        for i in range(5):
            metadata_store.upsert_document(_document(f"d{i}"))
        metadata_store.set_status("d3", DocumentStatus.INDEXED)

        first = metadata_store.list_by_repository("docs", offset=0, limit=2)
        last = metadata_store.list_by_repository("docs", offset=4, limit=2)
        indexed = metadata_store.list_by_repository("docs", status=DocumentStatus.INDEXED)

        assert first.total == 5
        assert [d.id for d in first.items] == ["d0", "d1"]
        assert first.has_more
        assert [d.id for d in last.items] == ["d4"]
        assert not last.has_more
        assert [d.id for d in indexed.items] == ["d3"]
        assert metadata_store.list_by_repository("other").total == 0

    def test_list_stale(self, metadata_store, repository):
        """Test that only pending/embedding rows older than the cutoff are listed."""
        from docvector.shared.schemas import DocumentStatus, utcnow

        metadata_store.upsert_document(_document("pending"))
        metadata_store.upsert_document(_document("embedding", status=DocumentStatus.EMBEDDING))
        metadata_store.upsert_document(_document("indexed", status=DocumentStatus.INDEXED))
        statuses = [DocumentStatus.PENDING, DocumentStatus.EMBEDDING]

        later = utcnow() + timedelta(seconds=5)
        earlier = utcnow() - timedelta(hours=1)

        stale = metadata_store.list_stale(statuses, later)
        assert sorted(d.id for d in stale) == ["embedding", "pending"]
        assert metadata_store.list_stale(statuses, earlier) == []
        assert len(metadata_store.list_stale(statuses, later, limit=1)) == 1

    def test_counts(self, metadata_store, repository):
        from docvector.shared.schemas import DocumentStatus

        metadata_store.upsert_document(_document("d1"))
        metadata_store.upsert_document(_document("d2", status=DocumentStatus.INDEXED))

        assert metadata_store.count_documents("docs") == 2
        assert metadata_store.count_documents("docs", DocumentStatus.INDEXED) == 1
        assert metadata_store.status_counts("docs") == {
            "pending": 1,
            "embedding": 0,
            "indexed": 1,
            "failed": 0,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Repository Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestRepositories:
    """Tests for repository rows."""

    def test_create_and_get(self, metadata_store, repository):
        from docvector.shared.schemas import DistanceMetric

        stored = metadata_store.get_repository("docs")

        assert stored.model_id == "fake-model"
        assert stored.dimensions == 384
        assert stored.metric == DistanceMetric.COSINE
        assert stored.active

    def test_duplicate_name_conflicts(self, metadata_store, repository):
        from docvector.shared.errors import RepositoryConflict

        with pytest.raises(RepositoryConflict):
            metadata_store.create_repository(repository)

    def test_deactivate(self, metadata_store, repository):
        """Test that deactivated repositories drop out of the active listing."""
        from docvector.shared.errors import RepositoryNotFound

        metadata_store.deactivate_repository("docs")

        assert not metadata_store.get_repository("docs").active
        assert metadata_store.list_repositories(include_inactive=False) == []
        assert [r.name for r in metadata_store.list_repositories()] == ["docs"]
        with pytest.raises(RepositoryNotFound):
            metadata_store.deactivate_repository("missing")

    def test_update_before_documents(self, metadata_store, repository):
        updated = metadata_store.update_repository("docs", chunk_size=200, chunk_overlap=20)

        assert updated.chunk_size == 200
        assert updated.chunk_overlap == 20

    def test_update_refused_once_documents_exist(self, metadata_store, repository):
        """Test that the model binding is fixed once documents are stored."""
        from docvector.shared.errors import RepositoryConflict

        metadata_store.upsert_document(_document("d1"))

        with pytest.raises(RepositoryConflict):
            metadata_store.update_repository("docs", model_id="other-model")
        assert metadata_store.get_repository("docs").model_id == "fake-model"

    def test_update_unknown_field(self, metadata_store, repository):
        from docvector.shared.errors import RepositoryConflict

        with pytest.raises(RepositoryConflict):
            metadata_store.update_repository("docs", name="renamed")


# ─────────────────────────────────────────────────────────────────────────────
# Engine Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestEngine:
    """Tests for engine setup and error translation."""

    def test_in_memory_database(self):
        from docvector.shared.schemas import Repository
        from docvector.storage.metadata_store import SqlMetadataStore

        store = SqlMetadataStore("sqlite:///:memory:")
        store.create_repository(Repository(name="mem", model_id="m", dimensions=8))

        assert store.get_repository("mem").dimensions == 8
        store.close()

    def test_creates_database_directory(self, temp_dir):
        from docvector.storage.metadata_store import SqlMetadataStore

        store = SqlMetadataStore(f"sqlite:///{temp_dir / 'nested' / 'dir' / 'meta.db'}")

        assert (temp_dir / "nested" / "dir").is_dir()
        store.close()

    def test_database_errors_become_metadata_unavailable(self, metadata_store):
        """Test that SQLAlchemy errors surface as MetadataUnavailable."""
        from sqlalchemy.exc import OperationalError

        from docvector.shared.errors import MetadataUnavailable

        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        with patch("sqlalchemy.orm.Session.get", side_effect=error):
            with pytest.raises(MetadataUnavailable):
                metadata_store.get_document("d1")
