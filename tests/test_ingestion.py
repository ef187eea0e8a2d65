"""
Tests for the Ingestion Coordinator.
====================================

Tests for:
- Pipeline: chunk, embed, upsert, status transitions
- Idempotent re-ingestion and resume after interruption
- Failure reasons recorded for backend and store errors
- Delete ordering (vectors first, then the row)
- Per-document ownership under concurrency, including abandoned store calls
- Configuration and unexpected errors recorded before they propagate
"""

import threading
import time
from unittest.mock import patch

import pytest

from tests.fakes import FAKE_DIMENSIONS, FAKE_MODEL, bag_of_words, wait_until

LONG_TEXT = (
    "Vector databases store embeddings of documents. Each document is split into "
    "chunks, every chunk is embedded by a model, and the resulting vectors are "
    "written to a collection together with a small payload."
)


def _expected_chunks(repository, text):
    from docvector.ingestion.chunker import Chunker, ChunkerConfig
    from docvector.shared.utils import generate_document_id, normalize_content

    normalized = normalize_content(text)
    chunker = Chunker(
        ChunkerConfig(chunk_size=repository.chunk_size, chunk_overlap=repository.chunk_overlap)
    )
    return chunker.chunk(generate_document_id(repository.name, normalized), normalized)


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestIngest:
    """Tests for the happy path of ingest()."""

    def test_indexes_document(self, coordinator, metadata_store, vector_index, repository):
        """Test that every chunk gets an index entry and the row ends indexed."""
        from docvector.shared.schemas import DocumentStatus

        chunks = _expected_chunks(repository, LONG_TEXT)
        result = coordinator.ingest("docs", LONG_TEXT, metadata={"lang": "en"})

        assert result.ok
        assert result.status_label == "indexed"
        assert not result.skipped
        assert result.chunk_count == len(chunks) > 1
        assert vector_index.count("docs") == len(chunks)

        document = metadata_store.get_document(result.document_id)
        assert document.status == DocumentStatus.INDEXED
        assert document.metadata == {"lang": "en"}

    def test_payload_maps_back_to_document(self, coordinator, vector_index, repository):
        chunks = _expected_chunks(repository, LONG_TEXT)
        result = coordinator.ingest("docs", LONG_TEXT, metadata={"lang": "en"})

        payloads = vector_index.fetch("docs", [c.vector_id for c in chunks])

        for chunk in chunks:
            payload = payloads[chunk.vector_id]
            assert payload["document_id"] == result.document_id
            assert payload["chunk_sequence"] == chunk.sequence
            assert payload["text_hash"] == chunk.text_hash
            assert payload["lang"] == "en"

    def test_embeds_chunk_texts(self, coordinator, backend, repository):
        chunks = _expected_chunks(repository, LONG_TEXT)

        coordinator.ingest("docs", LONG_TEXT)

        assert backend.texts == [c.text for c in chunks]

    def test_caller_boundaries(self, coordinator, metadata_store, repository):
        """Test that caller boundaries decide the chunks and are stored."""
        result = coordinator.ingest("docs", "alpha beta gamma", boundaries=[6, 11])

        assert result.chunk_count == 3
        assert metadata_store.get_document(result.document_id).boundaries == [6, 11]


class TestIdempotency:
    """Tests for re-ingestion of identical content."""

    def test_reingest_is_noop(self, coordinator, backend, vector_index):
        """Test that identical content short-circuits without backend calls."""
        first = coordinator.ingest("docs", LONG_TEXT)
        calls = backend.calls

        second = coordinator.ingest("docs", LONG_TEXT)

        assert second.skipped
        assert second.ok
        assert second.document_id == first.document_id
        assert backend.calls == calls
        assert vector_index.count("docs") == first.chunk_count

    def test_normalization_equivalent_content(self, coordinator):
        first = coordinator.ingest("docs", "the quick brown fox")
        second = coordinator.ingest("docs", "  the quick brown fox \r\n")

        assert second.document_id == first.document_id
        assert second.skipped

    def test_same_content_other_repository(self, coordinator, metadata_store, vector_index):
        from docvector.shared.schemas import Repository

        vector_index.create_collection("notes", FAKE_DIMENSIONS)
        metadata_store.create_repository(
            Repository(name="notes", model_id=FAKE_MODEL, dimensions=FAKE_DIMENSIONS)
        )

        a = coordinator.ingest("docs", "the quick brown fox")
        b = coordinator.ingest("notes", "the quick brown fox")

        assert a.document_id != b.document_id
        assert not b.skipped

    def test_retry_after_failure_reindexes(self, coordinator, backend):
        from docvector.shared.errors import PermanentFailure

        backend.failures = [PermanentFailure("rejected")]
        failed = coordinator.ingest("docs", "the quick brown fox")

        retried = coordinator.ingest("docs", "the quick brown fox")

        assert failed.status_label == "failed(embedding-permanent)"
        assert retried.ok
        assert not retried.skipped


# ─────────────────────────────────────────────────────────────────────────────
# Resume Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestResume:
    """Tests for completing interrupted documents."""

    def test_resume_after_crash_skips_embedding(
        self, coordinator, metadata_store, vector_index, backend
    ):
        """Test that a document stuck after upsert completes without re-embedding."""
        from docvector.shared.errors import MetadataUnavailable
        from docvector.shared.schemas import DocumentStatus

        original = metadata_store.set_status

        def crash_before_indexed(document_id, status, *args, **kwargs):
            if status == DocumentStatus.INDEXED:
                raise MetadataUnavailable("connection lost")
            return original(document_id, status, *args, **kwargs)

        with patch.object(metadata_store, "set_status", side_effect=crash_before_indexed):
            with pytest.raises(MetadataUnavailable):
                coordinator.ingest("docs", LONG_TEXT)

        stuck = metadata_store.list_by_repository("docs").items[0]
        assert stuck.status == DocumentStatus.EMBEDDING
        assert vector_index.count("docs") == stuck.chunk_count
        calls = backend.calls

        result = coordinator.resume(stuck.id)

        assert result.ok
        assert not result.skipped
        assert backend.calls == calls
        assert vector_index.count("docs") == result.chunk_count

    def test_resume_embeds_only_missing_chunks(
        self, coordinator, metadata_store, vector_index, backend, repository
    ):
        """Test that chunks with stored entries are not embedded again."""
        from docvector.shared.schemas import Document, DocumentStatus, Embedding, IndexEntry

        chunks = _expected_chunks(repository, LONG_TEXT)
        document_id = chunks[0].document_id
        metadata_store.upsert_document(
            Document(
                id=document_id,
                repository="docs",
                content=LONG_TEXT,
                status=DocumentStatus.EMBEDDING,
                chunk_count=len(chunks),
            )
        )
        vector_index.upsert(
            "docs",
            [
                IndexEntry.from_chunk(
                    chunks[0], Embedding(vector=bag_of_words(chunks[0].text), model_id=FAKE_MODEL)
                )
            ],
        )

        result = coordinator.resume(document_id)

        assert result.ok
        assert backend.texts == [c.text for c in chunks[1:]]

    def test_resume_indexed_document_is_skipped(self, coordinator):
        ingested = coordinator.ingest("docs", "the quick brown fox")

        result = coordinator.resume(ingested.document_id)

        assert result.skipped
        assert result.ok

    def test_resume_unknown_document(self, coordinator):
        from docvector.shared.errors import DocumentNotFound

        with pytest.raises(DocumentNotFound):
            coordinator.resume("missing")

    def test_resume_returns_none_when_owned(self, coordinator):
        with coordinator.ownership.hold("some-doc"):
            assert coordinator.resume("some-doc", blocking=False) is None

    def test_removes_entries_of_older_chunking(
        self, coordinator, metadata_store, vector_index, repository
    ):
        """Test that sequences beyond the new chunk count are deleted."""
        from docvector.shared.schemas import Document, DocumentStatus, IndexEntry
        from docvector.shared.utils import generate_document_id, generate_vector_id

        document_id = generate_document_id("docs", "the quick brown fox")
        metadata_store.upsert_document(
            Document(
                id=document_id,
                repository="docs",
                content="the quick brown fox",
                status=DocumentStatus.FAILED,
                failure_reason="store-unavailable",
                chunk_count=3,
            )
        )
        vector_index.upsert(
            "docs",
            [
                IndexEntry(
                    vector_id=generate_vector_id(document_id, i),
                    vector=bag_of_words(f"old chunk {i}"),
                    payload={"document_id": document_id, "chunk_sequence": i, "text_hash": "old"},
                )
                for i in range(3)
            ],
        )

        result = coordinator.ingest("docs", "the quick brown fox")

        assert result.ok
        assert result.chunk_count == 1
        assert vector_index.count("docs") == 1
        stored = vector_index.fetch("docs", [generate_vector_id(document_id, 0)])
        assert stored[generate_vector_id(document_id, 0)]["text_hash"] != "old"


# ─────────────────────────────────────────────────────────────────────────────
# Failure Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestFailures:
    """Tests for failure reasons recorded by the pipeline."""

    def test_transient_failure_after_retries(self, coordinator, metadata_store, backend):
        from docvector.shared.errors import TransientFailure

        backend.failures = [TransientFailure("rate limited")] * 3

        result = coordinator.ingest("docs", "the quick brown fox")

        assert result.status_label == "failed(embedding-transient)"
        assert "rate limited" in result.error
        assert metadata_store.get_document(result.document_id).status_label == (
            "failed(embedding-transient)"
        )

    def test_permanent_failure(self, coordinator, backend):
        from docvector.shared.errors import PermanentFailure

        backend.failures = [PermanentFailure("input too long")]

        result = coordinator.ingest("docs", "the quick brown fox")

        assert result.failure_reason == "embedding-permanent"
        assert backend.calls == 1

    def test_backpressure(self, coordinator, backend):
        """Test that a saturated backend is recorded without retries."""
        from docvector.shared.errors import BackpressureError

        backend.failures = [BackpressureError(FAKE_MODEL, 4)]

        result = coordinator.ingest("docs", "the quick brown fox")

        assert result.failure_reason == "embedding-backpressure"
        assert backend.calls == 1

    def test_store_unavailable(self, coordinator, vector_index):
        from docvector.shared.errors import StoreUnavailable

        with patch.object(vector_index, "upsert", side_effect=StoreUnavailable("down")) as upsert:
            result = coordinator.ingest("docs", "the quick brown fox")

        assert result.failure_reason == "store-unavailable"
        assert upsert.call_count == 3

    def test_store_rejected(self, coordinator, vector_index):
        from docvector.shared.errors import StoreRejected

        with patch.object(vector_index, "upsert", side_effect=StoreRejected("bad dimension")) as upsert:
            result = coordinator.ingest("docs", "the quick brown fox")

        assert result.failure_reason == "store-rejected"
        assert upsert.call_count == 1

    def test_configuration_error_is_recorded_and_raised(self, coordinator, metadata_store, backend):
        """Test that a model failing to load mid-pipeline does not leave the row in embedding."""
        from docvector.shared.errors import ConfigurationError
        from docvector.shared.utils import generate_document_id

        backend.failures = [ConfigurationError("weights missing")]

        with pytest.raises(ConfigurationError, match="weights missing"):
            coordinator.ingest("docs", "the quick brown fox")

        document = metadata_store.get_document(generate_document_id("docs", "the quick brown fox"))
        assert document.status_label == "failed(configuration)"
        assert not coordinator.ownership.is_held(document.id)

    def test_unexpected_error_is_recorded_and_raised(self, coordinator, metadata_store, backend):
        from docvector.shared.utils import generate_document_id

        backend.failures = [ValueError("boom")]

        with pytest.raises(ValueError, match="boom"):
            coordinator.ingest("docs", "the quick brown fox")

        document = metadata_store.get_document(generate_document_id("docs", "the quick brown fox"))
        assert document.status_label == "failed(internal-error)"

    def test_retry_after_unexpected_error(self, coordinator, backend):
        backend.failures = [ValueError("boom")]
        with pytest.raises(ValueError):
            coordinator.ingest("docs", "the quick brown fox")

        assert coordinator.ingest("docs", "the quick brown fox").ok


class TestValidation:
    """Tests for inputs refused before any row is written."""

    @pytest.mark.parametrize("content", ["", "   \n\t "])
    def test_empty_content(self, coordinator, metadata_store, content):
        from docvector.shared.errors import InvalidDocument

        with pytest.raises(InvalidDocument):
            coordinator.ingest("docs", content)
        assert metadata_store.count_documents("docs") == 0

    def test_non_string_content(self, coordinator):
        from docvector.shared.errors import InvalidDocument

        with pytest.raises(InvalidDocument):
            coordinator.ingest("docs", b"bytes")

    @pytest.mark.parametrize(
        "metadata",
        [{"document_id": "x"}, {"chunk_sequence": 1}, {"": "empty"}, ["not", "a", "dict"]],
    )
    def test_invalid_metadata(self, coordinator, metadata):
        """Test that reserved or malformed metadata keys are refused."""
        from docvector.shared.errors import InvalidDocument

        with pytest.raises(InvalidDocument):
            coordinator.ingest("docs", "the quick brown fox", metadata=metadata)

    def test_invalid_boundaries(self, coordinator, metadata_store):
        from docvector.shared.errors import InvalidDocument

        with pytest.raises(InvalidDocument):
            coordinator.ingest("docs", "alpha beta gamma", boundaries=[11, 6])
        assert metadata_store.count_documents("docs") == 0

    def test_unknown_repository(self, coordinator):
        from docvector.shared.errors import RepositoryNotFound

        with pytest.raises(RepositoryNotFound):
            coordinator.ingest("missing", "the quick brown fox")

    def test_inactive_repository(self, coordinator, metadata_store):
        from docvector.shared.errors import RepositoryInactive

        metadata_store.deactivate_repository("docs")

        with pytest.raises(RepositoryInactive):
            coordinator.ingest("docs", "the quick brown fox")

    def test_unknown_model_binding(self, coordinator, metadata_store):
        from docvector.shared.errors import ConfigurationError
        from docvector.shared.schemas import Repository

        metadata_store.create_repository(
            Repository(name="ghost", model_id="ghost-model", dimensions=FAKE_DIMENSIONS)
        )

        with pytest.raises(ConfigurationError):
            coordinator.ingest("ghost", "the quick brown fox")


# ─────────────────────────────────────────────────────────────────────────────
# Delete Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestDelete:
    """Tests for delete()."""

    def test_delete_removes_vectors_and_row(self, coordinator, metadata_store, vector_index):
        ingested = coordinator.ingest("docs", LONG_TEXT)

        result = coordinator.delete("docs", ingested.document_id)

        assert result.vectors_removed == ingested.chunk_count
        assert vector_index.count("docs") == 0
        assert metadata_store.get_document(ingested.document_id) is None

    def test_delete_twice(self, coordinator):
        from docvector.shared.errors import DocumentNotFound

        ingested = coordinator.ingest("docs", "the quick brown fox")
        coordinator.delete("docs", ingested.document_id)

        with pytest.raises(DocumentNotFound):
            coordinator.delete("docs", ingested.document_id)

    def test_delete_from_other_repository(self, coordinator, metadata_store, vector_index):
        from docvector.shared.errors import DocumentNotFound
        from docvector.shared.schemas import Repository

        vector_index.create_collection("notes", FAKE_DIMENSIONS)
        metadata_store.create_repository(
            Repository(name="notes", model_id=FAKE_MODEL, dimensions=FAKE_DIMENSIONS)
        )
        ingested = coordinator.ingest("docs", "the quick brown fox")

        with pytest.raises(DocumentNotFound):
            coordinator.delete("notes", ingested.document_id)
        assert metadata_store.get_document(ingested.document_id) is not None

    def test_row_kept_when_store_unavailable(self, coordinator, metadata_store, vector_index):
        """Test that the row survives a failed vector delete so it can be retried."""
        from docvector.shared.errors import StoreUnavailable

        ingested = coordinator.ingest("docs", "the quick brown fox")

        with patch.object(vector_index, "delete", side_effect=StoreUnavailable("down")):
            with pytest.raises(StoreUnavailable):
                coordinator.delete("docs", ingested.document_id)

        assert metadata_store.get_document(ingested.document_id) is not None
        assert coordinator.delete("docs", ingested.document_id).vectors_removed == 1

    def test_delete_allowed_on_inactive_repository(self, coordinator, metadata_store):
        ingested = coordinator.ingest("docs", "the quick brown fox")
        metadata_store.deactivate_repository("docs")

        assert coordinator.delete("docs", ingested.document_id).deleted


# ─────────────────────────────────────────────────────────────────────────────
# Concurrency Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestOwnership:
    """Tests for per-document ownership."""

    def test_registry_is_reference_counted(self):
        from docvector.ingestion.ownership import OwnershipRegistry

        registry = OwnershipRegistry()
        with registry.hold("a") as acquired:
            assert acquired
            assert registry.is_held("a")
            with registry.hold("a", blocking=False) as again:
                assert not again
            with registry.hold("b", blocking=False) as other:
                assert other

        assert len(registry) == 0
        assert not registry.is_held("a")

    def test_same_document_runs_once(self, coordinator, backend):
        """Test that concurrent ingests of one document do not interleave."""
        backend.gate = threading.Event()
        results = []

        def run():
            results.append(coordinator.ingest("docs", "the quick brown fox"))

        threads = [threading.Thread(target=run), threading.Thread(target=run)]
        threads[0].start()
        assert wait_until(lambda: backend.calls == 1)
        threads[1].start()
        time.sleep(0.05)
        backend.gate.set()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == 2
        assert all(r.ok for r in results)
        assert sorted(r.skipped for r in results) == [False, True]
        assert backend.calls == 1

    def test_distinct_documents_proceed_concurrently(self, coordinator, backend):
        """Test that different document ids never wait on each other."""
        backend.gate = threading.Event()
        results = []

        threads = [
            threading.Thread(target=lambda t=text: results.append(coordinator.ingest("docs", t)))
            for text in ("the quick brown fox", "a lazy dog sleeps")
        ]
        for thread in threads:
            thread.start()

        both_embedding = wait_until(lambda: backend.calls == 2)
        backend.gate.set()
        for thread in threads:
            thread.join(timeout=10)

        assert both_embedding
        assert all(r.ok for r in results)

    def test_abandoned_call_keeps_registry_token(self):
        from concurrent.futures import Future

        from docvector.ingestion.ownership import OwnershipRegistry

        registry = OwnershipRegistry()
        future = Future()
        with registry.hold("a"):
            registry.release_when_done("a", future)

        assert registry.is_held("a")
        with registry.hold("a", blocking=False) as acquired:
            assert not acquired

        future.set_result(None)

        assert not registry.is_held("a")
        assert len(registry) == 0

    def test_finished_call_releases_immediately(self):
        from concurrent.futures import Future

        from docvector.ingestion.ownership import OwnershipRegistry

        registry = OwnershipRegistry()
        future = Future()
        future.set_result(None)
        with registry.hold("a"):
            registry.release_when_done("a", future)

        assert not registry.is_held("a")
        assert len(registry) == 0

    def test_release_when_done_requires_holder(self):
        from concurrent.futures import Future

        from docvector.ingestion.ownership import OwnershipRegistry

        with pytest.raises(RuntimeError, match="not held"):
            OwnershipRegistry().release_when_done("a", Future())

    def test_timed_out_upsert_blocks_delete_until_it_lands(
        self, metadata_store, vector_index, router, repository
    ):
        """Test that a late upsert cannot land after the document was deleted."""
        from docvector.ingestion.coordinator import IngestionCoordinator

        coordinator = IngestionCoordinator(
            metadata_store, vector_index, router, store_timeout=0.05, store_max_retries=0
        )
        gate = threading.Event()
        original_upsert = vector_index.upsert

        def slow_upsert(*args):
            gate.wait(timeout=10)
            return original_upsert(*args)

        with patch.object(vector_index, "upsert", side_effect=slow_upsert):
            result = coordinator.ingest("docs", "the quick brown fox")

        assert result.failure_reason == "store-unavailable"
        assert coordinator.ownership.is_held(result.document_id)

        deleted = []
        deleter = threading.Thread(
            target=lambda: deleted.append(coordinator.delete("docs", result.document_id))
        )
        deleter.start()
        time.sleep(0.1)
        assert deleted == []

        gate.set()
        deleter.join(timeout=10)

        assert len(deleted) == 1
        assert vector_index.count(repository.collection_name) == 0
        assert metadata_store.get_document(result.document_id) is None
        assert len(coordinator.ownership) == 0
