"""
Pytest configuration and shared fixtures for docvector tests.
"""

import tempfile
from pathlib import Path

import pytest

from tests.fakes import FAKE_DIMENSIONS, FAKE_MODEL, FakeBackend

# ─────────────────────────────────────────────────────────────────────────────
# Path Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def project_root():
    """Get the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_path(project_root):
    """Get the config file path."""
    return project_root / "config" / "settings.yaml"


# ─────────────────────────────────────────────────────────────────────────────
# Component Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment overrides that would leak into Settings."""
    for name in ("GEMINI_API_KEY", "DOCVECTOR_DB_URL", "INDEX_STORE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(temp_dir, clean_env):
    """Settings with an in-memory vector index and fast retries."""
    from docvector.shared.config import Settings

    return Settings(
        available_models=[{"model": FAKE_MODEL, "device": "cpu", "dimensions": FAKE_DIMENSIONS}],
        index_config={
            "index_store": "memory",
            "db_url": f"sqlite:///{temp_dir / 'docvector.db'}",
        },
        router={"max_retries": 2, "retry_multiplier": 0, "retry_min_wait": 0, "retry_max_wait": 0},
        ingestion={
            "chunk_size": 50,
            "chunk_overlap": 10,
            "store_timeout_seconds": 5,
            "store_max_retries": 2,
            "store_retry_min_wait": 0,
            "store_retry_max_wait": 0,
        },
    )


@pytest.fixture
def metadata_store(temp_dir):
    """SQLite-backed metadata store in a temporary file."""
    from docvector.storage.metadata_store import SqlMetadataStore

    store = SqlMetadataStore(f"sqlite:///{temp_dir / 'metadata.db'}")
    yield store
    store.close()


@pytest.fixture
def vector_index():
    from docvector.indexing.vector_store import InMemoryVectorIndex

    return InMemoryVectorIndex()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def router(backend):
    """Router with the fake backend and no retry waits."""
    from docvector.indexing.router import ModelRouter

    router = ModelRouter(max_retries=2, retry_multiplier=0, retry_min_wait=0, retry_max_wait=0)
    router.register(FAKE_MODEL, backend)
    return router


@pytest.fixture
def repository(metadata_store, vector_index):
    """A 'docs' repository bound to the fake model with small chunks."""
    from docvector.shared.schemas import Repository

    vector_index.create_collection("docs", FAKE_DIMENSIONS)
    return metadata_store.create_repository(
        Repository(
            name="docs",
            model_id=FAKE_MODEL,
            dimensions=FAKE_DIMENSIONS,
            chunk_size=50,
            chunk_overlap=10,
            index_store="memory",
        )
    )


@pytest.fixture
def coordinator(metadata_store, vector_index, router, repository):
    from docvector.ingestion.coordinator import IngestionCoordinator

    return IngestionCoordinator(
        metadata_store,
        vector_index,
        router,
        store_timeout=None,
        store_max_retries=2,
        store_retry_min_wait=0,
        store_retry_max_wait=0,
    )


@pytest.fixture
def query_coordinator(metadata_store, vector_index, router, repository):
    from docvector.retrieval.query import QueryCoordinator

    return QueryCoordinator(
        metadata_store,
        vector_index,
        router,
        default_top_k=10,
        overfetch=3,
        store_timeout=None,
        store_max_retries=2,
        store_retry_min_wait=0,
        store_retry_max_wait=0,
    )


@pytest.fixture
def service(settings, metadata_store, vector_index, router):
    """IndexService wired with the fake backend and in-memory index."""
    from docvector.service import IndexService

    service = IndexService(settings, metadata_store, vector_index, router)
    yield service
    service.sweeper.stop()


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: tests that load real models or start threads")
    config.addinivalue_line("markers", "integration: tests that need a real vector store")
    config.addinivalue_line("markers", "requires_api: tests that call a hosted embedding API")


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Clear the cached settings between tests."""
    yield
    from docvector.shared.config import get_settings

    get_settings.cache_clear()
