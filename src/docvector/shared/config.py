"""
Configuration Module - Load and validate service settings.
==========================================================

Loads configuration from:
1. config/settings.yaml (defaults)
2. Environment variables from .env file
3. Environment variables from system

Environment variables override YAML defaults. The resolved settings give the
core its repository-independent bindings: which models exist and where they
run, the per-backend limits, the vector index store selection and the
metadata database URL.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file early
load_dotenv()


def _find_project_root() -> Path:
    """Find the project root directory by looking for pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    # Fallback to current working directory
    return Path.cwd()


PROJECT_ROOT = _find_project_root()
CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "settings.yaml"

REMOTE_DEVICE = "remote"
INDEX_STORES = ("chroma", "qdrant", "memory")


# ─────────────────────────────────────────────────────────────────────────────
# Nested Configuration Models
# ─────────────────────────────────────────────────────────────────────────────


class ModelBindingConfig(BaseModel):
    """
    A model the service knows how to load, and where it runs.

    `device` is "cpu", "cuda" or "auto" for local in-process models and
    "remote" for hosted embedding APIs. Admission limits only apply to
    remote bindings unless set explicitly.
    """

    model: str
    device: str = "cpu"
    dimensions: Optional[int] = None
    max_batch_size: int = 32
    max_in_flight: Optional[int] = None
    requests_per_second: Optional[float] = None
    max_queue: int = 64
    timeout_seconds: float = 30.0

    @field_validator("device")
    @classmethod
    def normalize_device(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_remote(self) -> bool:
        return self.device == REMOTE_DEVICE

    def effective_max_in_flight(self) -> Optional[int]:
        """In-flight budget; remote backends default to 4, local unbounded."""
        if self.max_in_flight is not None:
            return self.max_in_flight
        return 4 if self.is_remote else None

    def effective_requests_per_second(self) -> Optional[float]:
        """Request rate budget; remote backends default to 5/s, local unbounded."""
        if self.requests_per_second is not None:
            return self.requests_per_second
        return 5.0 if self.is_remote else None


class GeminiConfig(BaseModel):
    """Remote (Google GenAI) embedding settings."""

    api_key: str = ""
    task_type: str = "RETRIEVAL_DOCUMENT"
    query_task_type: str = "RETRIEVAL_QUERY"


class ChromaConfig(BaseModel):
    """ChromaDB persistent store settings."""

    persist_directory: str = "data/index"


class QdrantConfig(BaseModel):
    """Qdrant server settings."""

    addr: str = "http://localhost:6333"
    api_key: str = ""
    timeout: int = 10


class IndexConfig(BaseModel):
    """Vector index store selection and metadata database location."""

    index_store: str = "chroma"
    db_url: str = "sqlite:///data/docvector.db"
    chroma: ChromaConfig = Field(default_factory=ChromaConfig)
    qdrant: QdrantConfig = Field(default_factory=QdrantConfig)

    @field_validator("index_store")
    @classmethod
    def validate_index_store(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in INDEX_STORES:
            raise ValueError(
                f"Unknown index store: {v}. Valid options: {', '.join(INDEX_STORES)}"
            )
        return v


class RouterConfig(BaseModel):
    """Retry policy for embedding calls."""

    max_retries: int = 3
    retry_multiplier: float = 0.5
    retry_min_wait: float = 0.5
    retry_max_wait: float = 8.0


class IngestionConfig(BaseModel):
    """Chunking defaults and vector store write policy."""

    chunk_size: int = 1000
    chunk_overlap: int = 200
    store_timeout_seconds: float = 30.0
    store_max_retries: int = 3
    store_retry_min_wait: float = 0.5
    store_retry_max_wait: float = 8.0


class QueryConfig(BaseModel):
    """Search settings."""

    top_k: int = 10
    overfetch: int = 3


class ReconciliationConfig(BaseModel):
    """Background sweep for documents stuck mid-pipeline."""

    enabled: bool = False
    interval_seconds: float = 60.0
    stale_after_seconds: float = 300.0
    batch_size: int = 100


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    rich_console: bool = True
    file: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Main Settings Class
# ─────────────────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    Main service settings.

    Loads from:
    1. config/settings.yaml (defaults)
    2. Environment variables

    Environment variables override YAML settings.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # API Keys (from environment only)
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")

    # Top-level environment overrides
    db_url: Optional[str] = Field(default=None, validation_alias="DOCVECTOR_DB_URL")
    index_store: Optional[str] = Field(default=None, validation_alias="INDEX_STORE")
    log_level: Optional[str] = Field(default=None, validation_alias="LOG_LEVEL")

    # Nested configurations (from YAML)
    listen_addr: str = "0.0.0.0:8900"
    available_models: list[ModelBindingConfig] = Field(default_factory=list)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    index_config: IndexConfig = Field(default_factory=IndexConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    _project_root: Path = PROJECT_ROOT

    @field_validator("gemini_api_key", mode="before")
    @classmethod
    def validate_api_key(cls, v: Any) -> str:
        """Allow empty API key; remote backends fail at binding time instead."""
        if v is None:
            return ""
        return str(v)

    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return self._project_root

    def resolve_path(self, value: str) -> Path:
        """Resolve a configured path relative to the project root."""
        path = Path(value)
        if path.is_absolute():
            return path
        return self._project_root / path

    def get_model_binding(self, model_id: str) -> Optional[ModelBindingConfig]:
        """Get the binding for a model identifier."""
        for binding in self.available_models:
            if binding.model == model_id:
                return binding
        return None

    def get_model_ids(self) -> list[str]:
        """Get list of all configured model identifiers."""
        return [b.model for b in self.available_models]

    def get_effective_gemini_api_key(self) -> str:
        """Environment key wins over the YAML key."""
        return self.gemini_api_key or self.gemini.api_key

    def get_effective_db_url(self) -> str:
        """Get the effective metadata database URL (env override or config)."""
        if self.db_url:
            return self.db_url
        return self.index_config.db_url

    def get_effective_index_store(self) -> str:
        """Get the effective index store kind (env override or config)."""
        if self.index_store:
            return self.index_store.strip().lower()
        return self.index_config.index_store

    def get_effective_log_level(self) -> str:
        """Get the effective log level (env override or config)."""
        if self.log_level:
            return self.log_level.upper()
        return self.logging.level.upper()


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        return data if data else {}


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Create settings by merging YAML defaults with environment."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    yaml_config = _load_yaml_config(config_path)

    # Create settings with YAML as defaults, env vars will override
    return Settings(**yaml_config)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get the singleton settings instance.

    Returns:
        Settings instance with merged configuration

    Example:
        >>> settings = get_settings()
        >>> print(settings.index_config.index_store)
        chroma
    """
    return load_settings()


def reload_settings() -> Settings:
    """
    Force reload of settings (clears cache).

    Returns:
        Fresh Settings instance
    """
    get_settings.cache_clear()
    return get_settings()
