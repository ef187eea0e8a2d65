"""
Embeddings Base Module - Abstract interface for model backends.
===============================================================

Defines the abstract base class for embedding backends. A repository is
bound to exactly one backend when it is resolved; ingestion and queries
never re-dispatch per call. Two variants exist:

- local: in-process inference (sentence-transformers), bounded latency,
  no rate limit
- remote: hosted API (Google GenAI), variable latency and a caller-visible
  rate limit enforced by the ModelRouter
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING

from docvector.shared.errors import ConfigurationError, PermanentFailure
from docvector.shared.logging import get_logger

if TYPE_CHECKING:
    from docvector.shared.config import ModelBindingConfig, Settings

logger = get_logger(__name__)


class BackendKind(str, Enum):
    """Where a backend runs."""

    LOCAL = "local"
    REMOTE = "remote"


# ─────────────────────────────────────────────────────────────────────────────
# Abstract Base Class
# ─────────────────────────────────────────────────────────────────────────────


class ModelBackend(ABC):
    """
    Abstract base class for model backends.

    Implementations must provide:
    - _embed_batch(): embed a validated, non-empty batch

    Properties:
    - provider_name: Provider identifier (sbert, gemini)
    - model_name: Name of the embedding model
    - dimensions: Embedding vector dimensions
    - kind: local or remote
    - max_batch_size: Largest batch accepted by embed()
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name identifier."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Get the model name being used."""
        pass

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Get the embedding vector dimensions."""
        pass

    @property
    @abstractmethod
    def kind(self) -> BackendKind:
        """Get where the backend runs."""
        pass

    @property
    @abstractmethod
    def max_batch_size(self) -> int:
        """Get the largest batch accepted by embed()."""
        pass

    @abstractmethod
    def _embed_batch(self, texts: list[str], query: bool = False) -> list[list[float]]:
        """
        Embed a batch that has already been validated.

        Args:
            texts: Non-empty list of non-empty strings, at most max_batch_size
            query: True when the texts are search queries rather than documents

        Returns:
            One vector per input, in input order

        Raises:
            TransientFailure: Rate limited, network error, or similar
            PermanentFailure: Input rejected by the model
        """
        pass

    def embed(self, batch: list[str], query: bool = False) -> list[list[float]]:
        """
        Embed an ordered batch of texts.

        Backends that distinguish the two roles (Gemini task types) embed
        `query=True` batches as search queries.

        Args:
            batch: Texts to embed
            query: Embed as search queries instead of documents

        Returns:
            Vectors of the same length and order as `batch`

        Raises:
            PermanentFailure: Empty batch, empty item, oversized batch, or a
                backend response of the wrong shape
            TransientFailure: Retryable backend failure
        """
        if not batch:
            raise PermanentFailure("Cannot embed an empty batch")
        if len(batch) > self.max_batch_size:
            raise PermanentFailure(
                f"Batch of {len(batch)} exceeds max_batch_size={self.max_batch_size} "
                f"for model {self.model_name}"
            )
        for i, text in enumerate(batch):
            if not isinstance(text, str) or not text.strip():
                raise PermanentFailure(f"Batch item {i} is empty")

        vectors = self._embed_batch(list(batch), query=query)

        if len(vectors) != len(batch):
            raise PermanentFailure(
                f"Model {self.model_name} returned {len(vectors)} vectors "
                f"for {len(batch)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise PermanentFailure(
                    f"Model {self.model_name} returned a {len(vector)}-dim vector, "
                    f"expected {self.dimensions}"
                )
        return [list(map(float, v)) for v in vectors]

    def warm_up(self) -> None:
        """Load resources eagerly. Default is a no-op."""

    def get_info(self) -> dict:
        """
        Get backend information.

        Returns:
            Dictionary with backend details
        """
        return {
            "provider": self.provider_name,
            "model": self.model_name,
            "dimensions": self.dimensions,
            "kind": self.kind.value,
            "max_batch_size": self.max_batch_size,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Backend Factory
# ─────────────────────────────────────────────────────────────────────────────


def build_backend(binding: "ModelBindingConfig", settings: "Settings") -> ModelBackend:
    """
    Build the backend for a configured model binding.

    Bindings with device "remote" become Gemini backends; every other device
    runs the model locally through sentence-transformers.

    Args:
        binding: Model binding from settings.available_models
        settings: Service settings (credentials, provider options)

    Returns:
        ModelBackend instance

    Raises:
        ConfigurationError: If the backend cannot be constructed
    """
    backend: ModelBackend

    if binding.is_remote:
        from docvector.indexing.embeddings_gemini import GeminiBackend

        backend = GeminiBackend(
            model_name=binding.model,
            api_key=settings.get_effective_gemini_api_key(),
            max_batch_size=binding.max_batch_size,
            task_type=settings.gemini.task_type,
            query_task_type=settings.gemini.query_task_type,
            dimensions=binding.dimensions,
        )
    elif binding.device in ("cpu", "cuda", "mps", "auto"):
        from docvector.indexing.embeddings_sbert import SBERTBackend

        backend = SBERTBackend(
            model_name=binding.model,
            device=binding.device,
            max_batch_size=binding.max_batch_size,
            dimensions=binding.dimensions,
        )
    else:
        raise ConfigurationError(
            f"Unknown device '{binding.device}' for model {binding.model}. "
            f"Valid options: cpu, cuda, mps, auto, remote"
        )

    logger.info(
        f"Bound model backend: {backend.provider_name} "
        f"(model={backend.model_name}, kind={backend.kind.value})"
    )
    return backend
