"""
SBERT Embeddings Module - Local embeddings via sentence-transformers.
=====================================================================

Provides local, in-process embeddings using pre-trained SBERT models.
No API key required - runs entirely on local hardware, so latency is
bounded and no rate limit applies.

Recommended models:
- all-MiniLM-L6-v2: Fast, 384 dimensions
- all-MiniLM-L12-v2: 384 dimensions
- all-mpnet-base-v2: Better quality, 768 dimensions
"""

import threading
from typing import Optional

from docvector.indexing.embeddings_base import BackendKind, ModelBackend
from docvector.shared.errors import ConfigurationError, TransientFailure
from docvector.shared.logging import get_logger

logger = get_logger(__name__)


# Model dimension mapping for common models
MODEL_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-minilm-l12-v2": 384,
    "all-mpnet-base-v2": 768,
    "multi-qa-MiniLM-L6-cos-v1": 384,
    "multi-qa-mpnet-base-cos-v1": 768,
    "paraphrase-MiniLM-L6-v2": 384,
    "paraphrase-mpnet-base-v2": 768,
}

# Lowercase aliases accepted in configuration, mapped to hub names
MODEL_ALIASES = {
    "all-minilm-l6-v2": "sentence-transformers/all-MiniLM-L6-v2",
    "all-minilm-l12-v2": "sentence-transformers/all-MiniLM-L12-v2",
}


class SBERTBackend(ModelBackend):
    """
    Local backend using sentence-transformers.

    Features:
    - Free, local embeddings (no API key needed)
    - Automatic device selection (CPU/GPU)
    - Normalized output vectors (cosine-ready)

    Example:
        >>> backend = SBERTBackend("all-MiniLM-L6-v2")
        >>> vectors = backend.embed(["Hello world"])
        >>> print(len(vectors[0]))  # 384
    """

    def __init__(
        self,
        model_name: str,
        device: str = "cpu",
        max_batch_size: int = 32,
        dimensions: Optional[int] = None,
    ):
        """
        Initialize the SBERT backend.

        Args:
            model_name: Model name from Hugging Face or a known alias
            device: Device to use ("cpu", "cuda", "mps", "auto")
            max_batch_size: Largest batch accepted per embed() call
            dimensions: Vector dimensions if the model is not in MODEL_DIMENSIONS
        """
        self._model_name = model_name
        self._device = device
        self._max_batch_size = max_batch_size
        self._dimensions = dimensions or MODEL_DIMENSIONS.get(model_name)

        # Lazy load the model
        self._model = None
        self._load_lock = threading.Lock()

        logger.debug(
            f"SBERT backend configured: model={self._model_name}, "
            f"device={self._device}, max_batch_size={self._max_batch_size}"
        )

    @property
    def provider_name(self) -> str:
        return "sbert"

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def kind(self) -> BackendKind:
        return BackendKind.LOCAL

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def dimensions(self) -> int:
        """Get embedding dimensions, loading the model if they are unknown."""
        if self._dimensions is None:
            self._load_model()
        return self._dimensions  # type: ignore[return-value]

    @property
    def model(self):
        """Lazy load and return the sentence transformer model."""
        if self._model is None:
            self._load_model()
        return self._model

    def _load_model(self) -> None:
        """Load the sentence transformer model."""
        with self._load_lock:
            if self._model is not None:
                return

            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ConfigurationError(
                    "sentence-transformers is required for local embeddings. "
                    "Install with: pip install sentence-transformers"
                ) from e

            device = self._device
            if device == "auto":
                import torch

                device = "cuda" if torch.cuda.is_available() else "cpu"

            hub_name = MODEL_ALIASES.get(self._model_name, self._model_name)
            logger.info(f"Loading SBERT model: {hub_name}")

            try:
                model = SentenceTransformer(hub_name, device=device)
            except (OSError, ValueError) as e:
                raise ConfigurationError(
                    f"Failed to load SBERT model {self._model_name}: {e}"
                ) from e

            actual = model.get_sentence_embedding_dimension()
            if self._dimensions is not None and actual != self._dimensions:
                raise ConfigurationError(
                    f"Model {self._model_name} produces {actual}-dim vectors, "
                    f"configured for {self._dimensions}"
                )
            self._dimensions = actual
            self._model = model

            logger.info(
                f"SBERT model loaded: {self._model_name} "
                f"(dims={self._dimensions}, device={device})"
            )

    def warm_up(self) -> None:
        """Load the model now instead of on first embed."""
        _ = self.model

    def _embed_batch(self, texts: list[str], query: bool = False) -> list[list[float]]:
        try:
            embeddings = self.model.encode(
                texts,
                batch_size=self._max_batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except RuntimeError as e:
            # Device errors (e.g. out of memory) usually clear on retry
            raise TransientFailure(f"Local inference failed for {self._model_name}: {e}") from e

        return [emb.tolist() for emb in embeddings]

    def get_info(self) -> dict:
        """Get backend information."""
        info = super().get_info()
        info["device"] = self._device
        info["loaded"] = self._model is not None
        return info
