"""
Gemini Embeddings Module - Google GenAI embeddings API.
=======================================================

Remote backend using Google's Gemini embedding models. Requires an API key
(GEMINI_API_KEY or gemini.api_key in settings); a missing key is a
configuration error raised when the backend is bound.

Available models:
- text-embedding-004: 768 dimensions
- gemini-embedding-001: 3072 dimensions (output_dimensionality adjustable)

API errors are translated into the service taxonomy:
- 408 / 429 / 5xx and network errors -> TransientFailure
- other 4xx -> PermanentFailure
"""

from typing import Any, Optional

import httpx

from docvector.indexing.embeddings_base import BackendKind, ModelBackend
from docvector.shared.errors import (
    ConfigurationError,
    DocVectorError,
    PermanentFailure,
    TransientFailure,
)
from docvector.shared.logging import get_logger

logger = get_logger(__name__)


# Model dimension mapping
GEMINI_MODEL_DIMENSIONS = {
    "text-embedding-004": 768,
    "embedding-001": 768,
    "gemini-embedding-001": 3072,
}

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class GeminiBackend(ModelBackend):
    """
    Remote backend using the Google GenAI SDK.

    Example:
        >>> backend = GeminiBackend("text-embedding-004", api_key="...")
        >>> vectors = backend.embed(["Hello world"])
        >>> print(len(vectors[0]))  # 768
    """

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str],
        max_batch_size: int = 100,
        task_type: str = "RETRIEVAL_DOCUMENT",
        query_task_type: str = "RETRIEVAL_QUERY",
        dimensions: Optional[int] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize the Gemini backend.

        Args:
            model_name: Embedding model name
            api_key: Gemini API key
            max_batch_size: Largest batch accepted per embed() call
            task_type: Task type sent when embedding documents
            query_task_type: Task type sent when embedding search queries
            dimensions: Requested output dimensionality (model default if None)
            client: Pre-built genai client (tests inject a double here)

        Raises:
            ConfigurationError: If no API key is available
        """
        if not api_key and client is None:
            raise ConfigurationError(
                f"Gemini API key is required for remote model {model_name}. "
                "Set GEMINI_API_KEY or gemini.api_key in settings."
            )

        native = GEMINI_MODEL_DIMENSIONS.get(model_name)
        if dimensions is None and native is None:
            raise ConfigurationError(
                f"Unknown dimensions for Gemini model {model_name}; "
                "set `dimensions` on the model binding"
            )

        self._model_name = model_name
        self._api_key = api_key
        self._max_batch_size = max_batch_size
        self._task_type = task_type
        self._query_task_type = query_task_type
        self._dimensions: int = dimensions or native  # type: ignore[assignment]
        # Only ask the API to truncate when it differs from the native size
        self._output_dimensionality = (
            dimensions if dimensions is not None and dimensions != native else None
        )
        self._client = client

        logger.debug(
            f"Gemini backend configured: model={self._model_name}, "
            f"max_batch_size={self._max_batch_size}, task_type={self._task_type}"
        )

    @property
    def provider_name(self) -> str:
        return "gemini"

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def kind(self) -> BackendKind:
        return BackendKind.REMOTE

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def client(self):
        """Lazy load and return the Gemini client."""
        if self._client is None:
            self._initialize_client()
        return self._client

    def _initialize_client(self) -> None:
        """Initialize the Google GenAI client."""
        try:
            from google import genai
        except ImportError as e:
            raise ConfigurationError(
                "google-genai is required for Gemini embeddings. "
                "Install with: pip install google-genai"
            ) from e

        self._client = genai.Client(api_key=self._api_key)
        logger.info(f"Gemini client initialized for model: {self._model_name}")

    def warm_up(self) -> None:
        _ = self.client

    def _request_config(self, query: bool = False) -> dict:
        task_type = self._query_task_type if query else self._task_type
        config: dict[str, Any] = {"task_type": task_type}
        if self._output_dimensionality is not None:
            config["output_dimensionality"] = self._output_dimensionality
        return config

    def _embed_batch(self, texts: list[str], query: bool = False) -> list[list[float]]:
        from google.genai import errors as genai_errors

        try:
            response = self.client.models.embed_content(
                model=self._model_name,
                contents=texts,
                config=self._request_config(query),
            )
        except genai_errors.APIError as e:
            raise self._translate_api_error(e) from e
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            raise TransientFailure(f"Gemini request failed: {e}") from e

        return [list(embedding.values) for embedding in response.embeddings]

    def _translate_api_error(self, error: Exception) -> DocVectorError:
        code = getattr(error, "code", None)
        message = f"Gemini API error for {self._model_name} (code={code}): {error}"
        if code in RETRYABLE_STATUS_CODES or (isinstance(code, int) and code >= 500):
            logger.warning(message)
            return TransientFailure(message)
        logger.error(message)
        return PermanentFailure(message)

    def get_info(self) -> dict:
        """Get backend information."""
        info = super().get_info()
        info["task_type"] = self._task_type
        info["query_task_type"] = self._query_task_type
        info["api_key_set"] = bool(self._api_key)
        return info
