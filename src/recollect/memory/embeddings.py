"""Embedding providers that turn text into fixed-length vectors.

The default provider wraps a sentence-transformers model. The model is
loaded lazily on first use and reused for the rest of the process.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from ..errors import ProviderUnavailableError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into vectors of a fixed dimension.

    Implementations must be deterministic: the same text with the same
    model always yields the same vector.
    """

    @property
    def dimension(self) -> int: ...

    @property
    def model_name(self) -> str: ...

    def embed(self, text: str) -> np.ndarray: ...

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]: ...


class SentenceTransformerProvider:
    """EmbeddingProvider backed by a sentence-transformers model.

    Example:
        provider = SentenceTransformerProvider()
        vector = provider.embed("User prefers TypeScript")
        assert vector.shape == (provider.dimension,)
    """

    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        device: str | None = None,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        """Initialize the provider without loading the model.

        Args:
            model_name: Hugging Face model id to load.
            device: Torch device ('cpu', 'cuda'); auto-detected if None.
            dimension: Expected vector size, replaced by the model's own
                once it is loaded.
        """
        self._model_name = model_name
        self._device = device
        self._dimension = dimension
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _get_model(self) -> SentenceTransformer:
        """Load the model once; failures are retried on the next call."""
        if self._model is not None:
            return self._model

        with self._lock:
            if self._model is None:
                logger.info("Loading embedding model %s", self._model_name)
                try:
                    from sentence_transformers import SentenceTransformer

                    model = SentenceTransformer(self._model_name, device=self._device)
                except Exception as e:
                    logger.error(
                        "Failed to load embedding model %s: %s", self._model_name, e
                    )
                    raise ProviderUnavailableError(
                        f"Embedding model {self._model_name} unavailable: {e}"
                    ) from e
                size = model.get_sentence_embedding_dimension()
                if size:
                    self._dimension = int(size)
                self._model = model
        return self._model

    def embed(self, text: str) -> np.ndarray:
        """Embed one text into a normalized float32 vector."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Embed several texts with a single encode call."""
        if not texts:
            return []

        model = self._get_model()
        try:
            vectors = model.encode(
                list(texts),
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise ProviderUnavailableError(f"Embedding failed: {e}") from e

        matrix = np.asarray(vectors, dtype=np.float32)
        return [row for row in matrix]


def as_vector(values: np.ndarray | list[float], dimension: int | None = None) -> np.ndarray:
    """Coerce values into a 1-D float32 vector, checking its size."""
    vector = np.asarray(values, dtype=np.float32).reshape(-1)
    if dimension is not None and vector.shape[0] != dimension:
        raise ProviderUnavailableError(
            f"Embedding has dimension {vector.shape[0]}, expected {dimension}"
        )
    return vector
