"""
Embedding generation utilities for the retrieval system.

Supports multiple embedding models:
- OpenAI embeddings (text-embedding-3-small by default)
- Sentence Transformers (local, free)

Every vector returned by a provider has exactly ``dimension`` components;
anything else is rejected as an upstream failure so partial vectors never
reach storage.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from loguru import logger

try:
    from ..config import config
    from ..errors import UpstreamError
except ImportError:
    from src.config import config
    from src.errors import UpstreamError


EmbeddingModel = Literal["openai", "sentence-transformers"]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text to fixed-dimension vector, batchable."""

    model_name: str
    dimension: int

    def embed(self, text: str) -> List[float]:
        ...

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...


def check_dimension(vectors: Sequence[Sequence[float]], dimension: int) -> None:
    """Raise UpstreamError if any vector is not exactly ``dimension`` long."""
    for i, vector in enumerate(vectors):
        if vector is None or len(vector) != dimension:
            got = None if vector is None else len(vector)
            raise UpstreamError(
                f"Embedding {i} has dimension {got}, expected {dimension}"
            )


class EmbeddingGenerator:
    """
    Generate embeddings for text using OpenAI or a local model.

    Implements the EmbeddingProvider protocol.
    """

    def __init__(
        self,
        model_type: Optional[EmbeddingModel] = None,
        model_name: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize embedding generator.

        Args:
            model_type: Type of embedding model (default from config)
            model_name: Specific model name (default from config)
            dimension: Expected vector length (default from config)
            timeout: Per-request timeout in seconds (default from config)
        """
        self.model_type = model_type or config.rag.embedding_model_type
        self.model_name = model_name or config.rag.embedding_model
        self.dimension = dimension or config.rag.embedding_dimension
        self.timeout = timeout or config.rag.embedding_timeout

        self._model = None
        self._client = None

    def _load_model(self):
        """Lazy load the embedding model."""
        if self._model is not None or self._client is not None:
            return

        if self.model_type == "sentence-transformers":
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers not installed. "
                    "Install with: pip install sentence-transformers"
                )
            self._model = SentenceTransformer(self.model_name)

        elif self.model_type == "openai":
            import openai

            self._client = openai.OpenAI(
                api_key=config.model.api_key,
                base_url=config.model.base_url,
                timeout=self.timeout,
                max_retries=config.model.max_retries,
            )

        else:
            raise ValueError(f"Unknown model type: {self.model_type}")

    def embed(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            UpstreamError: If the provider fails, times out or returns a
                vector of the wrong dimension
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts in one provider call.

        Args:
            texts: Texts to embed

        Returns:
            List of embedding vectors, same order as ``texts``
        """
        if not texts:
            return []

        self._load_model()

        try:
            if self.model_type == "sentence-transformers":
                embeddings = self._model.encode(
                    list(texts), batch_size=len(texts), convert_to_numpy=True
                )
                vectors = [emb.tolist() for emb in embeddings]
            else:
                kwargs = {}
                if self.model_name.startswith("text-embedding-3"):
                    kwargs["dimensions"] = self.dimension
                response = self._client.embeddings.create(
                    model=self.model_name, input=list(texts), **kwargs
                )
                vectors = [data.embedding for data in response.data]
        except UpstreamError:
            raise
        except Exception as e:
            timed_out = "timeout" in type(e).__name__.lower()
            logger.warning(f"Embedding call failed ({type(e).__name__}): {e}")
            raise UpstreamError(
                f"Embedding provider error: {e}", timed_out=timed_out
            ) from e

        if len(vectors) != len(texts):
            raise UpstreamError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        check_dimension(vectors, self.dimension)
        return vectors


def cosine_similarities(query: Sequence[float], matrix: Sequence[Sequence[float]]) -> np.ndarray:
    """
    Cosine similarity of ``query`` against every row of ``matrix``.

    Zero-norm rows score 0.0.
    """
    if len(matrix) == 0:
        return np.zeros(0)

    q = np.asarray(query, dtype=float)
    m = np.asarray(matrix, dtype=float)

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(m, axis=1)
    if q_norm == 0:
        return np.zeros(len(m))

    denom = row_norms * q_norm
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, dots / np.where(denom > 0, denom, 1.0), 0.0)
    return scores
