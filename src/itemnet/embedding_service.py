"""
Embedding providers: map an ordered sequence of unique phrases to a dense
(n_items x n_dims) matrix.

Two backends are available: OpenAI embeddings (cached on disk with joblib)
and a local TF-IDF vectorizer. Any failure is fatal for the run and surfaces
as EmbeddingFailure.
"""

import logging
from typing import Protocol, Sequence

import joblib
import numpy as np
from openai import APIError, OpenAI, OpenAIError
from sklearn.feature_extraction.text import TfidfVectorizer

from .errors import EmbeddingFailure

logger = logging.getLogger(__name__)

# The embeddings endpoint accepts at most 2048 inputs per request
OPENAI_BATCH_SIZE = 2048


class EmbeddingProvider(Protocol):
    def embed(self, items: Sequence[str]) -> np.ndarray:
        """Returns an (n_items, n_dims) float matrix, one row per item."""
        ...


def _fetch_dense_embeddings_from_api(
    items: tuple[str, ...], model: str = "text-embedding-3-small", dimensions: int = 1536
) -> np.ndarray:
    """Fetches dense embeddings from the OpenAI API.

    Wrapped with joblib.Memory by OpenAIEmbeddingProvider; the client is only
    instantiated on a cache miss. Relies on OPENAI_API_KEY being set.
    """
    client = OpenAI()
    logger.info("Requesting %d embeddings from OpenAI (%s)", len(items), model)

    dense_embeddings = []
    for start in range(0, len(items), OPENAI_BATCH_SIZE):
        batch = list(items[start:start + OPENAI_BATCH_SIZE])
        response = client.embeddings.create(input=batch, model=model, dimensions=dimensions)
        # Sort based on index to ensure order matches input items
        sorted_data = sorted(response.data, key=lambda x: x.index)
        if len(sorted_data) != len(batch) or any(not d.embedding for d in sorted_data):
            raise EmbeddingFailure(
                f"OpenAI returned {len(sorted_data)} embeddings for a batch of {len(batch)} items."
            )
        dense_embeddings.extend(d.embedding for d in sorted_data)

    return np.array(dense_embeddings, dtype=float)


class OpenAIEmbeddingProvider:
    """Dense embeddings from the OpenAI API, cached on disk."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        cache_dir: str | None = "./cache/joblib_cache",
    ):
        self.model = model
        self.dimensions = dimensions
        if cache_dir:
            memory = joblib.Memory(cache_dir, verbose=0)
            self._fetch = memory.cache(_fetch_dense_embeddings_from_api)
        else:
            self._fetch = _fetch_dense_embeddings_from_api

    def embed(self, items: Sequence[str]) -> np.ndarray:
        if not items:
            raise EmbeddingFailure("No items to embed.")
        try:
            embeddings = self._fetch(tuple(items), model=self.model, dimensions=self.dimensions)
        except APIError as e:
            raise EmbeddingFailure(f"OpenAI API error: {e}") from e
        except OpenAIError as e:
            # Raised by the client itself, e.g. when no API key is configured
            raise EmbeddingFailure(f"OpenAI client error: {e}. Ensure OPENAI_API_KEY is set.") from e
        return validate_embeddings(embeddings, len(items))


class TfidfEmbeddingProvider:
    """Local TF-IDF vectors, densified."""

    def __init__(self, stop_words: str | None = "english"):
        self.stop_words = stop_words

    def embed(self, items: Sequence[str]) -> np.ndarray:
        if not items:
            raise EmbeddingFailure("No items to embed.")
        vectorizer = TfidfVectorizer(stop_words=self.stop_words)
        try:
            tfidf_matrix = vectorizer.fit_transform(list(items))
        except ValueError as e:
            # e.g. "empty vocabulary" when every token is a stop word
            raise EmbeddingFailure(f"TF-IDF vectorization failed: {e}") from e
        return validate_embeddings(tfidf_matrix.toarray(), len(items))


def validate_embeddings(embeddings, n_items: int) -> np.ndarray:
    """Checks that the provider returned one finite row per item."""
    if embeddings is None:
        raise EmbeddingFailure("Embedding provider returned nothing.")
    embeddings = np.asarray(embeddings, dtype=float)
    if embeddings.ndim != 2 or embeddings.shape[0] != n_items:
        raise EmbeddingFailure(
            f"Embedding provider returned shape {embeddings.shape}, expected ({n_items}, n_dims)."
        )
    if embeddings.shape[1] < 2:
        raise EmbeddingFailure(f"Embeddings need at least 2 dimensions, got {embeddings.shape[1]}.")
    if not np.all(np.isfinite(embeddings)):
        raise EmbeddingFailure("Embedding provider returned non-finite values.")
    return embeddings


def get_embedding_provider(config) -> EmbeddingProvider:
    """Builds the provider named by ``config.embedding_backend``."""
    if config.embedding_backend == "openai":
        return OpenAIEmbeddingProvider(
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            cache_dir=config.cache_dir,
        )
    if config.embedding_backend == "tfidf":
        return TfidfEmbeddingProvider()
    raise ValueError(f"Unknown embedding backend: {config.embedding_backend}")


def embed_items(provider: EmbeddingProvider, items: Sequence[str]) -> np.ndarray:
    """Runs ``provider`` and validates the shape of what it returns."""
    try:
        embeddings = provider.embed(list(items))
    except EmbeddingFailure:
        raise
    except Exception as e:
        raise EmbeddingFailure(f"Embedding provider failed: {e}") from e
    embeddings = validate_embeddings(embeddings, len(items))
    logger.info("Embedded %d items into %d dimensions", *embeddings.shape)
    return embeddings
