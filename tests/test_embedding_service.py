import numpy as np
import pytest
from openai import OpenAIError

from itemnet import embedding_service
from itemnet.config import PipelineConfig
from itemnet.embedding_service import (
    OpenAIEmbeddingProvider,
    TfidfEmbeddingProvider,
    embed_items,
    get_embedding_provider,
    validate_embeddings,
)
from itemnet.errors import EmbeddingFailure


class BrokenProvider:
    def embed(self, items):
        raise ConnectionError("network unreachable")


class ShortProvider:
    def embed(self, items):
        return np.ones((len(items) - 1, 4))


def test_tfidf_provider_shape():
    items = ["I enjoy parties", "I dislike crowds", "Parties drain me"]
    embeddings = TfidfEmbeddingProvider().embed(items)
    assert embeddings.shape[0] == 3
    assert embeddings.shape[1] >= 2
    assert np.all(np.isfinite(embeddings))


def test_tfidf_provider_empty_vocabulary():
    with pytest.raises(EmbeddingFailure, match="TF-IDF"):
        TfidfEmbeddingProvider().embed(["the", "and", "of"])


def test_validate_embeddings_rejects_bad_output():
    with pytest.raises(EmbeddingFailure):
        validate_embeddings(None, 2)
    with pytest.raises(EmbeddingFailure, match="shape"):
        validate_embeddings(np.ones((3, 4)), 2)
    with pytest.raises(EmbeddingFailure, match="non-finite"):
        validate_embeddings(np.array([[1.0, np.nan], [0.0, 1.0]]), 2)
    with pytest.raises(EmbeddingFailure, match="2 dimensions"):
        validate_embeddings(np.ones((2, 1)), 2)


def test_embed_items_wraps_provider_errors():
    with pytest.raises(EmbeddingFailure, match="network unreachable"):
        embed_items(BrokenProvider(), ["a", "b"])


def test_embed_items_checks_row_count():
    with pytest.raises(EmbeddingFailure, match="shape"):
        embed_items(ShortProvider(), ["a", "b", "c"])


def test_embed_items_returns_one_row_per_item(hash_provider):
    embeddings = embed_items(hash_provider, ["a", "b", "c"])
    assert embeddings.shape == (3, hash_provider.dimensions)


def test_openai_provider_maps_client_errors(monkeypatch):
    def no_key(items, model, dimensions):
        raise OpenAIError("The api_key client option must be set")

    monkeypatch.setattr(embedding_service, "_fetch_dense_embeddings_from_api", no_key)
    provider = OpenAIEmbeddingProvider(cache_dir=None)
    with pytest.raises(EmbeddingFailure, match="OPENAI_API_KEY"):
        provider.embed(["a", "b"])


def test_openai_provider_validates_response(monkeypatch):
    calls = []

    def fake_fetch(items, model, dimensions):
        calls.append((items, model, dimensions))
        return np.ones((len(items), dimensions))

    monkeypatch.setattr(embedding_service, "_fetch_dense_embeddings_from_api", fake_fetch)
    provider = OpenAIEmbeddingProvider(model="m", dimensions=8, cache_dir=None)
    assert provider.embed(["a", "b"]).shape == (2, 8)
    assert calls == [(("a", "b"), "m", 8)]


def test_openai_provider_caches_on_disk(monkeypatch, tmp_path):
    calls = []

    def fake_fetch(items, model="m", dimensions=4):
        calls.append(items)
        return np.arange(len(items) * dimensions, dtype=float).reshape(len(items), dimensions)

    monkeypatch.setattr(embedding_service, "_fetch_dense_embeddings_from_api", fake_fetch)
    provider = OpenAIEmbeddingProvider(model="m", dimensions=4, cache_dir=str(tmp_path))
    first = provider.embed(["x", "y"])
    second = provider.embed(["x", "y"])
    np.testing.assert_array_equal(first, second)
    assert len(calls) == 1


def test_get_embedding_provider():
    assert isinstance(get_embedding_provider(PipelineConfig(embedding_backend="tfidf")), TfidfEmbeddingProvider)
    provider = get_embedding_provider(PipelineConfig(embedding_dimensions=256, cache_dir=""))
    assert isinstance(provider, OpenAIEmbeddingProvider)
    assert provider.dimensions == 256
