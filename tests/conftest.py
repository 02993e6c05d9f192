"""
Shared fixtures: synthetic block-structured data and deterministic
embedding providers.
"""

import zlib

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from itemnet.ega_service import EGAEstimator
from itemnet.items import WorkingMatrix


def make_block_data(n_obs=300, n_per_block=4, n_blocks=2, loading=0.8, seed=42):
    """Observations x items data with one latent factor per block."""
    rng = np.random.default_rng(seed)
    factors = rng.standard_normal((n_obs, n_blocks))
    columns = []
    for b in range(n_blocks):
        for _ in range(n_per_block):
            noise = rng.standard_normal(n_obs)
            columns.append(loading * factors[:, b] + np.sqrt(1 - loading**2) * noise)
    return np.column_stack(columns)


class HashEmbeddingProvider:
    """Deterministic pseudo-random vector per phrase."""

    def __init__(self, dimensions=64):
        self.dimensions = dimensions
        self.calls = 0

    def embed(self, items):
        self.calls += 1
        return np.vstack([
            np.random.default_rng(zlib.crc32(item.encode("utf-8"))).standard_normal(self.dimensions)
            for item in items
        ])


class TopicEmbeddingProvider:
    """Phrases mentioning the same topic word get strongly correlated vectors."""

    TOPICS = ("social", "worry")

    def __init__(self, dimensions=300, noise=0.5):
        self.dimensions = dimensions
        self.noise = noise
        rng = np.random.default_rng(7)
        self.bases = {topic: rng.standard_normal(dimensions) for topic in self.TOPICS}

    def embed(self, items):
        rows = []
        for item in items:
            topic = next(t for t in self.TOPICS if t in item.lower())
            rng = np.random.default_rng(zlib.crc32(item.encode("utf-8")))
            rows.append(self.bases[topic] + self.noise * rng.standard_normal(self.dimensions))
        return np.vstack(rows)


TOPIC_ITEMS = [
    "I enjoy social gatherings with friends",
    "Social events give me energy",
    "I seek out social contact when I can",
    "I like being social with strangers",
    "I worry about things going wrong",
    "Small problems make me worry for days",
    "I often worry about my health",
    "I worry that people dislike me",
]


@pytest.fixture
def block_data():
    return make_block_data()


@pytest.fixture
def block_matrix(block_data):
    return WorkingMatrix(block_data, range(block_data.shape[1]))


@pytest.fixture
def fast_estimator():
    return EGAEstimator(network_method="glasso", network_params={"n_lambda": 10})


@pytest.fixture
def hash_provider():
    return HashEmbeddingProvider()


@pytest.fixture
def topic_provider():
    return TopicEmbeddingProvider()


@pytest.fixture
def topic_items():
    return list(TOPIC_ITEMS)
