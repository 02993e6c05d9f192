import networkx as nx
import numpy as np
import pandas as pd
import pytest

from itemnet.centrality_service import (
    DEFAULT_DROP_PROPORTIONS,
    MEASURES,
    analyze_centrality,
    compute_centrality,
    correlation_stability,
    standardize_centrality,
)
from itemnet.items import WorkingMatrix


@pytest.fixture
def path_graph():
    graph = nx.Graph()
    graph.add_edge("a", "b", weight=0.5)
    graph.add_edge("b", "c", weight=-0.25)
    graph.add_node("d")
    return graph


# =============================================================================
# Indices
# =============================================================================

def test_compute_centrality(path_graph):
    table = compute_centrality(path_graph)
    assert list(table.columns) == MEASURES
    assert table.loc["b", "Strength"] == pytest.approx(0.75)
    assert table.loc["b", "ExpectedInfluence"] == pytest.approx(0.25)
    assert table.loc["c", "ExpectedInfluence"] == pytest.approx(-0.25)
    assert table.loc["b", "Betweenness"] == pytest.approx(1.0)
    assert table.loc["a", "Betweenness"] == 0.0
    # Distances 1/|w|: a-b = 2, b-c = 4
    assert table.loc["b", "Closeness"] == pytest.approx(2 / 6)
    assert table.loc["d", "Closeness"] == 0.0
    assert table.loc["d", "Strength"] == 0.0


def test_compute_centrality_empty_graph():
    assert compute_centrality(nx.Graph()).empty


def test_standardize_centrality():
    raw = pd.DataFrame({"Strength": [1.0, 2.0, 3.0], "Closeness": [0.5, 0.5, 0.5]}, index=["a", "b", "c"])
    z = standardize_centrality(raw)
    assert z["Strength"].tolist() == pytest.approx([-1.0, 0.0, 1.0])
    assert z["Closeness"].tolist() == [0.0, 0.0, 0.0]


# =============================================================================
# CS coefficient
# =============================================================================

def test_correlation_stability_largest_passing_proportion():
    correlations = {
        0.05: [0.9] * 20,
        0.1: [0.9] * 19 + [0.5],
        0.2: [0.9] * 18 + [0.5, 0.5],
        0.3: [0.8] * 20,
    }
    # 0.3 passes and 0.2 does not: the largest passing proportion wins
    assert correlation_stability(correlations, threshold=0.7, level=0.95) == 0.3


def test_correlation_stability_counts_nan_as_failure():
    correlations = {0.05: [np.nan] * 5, 0.1: []}
    assert correlation_stability(correlations) == 0.0


def test_default_drop_proportions():
    assert DEFAULT_DROP_PROPORTIONS[0] == 0.05
    assert DEFAULT_DROP_PROPORTIONS[-1] == 0.75
    assert len(DEFAULT_DROP_PROPORTIONS) == 15


# =============================================================================
# Full analysis
# =============================================================================

def test_analyze_centrality(block_matrix, fast_estimator):
    report = analyze_centrality(
        block_matrix,
        estimator=fast_estimator,
        n_bootstrap=5,
        case_drop_n_bootstrap=4,
        drop_proportions=(0.1, 0.3, 0.5),
        seed=0,
    )
    assert report.item_labels == block_matrix.labels
    assert list(report.standardized.index) == block_matrix.labels
    assert set(report.cs_coefficients) == set(MEASURES)
    assert all(cs in (0.0, 0.1, 0.3, 0.5) for cs in report.cs_coefficients.values())
    assert list(report.case_drop.index) == [0.1, 0.3, 0.5]

    table = report.table()
    assert table.shape == (block_matrix.n_items, 3 * len(MEASURES))
    assert (table["Strength_lower"] <= table["Strength_upper"]).all()


def test_analyze_centrality_is_reproducible(block_matrix, fast_estimator):
    kwargs = dict(estimator=fast_estimator, n_bootstrap=3, case_drop_n_bootstrap=2,
                  drop_proportions=(0.2,), seed=8)
    first = analyze_centrality(block_matrix, **kwargs)
    second = analyze_centrality(block_matrix, **kwargs)
    pd.testing.assert_frame_equal(first.table(), second.table())
    assert first.cs_coefficients == second.cs_coefficients


def test_analyze_centrality_too_few_items():
    matrix = WorkingMatrix(np.random.default_rng(0).standard_normal((30, 2)), [0, 1])
    assert analyze_centrality(matrix, n_bootstrap=2) is None
