"""
Unique Variable Analysis (UVA): removal of redundant items by weighted
topological overlap (wTO) on the estimated item network.
"""

import logging
from dataclasses import dataclass, field

import networkx as nx
import numpy as np

from .ega_service import EGAEstimator
from .errors import DegenerateReductionError
from .items import WorkingMatrix

logger = logging.getLogger(__name__)


def calculate_wto(similarity_matrix: np.ndarray) -> np.ndarray:
    """Calculates the Weighted Topological Overlap (wTO) matrix.

    The wTO measure quantifies the similarity between two nodes based not only
    on their direct connection strength but also on the similarity of their
    connection patterns with other nodes in the network.

    The formula used is:
        wTO_ij = (L_ij + a_ij) / (min(k_i, k_j) + 1 - a_ij)
    where:
        - a_ij is the absolute weight between node i and node j
        - L_ij = sum_{k != i, j} (a_ik * a_jk) is the shared neighbor strength
        - k_i = sum_{k != i} a_ik is the strength of node i

    Args:
        similarity_matrix: A square (n_items, n_items) array of weights or
            similarities. Diagonal elements are ignored.

    Returns:
        A square array of pairwise wTO values in [0, 1] with a unit diagonal.

    Raises:
        ValueError: If the matrix is not square and 2D.
        TypeError: If similarity_matrix is not a NumPy array.

    References:
        Zhang, B., & Horvath, S. (2005). A general framework for weighted gene
        co-expression network analysis. Statistical applications in genetics
        and molecular biology, 4(1).
    """
    if not isinstance(similarity_matrix, np.ndarray):
        raise TypeError("Input similarity_matrix must be a NumPy array.")
    if similarity_matrix.ndim != 2 or similarity_matrix.shape[0] != similarity_matrix.shape[1]:
        raise ValueError("Input similarity_matrix must be a square 2D array.")

    n_items = similarity_matrix.shape[0]
    if n_items < 2:
        return np.array([[1.0]]) if n_items == 1 else np.empty((0, 0))

    adj_matrix = np.abs(similarity_matrix.copy())
    np.fill_diagonal(adj_matrix, 0)

    L = adj_matrix @ adj_matrix
    k = np.sum(adj_matrix, axis=1)

    min_k = np.minimum(k[:, np.newaxis], k[np.newaxis, :])
    denominator = min_k + 1 - adj_matrix
    numerator = L + adj_matrix

    # Disconnected pairs (a_ij=0, min_k=0) keep wTO = 0
    wto_matrix = np.zeros_like(adj_matrix)
    valid_denominator = denominator > 1e-12
    wto_matrix[valid_denominator] = numerator[valid_denominator] / denominator[valid_denominator]

    np.fill_diagonal(wto_matrix, 1.0)
    return np.clip(wto_matrix, 0.0, 1.0)


def remove_redundant_items_uva(
    graph: nx.Graph,
    item_labels: list[str],
    wto_threshold: float = 0.20,
) -> tuple[list[str], list[tuple[str, float]]]:
    """Iteratively removes redundant items based on wTO.

    Computes wTO on the absolute edge weights of the current subgraph and
    removes the item with the highest wTO while it is at or above the
    threshold. Ties are broken by removing the candidate with the lowest
    strength. Runs while more than one item remains, so a highly collinear
    set can collapse to a single item.

    Args:
        graph: Network whose nodes are exactly ``item_labels``.
        item_labels: Node labels, in matrix column order.
        wto_threshold: Items with max wTO >= this value are redundant.

    Returns:
        A tuple of the remaining labels (input order) and the removal log of
        (label, wTO at removal).

    Raises:
        TypeError: If graph is not a networkx.Graph.
        ValueError: If labels do not match the graph or the threshold is invalid.
    """
    if not isinstance(graph, nx.Graph):
        raise TypeError("Input 'graph' must be a networkx.Graph object.")
    if not item_labels:
        raise ValueError("Input 'item_labels' cannot be empty.")
    if not 0 <= wto_threshold <= 1:
        raise ValueError("wto_threshold must be between 0 and 1.")
    if set(item_labels) != set(graph.nodes()):
        raise ValueError("item_labels must correspond exactly to the nodes in the input graph.")

    current_items = list(item_labels)
    removed_items_log = []

    while len(current_items) > 1:
        adj_matrix = np.abs(nx.to_numpy_array(graph, nodelist=current_items, weight="weight"))
        np.fill_diagonal(adj_matrix, 0)

        wto_matrix = calculate_wto(adj_matrix)
        np.fill_diagonal(wto_matrix, 0)
        max_wto_scores = np.max(wto_matrix, axis=1)
        max_wto_overall = float(np.max(max_wto_scores))

        if max_wto_overall < wto_threshold:
            break

        candidate_indices = np.where(np.isclose(max_wto_scores, max_wto_overall))[0]
        if len(candidate_indices) > 1:
            # Lower strength means less central to the current structure
            node_strengths = np.sum(adj_matrix, axis=1)
            item_to_remove_idx = candidate_indices[np.argmin(node_strengths[candidate_indices])]
        else:
            item_to_remove_idx = candidate_indices[0]

        item_to_remove = current_items[item_to_remove_idx]
        removed_items_log.append((item_to_remove, max_wto_overall))
        current_items.remove(item_to_remove)

    return current_items, removed_items_log


@dataclass
class UVAResult:
    matrix: WorkingMatrix
    # (original item index, wTO at removal)
    removed: list[tuple[int, float]] = field(default_factory=list)


def reduce_redundancy(
    matrix: WorkingMatrix,
    estimator: EGAEstimator,
    wto_threshold: float = 0.20,
) -> UVAResult:
    """Runs UVA on a working matrix and drops the redundant columns.

    Args:
        matrix: Observations x items working matrix.
        estimator: Network estimator used to build the item graph.
        wto_threshold: wTO cut-off for redundancy.

    Returns:
        The reduced matrix (never more columns than the input) and the
        removal log in original item indices.

    Raises:
        DegenerateReductionError: If fewer than two items remain. The reduced
            matrix travels on the exception.
    """
    if matrix.n_items < 2:
        raise DegenerateReductionError(matrix)

    labels = matrix.labels
    graph, _ = estimator.build_network(matrix.data, labels)
    remaining, removed_log = remove_redundant_items_uva(graph, labels, wto_threshold=wto_threshold)

    reduced = matrix.select(remaining)
    removed = [(matrix.original_index(label), wto) for label, wto in removed_log]
    logger.info("UVA kept %d of %d items (removed %d)", reduced.n_items, matrix.n_items, len(removed))

    if reduced.n_items < 2:
        raise DegenerateReductionError(reduced, removed=removed)
    return UVAResult(matrix=reduced, removed=removed)
