"""
Service functions for Exploratory Graph Analysis (EGA).

This module contains the graph/community estimator shared by every stage of
the pipeline: correlation of the item columns of an observations x items
matrix, network construction (EBICglasso, TMFG), Walktrap community
detection, and the TEFI and NMI fit metrics.
"""

import logging
import warnings
from dataclasses import dataclass, field

import igraph as ig
import networkx as nx
import numpy as np
from sklearn.covariance import graphical_lasso, shrunk_covariance
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import normalized_mutual_info_score

from .errors import EstimationError

logger = logging.getLogger(__name__)

ISOLATED = -1


def calculate_correlation_matrix(data: np.ndarray) -> np.ndarray:
    """Pearson correlation between the columns (items) of a data matrix.

    Args:
        data: An (n_observations, n_items) array. For embeddings the
            observations are the embedding dimensions.

    Returns:
        A square (n_items, n_items) correlation matrix with a unit diagonal.

    Raises:
        ValueError: If ``data`` is not 2-dimensional or has fewer than 2 rows or columns.
        EstimationError: If any item column is constant (correlation undefined).

    Example:
        >>> data = np.array([[1.0, 2.0, 1.0], [2.0, 4.0, 0.0], [3.0, 6.5, 2.0]])
        >>> calculate_correlation_matrix(data).shape
        (3, 3)
    """
    data = np.asarray(data, dtype=float)
    if data.ndim != 2:
        raise ValueError(f"Data must be 2-dimensional (n_observations x n_items), got {data.ndim} dimensions.")
    if data.shape[0] < 2 or data.shape[1] < 2:
        raise ValueError(f"Correlation needs at least 2 observations and 2 items, got shape {data.shape}.")

    constant = np.flatnonzero(np.std(data, axis=0) < 1e-12)
    if constant.size:
        raise EstimationError(f"Items at columns {constant.tolist()} are constant; correlation is undefined.")

    correlation = np.corrcoef(data, rowvar=False)
    np.fill_diagonal(correlation, 1.0)
    return np.clip(correlation, -1.0, 1.0)


def construct_tmfg_network(
    similarity_matrix: np.ndarray,
    item_labels: list[str] | None = None,
) -> nx.Graph:
    """Constructs a Triangulated Maximally Filtered Graph (TMFG).

    Based on the algorithm described in Massara et al. (2016). Starts from the
    three nodes with the highest total similarity and attaches every remaining
    node to its three strongest neighbours already in the graph, giving
    3*(n-2) edges for n > 2 nodes.

    Args:
        similarity_matrix: A square (n_items, n_items) array of pairwise
            similarities (e.g. correlations). Diagonal elements are ignored.
        item_labels: Optional node labels; length must match the matrix.

    Returns:
        A networkx.Graph whose edges carry the original similarity as 'weight'.

    Raises:
        ValueError: If the matrix is not square, has fewer than 3 nodes, or
            the labels do not match.

    References:
        Massara, G. P., Di Matteo, T., & Aste, T. (2016). Network filtering for
        big data: Triangulated Maximally Filtered Graph. Journal of Complex Networks,
        5(2), 161-178. https://doi.org/10.1093/comnet/cnw015
    """
    if not isinstance(similarity_matrix, np.ndarray):
        raise TypeError("Input similarity_matrix must be a NumPy array.")
    if similarity_matrix.ndim != 2 or similarity_matrix.shape[0] != similarity_matrix.shape[1]:
        raise ValueError("Input similarity_matrix must be a square 2D array.")

    n_items = similarity_matrix.shape[0]
    if n_items < 3:
        raise ValueError(f"TMFG requires at least 3 nodes, but got {n_items}.")

    if item_labels is not None:
        if len(item_labels) != n_items:
            raise ValueError("Length of item_labels must match the dimension of the similarity matrix.")
        node_ids = list(item_labels)
    else:
        node_ids = list(range(n_items))

    # The algorithm prioritizes stronger relationships regardless of sign
    weights = np.abs(similarity_matrix.copy())
    np.fill_diagonal(weights, -np.inf)

    G = nx.Graph()
    G.add_nodes_from(node_ids)
    nodes_in_graph = []

    # 1. Initial triangle: nodes with the highest combined similarity
    off_diagonal = np.where(np.isfinite(weights), weights, 0.0)
    initial_node_indices = [int(i) for i in np.argsort(off_diagonal.sum(axis=1))[-3:]]
    for i, u in enumerate(initial_node_indices):
        nodes_in_graph.append(u)
        for v in initial_node_indices[i + 1:]:
            G.add_edge(node_ids[u], node_ids[v], weight=float(similarity_matrix[u, v]))

    # 2. Attach remaining nodes to their three strongest neighbours
    for node_k in (i for i in range(n_items) if i not in initial_node_indices):
        neighbor_similarities = weights[node_k, nodes_in_graph]
        best = np.argsort(neighbor_similarities)[-3:]
        for position in best:
            neighbor_node = nodes_in_graph[position]
            G.add_edge(
                node_ids[node_k], node_ids[neighbor_node],
                weight=float(similarity_matrix[node_k, neighbor_node]),
            )
        nodes_in_graph.append(node_k)

    expected_edges = 3 * (n_items - 2)
    if G.number_of_edges() != expected_edges:
        logger.warning(
            "TMFG expected %d edges, but graph has %d. This might occur with degenerate similarity matrices.",
            expected_edges, G.number_of_edges(),
        )

    return G


def _ebic(precision: np.ndarray, covariance: np.ndarray, n_observations: int, gamma: float) -> float:
    """Extended BIC of a Gaussian graphical model (Foygel & Drton, 2010)."""
    n_items = covariance.shape[0]
    sign, logdet = np.linalg.slogdet(precision)
    if sign <= 0:
        return np.inf
    log_likelihood = n_observations / 2 * (logdet - np.trace(covariance @ precision))
    n_edges = int(np.count_nonzero(np.abs(precision[np.triu_indices(n_items, k=1)]) > 1e-8))
    return (
        -2 * log_likelihood
        + n_edges * np.log(n_observations)
        + 4 * n_edges * gamma * np.log(n_items)
    )


def _ensure_positive_definite(correlation_matrix: np.ndarray) -> np.ndarray:
    """Shrinks and jitters a correlation matrix that is not positive definite."""
    min_eigenvalue = np.linalg.eigvalsh(correlation_matrix).min()
    if min_eigenvalue > 1e-8:
        return correlation_matrix

    shrunk = shrunk_covariance(correlation_matrix)
    # Jitter scaled to the off-diagonal spread
    std_dev = np.std(shrunk[np.triu_indices_from(shrunk, k=1)])
    epsilon = 1e-4 * std_dev if std_dev > 1e-8 else 1e-6
    logger.debug("Correlation matrix not positive definite (min eigenvalue %.2e); shrinking.", min_eigenvalue)
    return shrunk + np.eye(shrunk.shape[0]) * epsilon


def construct_ebicglasso_network(
    correlation_matrix: np.ndarray,
    n_observations: int,
    item_labels: list[str] | None = None,
    gamma: float = 0.5,
    n_lambda: int = 30,
    lambda_min_ratio: float = 0.01,
    max_iter: int = 100,
) -> nx.Graph:
    """Constructs a regularized partial correlation network with EBICglasso.

    Fits the graphical lasso over a log-spaced path of penalties and keeps the
    precision matrix with the lowest extended BIC. Non-zero entries of that
    precision matrix become edges weighted by partial correlation.

    Args:
        correlation_matrix: Square (n_items, n_items) correlation matrix.
        n_observations: Number of observations the correlations came from.
        item_labels: Optional node labels; length must match the matrix.
        gamma: EBIC hyperparameter (0 gives BIC; 0.5 is the usual default).
        n_lambda: Number of penalties on the path.
        lambda_min_ratio: Smallest penalty as a fraction of the largest.
        max_iter: Maximum iterations of each graphical lasso fit.

    Returns:
        A networkx.Graph with a node per item; edge 'weight' is the partial
        correlation.

    Raises:
        ValueError: If inputs are invalid.
        EstimationError: If no penalty on the path gives a usable fit.
    """
    if not isinstance(correlation_matrix, np.ndarray):
        raise TypeError("Input correlation_matrix must be a NumPy array.")
    if correlation_matrix.ndim != 2 or correlation_matrix.shape[0] != correlation_matrix.shape[1]:
        raise ValueError("Input correlation_matrix must be a square 2D array.")

    n_items = correlation_matrix.shape[0]
    if n_items < 2:
        raise ValueError(f"Graphical LASSO requires at least 2 nodes, but got {n_items}.")
    if n_observations < 2:
        raise ValueError(f"EBICglasso requires at least 2 observations, but got {n_observations}.")

    if item_labels is not None:
        if len(item_labels) != n_items:
            raise ValueError("Length of item_labels must match the dimension of the correlation matrix.")
        node_ids = list(item_labels)
    else:
        node_ids = list(range(n_items))

    covariance = _ensure_positive_definite(correlation_matrix)

    off_diagonal = np.abs(covariance[np.triu_indices(n_items, k=1)])
    lambda_max = max(float(off_diagonal.max()), 1e-4)
    lambdas = np.exp(np.linspace(np.log(lambda_max * lambda_min_ratio), np.log(lambda_max), n_lambda))

    best_precision = None
    best_ebic = np.inf
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=ConvergenceWarning)
        for alpha in lambdas:
            try:
                _, precision = graphical_lasso(covariance, alpha=float(alpha), max_iter=max_iter)
            except FloatingPointError:
                continue
            ebic = _ebic(precision, covariance, n_observations, gamma)
            if ebic < best_ebic:
                best_ebic, best_precision = ebic, precision

    if best_precision is None:
        raise EstimationError(
            "Graphical LASSO failed for every penalty on the path. "
            "The correlation matrix might be too ill-conditioned."
        )

    G = nx.Graph()
    G.add_nodes_from(node_ids)

    # pcorr(i,j) = -prec(i,j) / sqrt(prec(i,i) * prec(j,j))
    for i in range(n_items):
        for j in range(i + 1, n_items):
            if abs(best_precision[i, j]) > 1e-8:
                denom = np.sqrt(best_precision[i, i] * best_precision[j, j])
                if denom > 1e-8:
                    partial_corr = float(np.clip(-best_precision[i, j] / denom, -1.0, 1.0))
                    G.add_edge(node_ids[i], node_ids[j], weight=partial_corr)

    return G


def detect_communities_walktrap(
    graph: nx.Graph,
    weights: str | None = "weight",
    steps: int = 4,
) -> tuple[dict[str | int, int], ig.VertexClustering | None]:
    """Detects communities using the Walktrap algorithm from igraph.

    Walktrap runs on the nodes with positive strength; zero-strength
    (isolated) nodes are assigned community -1. Negative edge weights are
    used in absolute value.

    Args:
        graph: The networkx Graph to analyze.
        weights: The edge attribute holding weights, or None for unweighted.
        steps: Length of the random walks.

    Returns:
        A tuple of the membership dict (node -> community id) and the igraph
        VertexClustering for the analyzed subgraph (None if there was nothing
        to cluster).

    Raises:
        ValueError: If an edge is missing the weight attribute.
    """
    if graph.number_of_nodes() == 0:
        return {}, None

    nx_nodes = list(graph.nodes())
    node_map_nx_to_ig = {node: i for i, node in enumerate(nx_nodes)}

    edge_list = []
    weight_list = []
    n_negative = 0
    for u, v, data in graph.edges(data=True):
        weight_val = 1.0
        if weights:
            weight_val = data.get(weights)
            if weight_val is None:
                raise ValueError(f"Edge ({u}, {v}) is missing the specified weight attribute '{weights}'.")
            if weight_val < 0:
                n_negative += 1
                weight_val = abs(weight_val)
        if weight_val > 0:
            edge_list.append((node_map_nx_to_ig[u], node_map_nx_to_ig[v]))
            weight_list.append(float(weight_val))
    if n_negative:
        logger.debug("Using absolute values for %d negative edge weights in Walktrap.", n_negative)

    igraph_graph = ig.Graph(n=len(nx_nodes), edges=edge_list, directed=False)
    igraph_graph.es["weight"] = weight_list

    strengths = igraph_graph.strength(weights="weight")
    positive_strength_vertices = [i for i, s in enumerate(strengths) if s > 0]

    membership = {node: ISOLATED for node in nx_nodes}
    if not positive_strength_vertices:
        return membership, None

    subgraph = igraph_graph.induced_subgraph(positive_strength_vertices)
    clustering = subgraph.community_walktrap(weights="weight", steps=steps).as_clustering()

    for sub_idx, comm_id in enumerate(clustering.membership):
        membership[nx_nodes[positive_strength_vertices[sub_idx]]] = int(comm_id)

    return membership, clustering


def calculate_tefi(
    similarity_matrix: np.ndarray,
    membership: dict[str | int, int],
    *,
    item_order: list[str],
) -> float:
    """Calculates the Total Entropy Fit Index (TEFI) variant.

    The standardized difference between the average within-community and the
    average between-community similarity. Higher is better. Isolated nodes
    (community -1) are ignored.

    Args:
        similarity_matrix: The (n_items, n_items) correlation/similarity matrix.
        membership: Mapping of node id to community id.
        item_order: Node ids in matrix row/column order.

    Returns:
        The TEFI score, or NaN when fewer than two communities exist or the
        similarities have no spread.

    Raises:
        ValueError: If ``item_order`` does not match the matrix or membership.
    """
    n_items = similarity_matrix.shape[0]
    if n_items == 0:
        return np.nan

    missing_items = [item for item in item_order if item not in membership]
    if missing_items:
        raise ValueError(f"Items in item_order not found in membership: {missing_items}")
    if len(item_order) != n_items:
        raise ValueError(f"Mismatch between number of items in item_order ({len(item_order)}) "
                         f"and similarity matrix dimension ({n_items}).")

    valid_communities = {cid for cid in membership.values() if cid != ISOLATED}
    if len(valid_communities) < 2:
        return np.nan

    within_community_similarities = []
    between_community_similarities = []
    for i_idx in range(n_items):
        comm_i = membership[item_order[i_idx]]
        if comm_i == ISOLATED:
            continue
        for j_idx in range(i_idx + 1, n_items):
            comm_j = membership[item_order[j_idx]]
            if comm_j == ISOLATED:
                continue
            if comm_i == comm_j:
                within_community_similarities.append(similarity_matrix[i_idx, j_idx])
            else:
                between_community_similarities.append(similarity_matrix[i_idx, j_idx])

    if not within_community_similarities or not between_community_similarities:
        return np.nan

    global_std_dev = np.std(within_community_similarities + between_community_similarities)
    if global_std_dev < 1e-9:
        return np.nan

    avg_within = np.mean(within_community_similarities)
    avg_between = np.mean(between_community_similarities)
    return float((avg_within - avg_between) / global_std_dev)


def calculate_nmi(membership1: dict[str | int, int], membership2: dict[str | int, int]) -> float:
    """Normalized Mutual Information between two clusterings of the same nodes.

    Returns:
        NMI in [0, 1], or NaN for empty memberships.

    Raises:
        ValueError: If the memberships cover different node sets.
    """
    nodes1 = set(membership1)
    nodes2 = set(membership2)
    if nodes1 != nodes2:
        raise ValueError(f"Memberships have different node sets: {nodes1 - nodes2} vs {nodes2 - nodes1}")

    common_nodes = sorted(nodes1, key=str)
    if not common_nodes:
        return np.nan

    labels1 = [membership1[node] for node in common_nodes]
    labels2 = [membership2[node] for node in common_nodes]
    return float(normalized_mutual_info_score(labels1, labels2))


def count_dimensions(membership: dict) -> int:
    """Number of communities, not counting isolated nodes."""
    return len({cid for cid in membership.values() if cid != ISOLATED})


@dataclass
class EGAResult:
    graph: nx.Graph
    membership: dict[str, int]
    correlation: np.ndarray
    item_labels: list[str]

    @property
    def n_dimensions(self) -> int:
        return count_dimensions(self.membership)

    @property
    def tefi(self) -> float:
        return calculate_tefi(self.correlation, self.membership, item_order=self.item_labels)


@dataclass(frozen=True)
class EGAEstimator:
    """Graph/community estimator: correlations -> network -> Walktrap.

    Instances are plain data so they can be shipped to worker processes.
    """

    network_method: str = "glasso"
    network_params: dict = field(default_factory=dict)
    walktrap_params: dict = field(default_factory=lambda: {"steps": 4})

    @classmethod
    def from_config(cls, config) -> "EGAEstimator":
        return cls(
            network_method=config.network_method,
            network_params=config.network_params,
            walktrap_params=config.walktrap_params,
        )

    def build_network(self, data: np.ndarray, item_labels: list[str]) -> tuple[nx.Graph, np.ndarray]:
        """Returns the estimated network and the correlation matrix it came from."""
        correlation = calculate_correlation_matrix(data)
        method = self.network_method.lower()
        if method == "glasso":
            graph = construct_ebicglasso_network(
                correlation, n_observations=data.shape[0], item_labels=item_labels, **self.network_params
            )
        elif method == "tmfg":
            if len(item_labels) < 3:
                graph = nx.Graph()
                graph.add_nodes_from(item_labels)
                graph.add_edge(item_labels[0], item_labels[1], weight=float(correlation[0, 1]))
            else:
                graph = construct_tmfg_network(correlation, item_labels=item_labels, **self.network_params)
        else:
            raise ValueError(f"Unknown network method: {self.network_method}")
        return graph, correlation

    def estimate(self, data: np.ndarray, item_labels: list[str]) -> tuple[nx.Graph, dict[str, int]]:
        """Estimates the network and its communities for an observations x items matrix."""
        graph, _ = self.build_network(data, item_labels)
        membership, _ = detect_communities_walktrap(graph, **self.walktrap_params)
        return graph, membership

    def estimate_result(self, data: np.ndarray, item_labels: list[str]) -> EGAResult:
        graph, correlation = self.build_network(data, item_labels)
        membership, _ = detect_communities_walktrap(graph, **self.walktrap_params)
        return EGAResult(graph=graph, membership=membership, correlation=correlation, item_labels=list(item_labels))
