"""
Network centrality of the final item set and its bootstrap stability.

Standardized Strength, Closeness, Betweenness and Expected Influence are
computed on a regularized (EBICglasso) network. A nonparametric bootstrap
gives per-item confidence bands, and a case-dropping bootstrap gives the
correlation stability (CS) coefficient of each measure.
"""

import logging
import warnings
from collections.abc import Callable
from dataclasses import dataclass, field

import networkx as nx
import numpy as np
import pandas as pd
from scipy import stats

from .bootega_service import run_resamples, spawn_seeds
from .ega_service import EGAEstimator
from .errors import EstimationError
from .items import WorkingMatrix

logger = logging.getLogger(__name__)

MEASURES = ["Strength", "Closeness", "Betweenness", "ExpectedInfluence"]
DEFAULT_DROP_PROPORTIONS = tuple(round(float(p), 2) for p in np.linspace(0.05, 0.75, 15))
MIN_CENTRALITY_ITEMS = 3


def compute_centrality(graph: nx.Graph) -> pd.DataFrame:
    """Raw centrality indices for every node of a weighted network.

    Path-based measures use distance = 1/|weight|, per connected component.

    Returns:
        DataFrame indexed by node with one column per measure in MEASURES.
    """
    nodes = list(graph.nodes())
    if not nodes:
        return pd.DataFrame(columns=MEASURES, dtype=float)

    distance_graph = nx.Graph()
    distance_graph.add_nodes_from(nodes)
    for u, v, data in graph.edges(data=True):
        weight = data.get("weight", 1.0)
        if weight != 0:
            distance_graph.add_edge(u, v, weight=weight, distance=1.0 / abs(weight))

    strength = {n: sum(abs(d["weight"]) for _, _, d in distance_graph.edges(n, data=True)) for n in nodes}
    expected_influence = {n: sum(d["weight"] for _, _, d in distance_graph.edges(n, data=True)) for n in nodes}
    betweenness = nx.betweenness_centrality(distance_graph, weight="distance", normalized=False)

    closeness = {}
    for component in nx.connected_components(distance_graph):
        if len(component) > 1:
            closeness.update(nx.closeness_centrality(distance_graph.subgraph(component), distance="distance"))
        else:
            for n in component:
                closeness[n] = 0.0

    return pd.DataFrame(
        {
            "Strength": [strength[n] for n in nodes],
            "Closeness": [closeness[n] for n in nodes],
            "Betweenness": [betweenness[n] for n in nodes],
            "ExpectedInfluence": [expected_influence[n] for n in nodes],
        },
        index=pd.Index(nodes, name="item"),
    )


def standardize_centrality(centrality: pd.DataFrame) -> pd.DataFrame:
    """z-scores each measure (sample sd); measures without spread become 0."""
    std = centrality.std(ddof=1)
    centered = centrality - centrality.mean()
    standardized = centered / std.where(std > 1e-12)
    return standardized.fillna(0.0)


def correlation_stability(
    correlations: dict[float, list[float]],
    threshold: float = 0.7,
    level: float = 0.95,
) -> float:
    """CS coefficient from case-dropping correlations.

    The largest drop proportion for which at least ``level`` of the
    subsamples correlate >= ``threshold`` with the full sample. NaN
    correlations count as failures. Returns 0.0 if no proportion qualifies.
    """
    cs = 0.0
    for proportion, values in correlations.items():
        values = np.asarray(values, dtype=float)
        if values.size == 0:
            continue
        passing = np.mean(np.nan_to_num(values, nan=-np.inf) >= threshold)
        if passing >= level:
            cs = max(cs, float(proportion))
    return cs


def _centrality_single(args: tuple) -> pd.DataFrame | None:
    """Raw centrality on one resample; run by run_resamples."""
    iteration_seed, data, item_labels, estimator, n_rows, replace = args
    rng = np.random.default_rng(iteration_seed)
    rows = rng.choice(data.shape[0], size=n_rows, replace=replace)
    try:
        graph, _ = estimator.build_network(data[rows, :], item_labels)
    except (EstimationError, ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        logger.debug("Centrality resample (seed %d) failed: %s", iteration_seed, e)
        return None
    return compute_centrality(graph).loc[item_labels]


def _spearman(a: pd.Series, b: pd.Series) -> float:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        rho = stats.spearmanr(a.to_numpy(), b.to_numpy()).statistic
    return float(rho)


@dataclass
class CentralityReport:
    item_labels: list[str]
    raw: pd.DataFrame
    standardized: pd.DataFrame
    lower: pd.DataFrame
    upper: pd.DataFrame
    cs_coefficients: dict[str, float]
    # drop proportion x measure: share of subsamples with correlation >= threshold
    case_drop: pd.DataFrame = field(default_factory=pd.DataFrame)
    graph: nx.Graph | None = None

    def table(self) -> pd.DataFrame:
        """Standardized indices with their bootstrap bands, one row per item."""
        columns = {}
        for measure in MEASURES:
            columns[measure] = self.standardized[measure]
            columns[f"{measure}_lower"] = self.lower[measure]
            columns[f"{measure}_upper"] = self.upper[measure]
        return pd.DataFrame(columns)


def analyze_centrality(
    matrix: WorkingMatrix,
    estimator: EGAEstimator | None = None,
    n_bootstrap: int = 100,
    case_drop_n_bootstrap: int = 25,
    drop_proportions: tuple[float, ...] = DEFAULT_DROP_PROPORTIONS,
    cs_correlation: float = 0.7,
    cs_level: float = 0.95,
    seed: int | None = None,
    use_parallel: bool = False,
    max_workers: int | None = None,
    progress_callback: Callable | None = None,
) -> CentralityReport | None:
    """Centrality indices of the final item set with bootstrap stability.

    Args:
        matrix: Final observations x items working matrix.
        estimator: Estimator used for the network; must regularize, so it
            defaults to EBICglasso.
        n_bootstrap: Nonparametric resamples for the confidence bands.
        case_drop_n_bootstrap: Subsamples per drop proportion.
        drop_proportions: Proportions of observations to drop.
        cs_correlation: Correlation the subsample must reach.
        cs_level: Share of subsamples that must reach it.
        seed: Master seed.

    Returns:
        A CentralityReport, or None when the matrix has too few items to
        carry a meaningful network.
    """
    if matrix.n_items < MIN_CENTRALITY_ITEMS:
        logger.warning("Centrality needs at least %d items, got %d; skipping.",
                       MIN_CENTRALITY_ITEMS, matrix.n_items)
        return None

    estimator = estimator or EGAEstimator(network_method="glasso")
    labels = matrix.labels
    data = np.array(matrix.data)
    n_rows = data.shape[0]

    graph, _ = estimator.build_network(data, labels)
    raw = compute_centrality(graph).loc[labels]
    standardized = standardize_centrality(raw)

    seeds = iter(spawn_seeds(seed, n_bootstrap + case_drop_n_bootstrap * len(drop_proportions)))

    # Confidence bands from a nonparametric bootstrap
    band_tasks = [(next(seeds), data, labels, estimator, n_rows, True) for _ in range(n_bootstrap)]
    band_results = [
        standardize_centrality(r) for r in run_resamples(
            _centrality_single, band_tasks, use_parallel, max_workers, progress_callback, "Centrality bootstrap",
        ) if r is not None
    ]
    if band_results:
        stacked = np.stack([r.to_numpy() for r in band_results])
        lower = pd.DataFrame(np.percentile(stacked, 2.5, axis=0), index=raw.index, columns=MEASURES)
        upper = pd.DataFrame(np.percentile(stacked, 97.5, axis=0), index=raw.index, columns=MEASURES)
    else:
        lower = pd.DataFrame(np.nan, index=raw.index, columns=MEASURES)
        upper = lower.copy()

    # Case-dropping bootstrap for the CS coefficient
    correlations = {measure: {} for measure in MEASURES}
    for proportion in drop_proportions:
        n_keep = int(round(n_rows * (1 - proportion)))
        for measure in MEASURES:
            correlations[measure][proportion] = []
        if n_keep < 3:
            continue
        drop_tasks = [
            (next(seeds), data, labels, estimator, n_keep, False) for _ in range(case_drop_n_bootstrap)
        ]
        for result in run_resamples(_centrality_single, drop_tasks, use_parallel, max_workers):
            for measure in MEASURES:
                rho = np.nan if result is None else _spearman(raw[measure], result[measure])
                correlations[measure][proportion].append(rho)

    cs_coefficients = {
        measure: correlation_stability(correlations[measure], cs_correlation, cs_level)
        for measure in MEASURES
    }
    case_drop = pd.DataFrame(
        {
            measure: {
                p: (np.mean(np.nan_to_num(v, nan=-np.inf) >= cs_correlation) if v else np.nan)
                for p, v in correlations[measure].items()
            }
            for measure in MEASURES
        }
    )
    case_drop.index.name = "drop_proportion"

    logger.info("CS coefficients: %s", ", ".join(f"{m}={v:.2f}" for m, v in cs_coefficients.items()))
    return CentralityReport(
        item_labels=labels,
        raw=raw,
        standardized=standardized,
        lower=lower,
        upper=upper,
        cs_coefficients=cs_coefficients,
        case_drop=case_drop,
        graph=graph,
    )
