"""
End-to-end item reduction pipeline.

The iteration controller alternates UVA and bootEGA until every remaining
item is stable or the iteration cap is reached. The converged item set is
then given a final structure, mapped back to its phrases, and analyzed for
centrality.
"""

import logging
import os
import warnings
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import partial

import networkx as nx
import numpy as np

from .bootega_service import StabilityResult, bootstrap_stability, classify_stability
from .centrality_service import CentralityReport, analyze_centrality
from .config import PipelineConfig
from .ega_service import EGAEstimator, EGAResult, calculate_nmi, count_dimensions
from .embedding_service import EmbeddingProvider, embed_items, get_embedding_provider
from .errors import DegenerateReductionError, EstimationError, NonConvergenceWarning
from .items import ItemArena, WorkingMatrix, build_working_matrix, load_items, prepare_items
from .mapping import group_items_by_cluster
from .uva_service import UVAResult, reduce_redundancy

logger = logging.getLogger(__name__)


@dataclass
class IterationRecord:
    """Counts and scores from one pass of the stability loop.

    Item references are original (arena) indices, which stay valid across
    iterations.
    """

    iteration: int
    n_input: int
    n_after_reduction: int | None = None
    n_stable: int | None = None
    n_unstable: int | None = None
    removed_by_uva: list[tuple[int, float]] = field(default_factory=list)
    scores: dict[int, float] = field(default_factory=dict)
    unstable: list[int] = field(default_factory=list)
    degenerate: bool = False


@dataclass
class LoopResult:
    matrix: WorkingMatrix
    iterations: int
    converged: bool
    degenerate: bool = False
    records: list[IterationRecord] = field(default_factory=list)
    stability: StabilityResult | None = None
    warning: str | None = None

    @property
    def final_indices(self) -> list[int]:
        return list(self.matrix.indices)


def _check_reduction(before: WorkingMatrix, after: WorkingMatrix) -> None:
    if after.n_items > before.n_items or not set(after.indices) <= set(before.indices):
        raise RuntimeError(
            f"Redundancy reduction must only drop items: {before.n_items} items became {after.n_items}."
        )


def run_stability_loop(
    matrix: WorkingMatrix,
    reducer: Callable[[WorkingMatrix], UVAResult],
    stability_estimator: Callable[[WorkingMatrix], StabilityResult],
    threshold: float = 0.75,
    max_iterations: int = 3,
    progress_callback: Callable | None = None,
) -> LoopResult:
    """Alternates redundancy reduction and bootstrap stability filtering.

    Each iteration reduces the current matrix, scores the survivors with
    bootEGA and keeps the stable ones (score >= threshold). The loop stops
    when no item is unstable, when reduction leaves fewer than two items,
    when no item is stable, or after ``max_iterations`` passes.

    Args:
        matrix: Observations x items matrix to start from.
        reducer: Redundancy reducer; may raise DegenerateReductionError.
        stability_estimator: Returns per-label stability scores.
        threshold: Stability threshold in (0, 1].
        max_iterations: Iteration cap (>= 1).
        progress_callback: Called with (percentage, message) after each iteration.

    Returns:
        The LoopResult with the final matrix. Stopping at the cap with
        unstable items left also emits a NonConvergenceWarning.
    """
    if not 0 < threshold <= 1:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be >= 1, got {max_iterations}")

    current = matrix
    records = []
    stability = None

    for iteration in range(1, max_iterations + 1):
        record = IterationRecord(iteration=iteration, n_input=current.n_items)
        records.append(record)

        try:
            reduction = reducer(current)
            record.removed_by_uva = list(reduction.removed)
            _check_reduction(current, reduction.matrix)
            if reduction.matrix.n_items < 2:
                raise DegenerateReductionError(reduction.matrix, removed=reduction.removed)
        except DegenerateReductionError as exc:
            _check_reduction(current, exc.matrix)
            record.removed_by_uva = list(exc.removed)
            record.n_after_reduction = exc.matrix.n_items
            record.degenerate = True
            # A single survivor is the final set; with none left, fall back to this iteration's input
            final = exc.matrix if exc.matrix.n_items == 1 else current
            logger.warning(
                "Iteration %d: UVA left %d item(s); skipping bootEGA and keeping %d item(s).",
                iteration, exc.matrix.n_items, final.n_items,
            )
            return LoopResult(final, iteration, converged=False, degenerate=True,
                              records=records, stability=stability)

        reduced = reduction.matrix
        record.n_after_reduction = reduced.n_items

        stability = stability_estimator(reduced)
        missing = sorted(set(reduced.labels) - set(stability.scores))
        if missing:
            raise EstimationError(f"No stability score for items {missing}.", stage="bootega")

        stable, unstable = classify_stability(stability.scores, threshold)
        record.scores = {reduced.original_index(label): score for label, score in stability.scores.items()}
        record.unstable = reduced.original_indices(unstable)
        record.n_stable, record.n_unstable = len(stable), len(unstable)

        logger.info(
            "Iteration %d: %d items in, %d kept by UVA, %d stable, %d unstable",
            iteration, record.n_input, reduced.n_items, len(stable), len(unstable),
        )
        if progress_callback:
            progress_callback(
                iteration / max_iterations * 100,
                f"Iteration {iteration}: {len(stable)} stable, {len(unstable)} unstable",
            )

        if not unstable:
            return LoopResult(reduced.select(stable), iteration, converged=True,
                              records=records, stability=stability)

        if not stable:
            message = (
                f"Every item was unstable in iteration {iteration}; "
                f"keeping all {reduced.n_items} items after UVA as a provisional result."
            )
            return _not_converged(reduced, iteration, records, stability, message)

        current = reduced.select(stable)

    message = (
        f"Item stability did not converge within {max_iterations} iteration(s); "
        f"{records[-1].n_unstable} unstable item(s) were dropped in the last iteration "
        f"and the structure is provisional."
    )
    return _not_converged(current, max_iterations, records, stability, message)


def _not_converged(matrix, iteration, records, stability, message) -> LoopResult:
    logger.warning(message)
    warnings.warn(message, NonConvergenceWarning, stacklevel=3)
    return LoopResult(matrix, iteration, converged=False, records=records,
                      stability=stability, warning=message)


@dataclass
class StructureResult:
    membership: dict[str, int]
    graph: nx.Graph
    n_dimensions: int
    tefi: float


def finalize_structure(matrix: WorkingMatrix, estimator: EGAEstimator) -> StructureResult:
    """Single EGA on the final item set.

    With fewer than two items no network can be estimated; every item is
    placed in community 0.
    """
    labels = matrix.labels
    if matrix.n_items < 2:
        graph = nx.Graph()
        graph.add_nodes_from(labels)
        membership = {label: 0 for label in labels}
        return StructureResult(membership, graph, count_dimensions(membership), np.nan)

    result = estimator.estimate_result(matrix.data, labels)
    logger.info("Final structure: %d items in %d dimension(s)", matrix.n_items, result.n_dimensions)
    return StructureResult(result.membership, result.graph, result.n_dimensions, result.tefi)


@dataclass
class PipelineResult:
    config: PipelineConfig
    arena: ItemArena
    n_raw_items: int
    initial_matrix: WorkingMatrix
    initial_structure: EGAResult
    loop: LoopResult
    structure: StructureResult
    clusters: dict[int, list[str]]
    centrality: CentralityReport | None
    nmi: float

    @property
    def final_matrix(self) -> WorkingMatrix:
        return self.loop.matrix

    @property
    def provisional(self) -> bool:
        """True when the loop stopped with unstable items left (a NonConvergenceWarning was issued)."""
        return self.loop.warning is not None


def structure_agreement(initial: EGAResult, initial_matrix: WorkingMatrix,
                        structure: StructureResult, final_matrix: WorkingMatrix) -> float:
    """NMI between the initial and final structures over the final items."""
    if final_matrix.n_items < 2:
        return np.nan
    initial_membership = {}
    for label in final_matrix.labels:
        initial_label = initial_matrix.label_for_index(final_matrix.original_index(label))
        initial_membership[label] = initial.membership[initial_label]
    return calculate_nmi(initial_membership, structure.membership)


def run_pipeline(
    items: str | os.PathLike | Sequence[str],
    config: PipelineConfig | None = None,
    provider: EmbeddingProvider | None = None,
    progress_callback: Callable | None = None,
) -> PipelineResult:
    """Runs the whole analysis for one item set.

    Args:
        items: Path to an item file, or the raw phrases themselves.
        config: Run options; defaults to PipelineConfig().
        provider: Embedding provider; defaults to the configured backend.
        progress_callback: Called with (percentage, message) by the long steps.

    Returns:
        The PipelineResult. Fatal errors propagate as ItemnetError subclasses
        naming the failing stage.
    """
    config = config or PipelineConfig()

    raw_items = load_items(items) if isinstance(items, (str, os.PathLike)) else list(items)
    arena = prepare_items(raw_items, config.exclude)

    provider = provider or get_embedding_provider(config)
    embeddings = embed_items(provider, arena.phrases)
    matrix = build_working_matrix(embeddings, arena)
    logger.info("Working matrix: %d observations x %d items", matrix.n_observations, matrix.n_items)

    estimator = EGAEstimator.from_config(config)
    initial_structure = estimator.estimate_result(matrix.data, matrix.labels)
    logger.info("Initial structure: %d dimension(s)", initial_structure.n_dimensions)

    loop = run_stability_loop(
        matrix,
        reducer=partial(reduce_redundancy, estimator=estimator, wto_threshold=config.wto_threshold),
        stability_estimator=partial(
            bootstrap_stability,
            estimator=estimator,
            n_bootstrap=config.n_bootstrap,
            seed=config.seed,
            use_parallel=config.use_parallel,
            max_workers=config.max_workers,
            progress_callback=progress_callback,
        ),
        threshold=config.stability_threshold,
        max_iterations=config.max_iterations,
        progress_callback=progress_callback,
    )

    structure = finalize_structure(loop.matrix, estimator)
    clusters = group_items_by_cluster(structure.membership, loop.matrix, arena)
    nmi = structure_agreement(initial_structure, matrix, structure, loop.matrix)

    centrality_estimator = (
        estimator if config.network_method == "glasso"
        else EGAEstimator(network_method="glasso", walktrap_params=config.walktrap_params)
    )
    centrality = analyze_centrality(
        loop.matrix,
        estimator=centrality_estimator,
        n_bootstrap=config.centrality_n_bootstrap,
        case_drop_n_bootstrap=config.case_drop_n_bootstrap,
        cs_correlation=config.cs_correlation,
        cs_level=config.cs_level,
        seed=config.seed,
        use_parallel=config.use_parallel,
        max_workers=config.max_workers,
    )

    return PipelineResult(
        config=config,
        arena=arena,
        n_raw_items=len(raw_items),
        initial_matrix=matrix,
        initial_structure=initial_structure,
        loop=loop,
        structure=structure,
        clusters=clusters,
        centrality=centrality,
        nmi=nmi,
    )
