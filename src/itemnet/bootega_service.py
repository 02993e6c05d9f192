"""
Bootstrap Exploratory Graph Analysis (bootEGA) for item stability.

Observations (rows of the working matrix) are resampled with replacement,
the structure is re-estimated on every resample, and each item's stability
is the frequency with which it lands in its modal dimension.
"""

import logging
import time
from collections import Counter
from collections.abc import Callable
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import linear_sum_assignment

from .ega_service import ISOLATED, EGAEstimator, count_dimensions
from .errors import EstimationError
from .items import WorkingMatrix

logger = logging.getLogger(__name__)


# ============================================================
# Top-level helper function for parallel processing
# ============================================================
def _run_bootstrap_single(
    args: tuple[int, np.ndarray, list[str], EGAEstimator]
) -> dict[str, int] | None:
    """Runs a single bootstrap resample.

    Designed to be called by ProcessPoolExecutor.map; everything it needs
    travels in ``args`` and it touches no shared state.

    Args:
        args: A tuple of (iteration_seed, data, item_labels, estimator).

    Returns:
        The community membership on the resample, or None if estimation failed.
    """
    iteration_seed, data, item_labels, estimator = args

    rng = np.random.default_rng(iteration_seed)
    rows = rng.integers(0, data.shape[0], size=data.shape[0])

    try:
        _, membership = estimator.estimate(data[rows, :], item_labels)
    except (EstimationError, ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        logger.debug("Bootstrap resample (seed %d) failed: %s", iteration_seed, e)
        return None
    return membership


def spawn_seeds(seed: int | None, n: int) -> list[int]:
    """Draws one seed per resample from a master seed."""
    rng = np.random.default_rng(seed)
    return [int(s) for s in rng.integers(0, 2**32 - 1, size=n)]


def run_resamples(
    func: Callable,
    tasks_args: list,
    use_parallel: bool = False,
    max_workers: int | None = None,
    progress_callback: Callable | None = None,
    label: str = "Resampling",
) -> list:
    """Applies ``func`` to every task, in a process pool or sequentially.

    Results come back in task order whatever the execution mode, so seeded
    runs are reproducible. If the pool cannot be used (e.g. unpicklable
    arguments), execution falls back to sequential.
    """
    n_tasks = len(tasks_args)
    start_time = time.time()
    results = []

    def report(done: int, step: int):
        if progress_callback and done % max(1, n_tasks // step) == 0:
            elapsed = time.time() - start_time
            eta = (elapsed / done) * (n_tasks - done)
            progress_callback(done / n_tasks * 100, f"{label} {done}/{n_tasks}... (ETA: {eta:.0f}s)")

    if use_parallel:
        try:
            with ProcessPoolExecutor(max_workers=max_workers) as executor:
                for i, result in enumerate(executor.map(func, tasks_args)):
                    results.append(result)
                    report(i + 1, 20)
        except Exception as e:
            logger.warning("Error during parallel execution (%s); falling back to sequential execution.", e)
            use_parallel = False
            results = []

    if not use_parallel:
        for i, args in enumerate(tasks_args):
            results.append(func(args))
            report(i + 1, 10)

    if progress_callback:
        progress_callback(100, f"{label} completed ({time.time() - start_time:.1f}s).")
    return results


def run_bootega_resampling(
    matrix: WorkingMatrix,
    estimator: EGAEstimator,
    n_bootstrap: int = 100,
    seed: int | None = None,
    use_parallel: bool = False,
    max_workers: int | None = None,
    progress_callback: Callable | None = None,
) -> list[dict[str, int] | None]:
    """Performs ``n_bootstrap`` case resamples of the working matrix.

    Returns:
        One membership dict (or None for a failed estimation) per resample,
        ordered by resample index.
    """
    labels = matrix.labels
    data = np.array(matrix.data)
    tasks_args = [
        (iteration_seed, data, labels, estimator)
        for iteration_seed in spawn_seeds(seed, n_bootstrap)
    ]
    return run_resamples(
        _run_bootstrap_single,
        tasks_args,
        use_parallel=use_parallel,
        max_workers=max_workers,
        progress_callback=progress_callback,
        label="bootEGA resampling",
    )


def homogenize_membership(
    reference: dict[str, int],
    membership: dict[str, int],
) -> dict[str, int]:
    """Relabels ``membership`` so its communities match ``reference`` ids.

    Community ids from separate estimations are arbitrary. Each bootstrap
    community is matched to the reference community it overlaps most
    (Hungarian assignment on the contingency table); communities left
    unmatched get fresh ids above the reference ids. Isolated nodes stay -1.
    """
    ref_ids = sorted({c for c in reference.values() if c != ISOLATED})
    boot_ids = sorted({c for c in membership.values() if c != ISOLATED})
    if not boot_ids:
        return dict(membership)

    contingency = np.zeros((len(boot_ids), max(len(ref_ids), 1)), dtype=int)
    boot_pos = {c: i for i, c in enumerate(boot_ids)}
    ref_pos = {c: j for j, c in enumerate(ref_ids)}
    for item, boot_comm in membership.items():
        ref_comm = reference.get(item, ISOLATED)
        if boot_comm != ISOLATED and ref_comm != ISOLATED:
            contingency[boot_pos[boot_comm], ref_pos[ref_comm]] += 1

    mapping = {}
    if ref_ids:
        rows, cols = linear_sum_assignment(-contingency)
        for r, c in zip(rows, cols):
            if contingency[r, c] > 0:
                mapping[boot_ids[r]] = ref_ids[c]

    next_id = (max(ref_ids) + 1) if ref_ids else 0
    for boot_comm in boot_ids:
        if boot_comm not in mapping:
            mapping[boot_comm] = next_id
            next_id += 1

    return {
        item: (ISOLATED if comm == ISOLATED else mapping[comm])
        for item, comm in membership.items()
    }


@dataclass
class StabilityResult:
    """Per-item bootEGA stability.

    ``scores`` holds the frequency of each item's modal dimension across the
    valid resamples; ``empirical_replication`` the frequency with which the
    item replicated its dimension in the empirical (full-sample) EGA.
    """

    scores: dict[str, float]
    modal_dimension: dict[str, int] = field(default_factory=dict)
    empirical_membership: dict[str, int] = field(default_factory=dict)
    empirical_replication: dict[str, float] = field(default_factory=dict)
    n_valid: int = 0
    n_bootstrap: int = 0
    dimension_frequency: dict[int, int] = field(default_factory=dict)

    @property
    def median_dimensions(self) -> float:
        if not self.dimension_frequency:
            return np.nan
        counts = [k for k, n in self.dimension_frequency.items() for _ in range(n)]
        return float(np.median(counts))


def calculate_item_stability(
    item_labels: list[str],
    reference: dict[str, int],
    bootstrap_memberships: list[dict[str, int] | None],
) -> StabilityResult:
    """Aggregates aligned bootstrap memberships into per-item stability.

    The isolated marker (-1) never counts as the modal dimension: an item
    left isolated in every resample scores 0. Ties in the modal dimension
    are broken toward the smallest community id.

    Raises:
        EstimationError: If every resample failed.
    """
    valid = [m for m in bootstrap_memberships if m is not None]
    if not valid:
        raise EstimationError(
            f"All {len(bootstrap_memberships)} bootstrap resamples failed; cannot calculate stability.",
            stage="bootega",
        )

    aligned = [homogenize_membership(reference, m) for m in valid]

    scores = {}
    modal_dimension = {}
    empirical_replication = {}
    for item in item_labels:
        assignments = Counter(m.get(item, ISOLATED) for m in aligned)
        # Isolation is not a dimension; an item never placed in one scores 0
        placed = {c: n for c, n in assignments.items() if c != ISOLATED}
        if placed:
            top_count = max(placed.values())
            modal = min(c for c, n in placed.items() if n == top_count)
        else:
            top_count, modal = 0, ISOLATED
        modal_dimension[item] = modal
        scores[item] = top_count / len(aligned)
        empirical_replication[item] = placed.get(reference.get(item, ISOLATED), 0) / len(aligned)

    dimension_frequency = Counter(count_dimensions(m) for m in valid)
    return StabilityResult(
        scores=scores,
        modal_dimension=modal_dimension,
        empirical_membership=dict(reference),
        empirical_replication=empirical_replication,
        n_valid=len(valid),
        n_bootstrap=len(bootstrap_memberships),
        dimension_frequency=dict(sorted(dimension_frequency.items())),
    )


def classify_stability(scores: dict[str, float], threshold: float) -> tuple[list[str], list[str]]:
    """Splits items into (stable, unstable); a score equal to the threshold is stable."""
    stable = [item for item, score in scores.items() if score >= threshold]
    unstable = [item for item, score in scores.items() if not score >= threshold]
    return stable, unstable


def bootstrap_stability(
    matrix: WorkingMatrix,
    estimator: EGAEstimator,
    n_bootstrap: int = 100,
    seed: int | None = None,
    use_parallel: bool = False,
    max_workers: int | None = None,
    progress_callback: Callable | None = None,
) -> StabilityResult:
    """Runs bootEGA on a working matrix with at least two items.

    Args:
        matrix: Observations x items working matrix.
        estimator: Graph/community estimator applied to every resample.
        n_bootstrap: Number of resamples.
        seed: Master seed; the same seed reproduces the same scores.
        use_parallel: Run resamples in a process pool.
        max_workers: Pool size (None for the executor default).
        progress_callback: Called with (percentage, message).

    Returns:
        The per-item StabilityResult, keyed by the matrix's labels.

    Raises:
        ValueError: If the matrix has fewer than two items.
        EstimationError: If the empirical EGA or every resample fails.
    """
    if matrix.n_items < 2:
        raise ValueError(f"bootEGA requires at least 2 items, but got {matrix.n_items}.")

    labels = matrix.labels
    _, reference = estimator.estimate(matrix.data, labels)

    memberships = run_bootega_resampling(
        matrix,
        estimator,
        n_bootstrap=n_bootstrap,
        seed=seed,
        use_parallel=use_parallel,
        max_workers=max_workers,
        progress_callback=progress_callback,
    )
    result = calculate_item_stability(labels, reference, memberships)
    if result.n_valid < n_bootstrap:
        logger.warning("%d of %d bootstrap resamples failed and were ignored.",
                       n_bootstrap - result.n_valid, n_bootstrap)
    return result
