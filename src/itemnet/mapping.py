"""
Maps working-matrix labels back to the original phrases and groups them by
cluster.
"""

from collections.abc import Sequence

from .errors import MappingError
from .items import ItemArena, WorkingMatrix


def map_labels(labels: Sequence[str], matrix: WorkingMatrix, arena: ItemArena) -> dict[str, str]:
    """Resolves each label to its phrase through the matrix's index bookkeeping.

    Raises:
        MappingError: If any label is not a column of ``matrix`` or its index
            falls outside the arena.
    """
    return {label: arena.phrase(matrix.original_index(label)) for label in labels}


def group_items_by_cluster(
    membership: dict[str, int],
    matrix: WorkingMatrix,
    arena: ItemArena,
) -> dict[int, list[str]]:
    """Groups phrases by community id.

    Clusters are ordered by id (isolated items, id -1, first) and phrases keep
    the column order of ``matrix``.

    Raises:
        MappingError: If a label cannot be resolved, or a column of ``matrix``
            has no community.
    """
    unassigned = [label for label in matrix.labels if label not in membership]
    if unassigned:
        raise MappingError(f"Items without a cluster assignment: {unassigned}")

    phrases = map_labels(membership.keys(), matrix, arena)
    groups: dict[int, list[str]] = {}
    for label in matrix.labels:
        groups.setdefault(membership[label], []).append(phrases[label])
    return dict(sorted(groups.items()))
