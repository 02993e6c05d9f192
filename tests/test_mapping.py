import numpy as np
import pytest

from itemnet.errors import MappingError
from itemnet.items import ItemArena, WorkingMatrix
from itemnet.mapping import group_items_by_cluster, map_labels

ARENA = ItemArena(("calm", "tense", "happy", "sad", "restless"))


@pytest.fixture
def matrix():
    # Columns are arena items 1, 3 and 4
    return WorkingMatrix(np.random.default_rng(0).standard_normal((6, 3)), [1, 3, 4])


def test_map_labels_resolves_through_indices(matrix):
    assert map_labels(["i1", "i3"], matrix, ARENA) == {"i1": "tense", "i3": "restless"}


def test_map_labels_unknown_label(matrix):
    with pytest.raises(MappingError):
        map_labels(["i4"], matrix, ARENA)


def test_map_labels_index_outside_arena():
    matrix = WorkingMatrix(np.zeros((2, 1)), [9])
    with pytest.raises(MappingError):
        map_labels(["i1"], matrix, ARENA)


def test_group_items_by_cluster(matrix):
    groups = group_items_by_cluster({"i1": 1, "i2": 0, "i3": 1}, matrix, ARENA)
    assert list(groups) == [0, 1]
    assert groups[0] == ["sad"]
    assert groups[1] == ["tense", "restless"]


def test_group_items_puts_isolated_first(matrix):
    groups = group_items_by_cluster({"i1": 0, "i2": -1, "i3": 0}, matrix, ARENA)
    assert list(groups) == [-1, 0]


def test_group_items_requires_every_column(matrix):
    with pytest.raises(MappingError, match="without a cluster"):
        group_items_by_cluster({"i1": 0, "i2": 0}, matrix, ARENA)


def test_group_items_rejects_foreign_labels(matrix):
    with pytest.raises(MappingError):
        group_items_by_cluster({"i1": 0, "i2": 0, "i3": 0, "i9": 1}, matrix, ARENA)
