import json

import numpy as np
import pytest

from itemnet.errors import InputError, MappingError
from itemnet.items import (
    ItemArena,
    WorkingMatrix,
    build_working_matrix,
    deduplicate_items,
    exclude_items,
    load_items,
    prepare_items,
)


# =============================================================================
# Loading
# =============================================================================

def test_load_items_json(tmp_path):
    path = tmp_path / "items.json"
    path.write_text(json.dumps({"items": ["a", "b", "a"]}))
    assert load_items(path) == ["a", "b", "a"]


def test_load_items_toml(tmp_path):
    path = tmp_path / "items.toml"
    path.write_text('phrases = ["I feel calm", "I feel tense"]\n')
    assert load_items(path) == ["I feel calm", "I feel tense"]


def test_load_items_csv(tmp_path):
    path = tmp_path / "items.csv"
    path.write_text("item\nI feel calm\nI feel tense\n")
    assert load_items(path) == ["I feel calm", "I feel tense"]


def test_load_items_missing_file(tmp_path):
    with pytest.raises(InputError, match="not found"):
        load_items(tmp_path / "nope.json")


@pytest.mark.parametrize(
    "payload",
    [
        {"a": ["x"], "b": ["y"]},
        {},
        ["x", "y"],
        {"items": "x"},
    ],
)
def test_load_items_requires_one_named_sequence(tmp_path, payload):
    path = tmp_path / "items.json"
    path.write_text(json.dumps(payload))
    with pytest.raises(InputError):
        load_items(path)


def test_load_items_rejects_empty_and_non_string(tmp_path):
    empty = tmp_path / "empty.json"
    empty.write_text(json.dumps({"items": []}))
    with pytest.raises(InputError, match="no items"):
        load_items(empty)

    mixed = tmp_path / "mixed.json"
    mixed.write_text(json.dumps({"items": ["a", 3]}))
    with pytest.raises(InputError, match="non-string"):
        load_items(mixed)


def test_load_items_malformed_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(InputError, match="Could not parse"):
        load_items(path)


def test_load_items_empty_csv(tmp_path):
    path = tmp_path / "items.csv"
    path.write_text("")
    with pytest.raises(InputError, match="Could not parse"):
        load_items(path)


def test_load_items_unsupported_suffix(tmp_path):
    path = tmp_path / "items.txt"
    path.write_text("a\nb\n")
    with pytest.raises(InputError, match="Unsupported"):
        load_items(path)


def test_input_error_names_stage():
    assert "[input]" in str(InputError("bad file"))


# =============================================================================
# Filtering
# =============================================================================

def test_exclude_items_drops_positions():
    assert exclude_items(["a", "b", "c", "d"], [0, 2]) == ["b", "d"]


def test_exclude_items_out_of_range():
    with pytest.raises(InputError, match="out of range"):
        exclude_items(["a", "b"], [5])


def test_deduplicate_preserves_first_occurrence_order():
    items = ["b", "a", " b ", "c", "", "a"]
    assert deduplicate_items(items) == ["b", "a", "c"]


def test_deduplicate_is_idempotent():
    items = ["x", "y", "x", " z", "z ", "y", "w"]
    once = deduplicate_items(items)
    assert deduplicate_items(once) == once


def test_prepare_items_scenario_counts():
    raw = [f"phrase {i}" for i in range(8)] + ["phrase 1", "phrase 5"]
    arena = prepare_items(raw)
    assert len(raw) == 10
    assert len(arena) == 8
    assert arena[0] == "phrase 0"


def test_prepare_items_requires_two_unique():
    with pytest.raises(InputError, match="At least 2"):
        prepare_items(["same", "same", " same "])
    with pytest.raises(InputError, match="empty"):
        prepare_items([])


def test_prepare_items_applies_exclusion_before_dedup():
    arena = prepare_items(["a", "b", "a", "c"], exclude=[0])
    assert arena.phrases == ("b", "a", "c")


def test_arena_phrase_out_of_range():
    arena = ItemArena(("a", "b"))
    with pytest.raises(MappingError):
        arena.phrase(2)


# =============================================================================
# Working matrix
# =============================================================================

@pytest.fixture
def matrix():
    data = np.arange(20, dtype=float).reshape(4, 5)
    return WorkingMatrix(data, [10, 11, 12, 13, 14])


def test_labels_are_positional(matrix):
    assert matrix.labels == ["i1", "i2", "i3", "i4", "i5"]
    assert matrix.n_items == 5
    assert matrix.n_observations == 4


def test_select_carries_original_indices(matrix):
    reduced = matrix.select(["i5", "i2", "i4"])
    assert reduced.labels == ["i1", "i2", "i3"]
    assert reduced.indices == (11, 13, 14)
    assert reduced.original_index("i1") == 11
    np.testing.assert_array_equal(reduced.column("i3"), matrix.column("i5"))

    # A second drop still resolves to the original items
    again = reduced.select(["i3"])
    assert again.original_index("i1") == 14


def test_unknown_label_raises_mapping_error(matrix):
    with pytest.raises(MappingError):
        matrix.original_index("i6")
    with pytest.raises(MappingError):
        matrix.original_index("item 1")


def test_label_for_index(matrix):
    assert matrix.label_for_index(12) == "i3"
    with pytest.raises(MappingError):
        matrix.label_for_index(99)


def test_working_matrix_is_read_only(matrix):
    with pytest.raises(ValueError):
        matrix.data[0, 0] = 1.0


def test_working_matrix_validates_shape():
    with pytest.raises(ValueError):
        WorkingMatrix(np.zeros((3, 2)), [0, 1, 2])
    with pytest.raises(ValueError):
        WorkingMatrix(np.zeros((3, 2)), [0, 0])


def test_build_working_matrix_transposes():
    arena = ItemArena(("a", "b", "c"))
    embeddings = np.arange(12, dtype=float).reshape(3, 4)
    matrix = build_working_matrix(embeddings, arena)
    assert matrix.n_items == 3
    assert matrix.n_observations == 4
    np.testing.assert_array_equal(matrix.column("i2"), embeddings[1])

    with pytest.raises(ValueError):
        build_working_matrix(embeddings[:2], arena)
