"""
Item loading, filtering and index bookkeeping.

Items are held in an immutable ItemArena indexed by their position in the
deduplicated phrase sequence. Every working matrix carries the arena indices
of its columns, so positional labels ("i1", "i2", ...) can always be resolved
back to the original phrase, however many columns have been dropped.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import toml

from .errors import InputError, MappingError

logger = logging.getLogger(__name__)

MIN_ITEMS = 2


# --- Loading ---

def _single_named_sequence(document: dict, path: Path) -> list:
    if not isinstance(document, dict) or len(document) != 1:
        keys = list(document) if isinstance(document, dict) else type(document).__name__
        raise InputError(f"{path} must contain exactly one named sequence of items, found: {keys}")
    (name, values), = document.items()
    if not isinstance(values, list):
        raise InputError(f"Entry {name!r} in {path} is not a sequence.")
    return values


def load_items(path: str | os.PathLike) -> list[str]:
    """Reads the raw item phrases from a persisted file.

    The file must hold exactly one named sequence of strings:
    a JSON object or TOML document with a single key, or a CSV file with a
    single named column.

    Args:
        path: Path to a ``.json``, ``.toml`` or ``.csv`` file.

    Returns:
        The raw phrases in file order (duplicates included).

    Raises:
        InputError: If the file is absent, malformed, or the sequence is empty
            or contains non-string entries.
    """
    path = Path(path)
    if not path.is_file():
        raise InputError(f"Item file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            with path.open(encoding="utf-8") as fh:
                values = _single_named_sequence(json.load(fh), path)
        elif suffix == ".toml":
            values = _single_named_sequence(toml.load(path), path)
        elif suffix == ".csv":
            frame = pd.read_csv(path, dtype=str, keep_default_na=False)
            if frame.shape[1] != 1:
                raise InputError(f"{path} must have exactly one named column, found {list(frame.columns)}")
            values = frame.iloc[:, 0].tolist()
        else:
            raise InputError(f"Unsupported item file type {suffix!r}; use .json, .toml or .csv.")
    except (json.JSONDecodeError, toml.TomlDecodeError, pd.errors.ParserError,
            pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise InputError(f"Could not parse item file {path}: {e}") from e

    if not values:
        raise InputError(f"Item file {path} contains no items.")
    bad = [i for i, v in enumerate(values) if not isinstance(v, str)]
    if bad:
        raise InputError(f"Item file {path} has non-string entries at positions {bad[:10]}.")

    logger.info("Loaded %d raw items from %s", len(values), path)
    return values


# --- Filtering ---

def exclude_items(items: Sequence[str], exclude: Sequence[int] = ()) -> list[str]:
    """Drops the 0-based positions listed in the manual exclusion list."""
    exclude = set(exclude)
    out_of_range = sorted(i for i in exclude if not 0 <= i < len(items))
    if out_of_range:
        raise InputError(f"Exclusion positions out of range for {len(items)} items: {out_of_range}")
    return [item for i, item in enumerate(items) if i not in exclude]


def deduplicate_items(items: Sequence[str]) -> list[str]:
    """Order-preserving removal of blank and repeated phrases.

    Whitespace at either end is stripped before comparison. Applying this
    twice gives the same result as applying it once.
    """
    unique_items = []
    seen_items = set()
    for item in items:
        item = item.strip()
        if not item or item in seen_items:
            continue
        unique_items.append(item)
        seen_items.add(item)
    return unique_items


@dataclass(frozen=True)
class ItemArena:
    """Immutable sequence of the unique phrases, indexed from 0."""

    phrases: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.phrases)

    def __getitem__(self, index: int) -> str:
        return self.phrases[index]

    def phrase(self, index: int) -> str:
        if not 0 <= index < len(self.phrases):
            raise MappingError(f"Original index {index} is outside the {len(self.phrases)} known items.")
        return self.phrases[index]


def prepare_items(raw_items: Sequence[str], exclude: Sequence[int] = ()) -> ItemArena:
    """Applies the exclusion list then deduplication.

    Raises:
        InputError: If fewer than two unique items remain.
    """
    if not raw_items:
        raise InputError("The item list is empty.")
    kept = exclude_items(raw_items, exclude)
    unique_items = deduplicate_items(kept)
    logger.info(
        "Items: %d raw, %d after exclusion, %d unique",
        len(raw_items), len(kept), len(unique_items),
    )
    if len(unique_items) < MIN_ITEMS:
        raise InputError(
            f"At least {MIN_ITEMS} unique items are required, but only {len(unique_items)} remain after filtering."
        )
    return ItemArena(tuple(unique_items))


# --- Working matrix ---

def positional_labels(n_items: int) -> list[str]:
    return [f"i{k}" for k in range(1, n_items + 1)]


class WorkingMatrix:
    """Observations x items matrix plus the arena index of every column.

    Labels are positional ("i1" is the first column) and are regenerated
    whenever columns are dropped; ``original_index`` resolves a label to its
    arena index through the carried index tuple.
    """

    def __init__(self, data: np.ndarray, indices: Sequence[int]):
        data = np.array(data, dtype=float)
        if data.ndim != 2:
            raise ValueError(f"Working matrix must be 2-dimensional, got {data.ndim} dimensions.")
        indices = tuple(int(i) for i in indices)
        if data.shape[1] != len(indices):
            raise ValueError(
                f"Working matrix has {data.shape[1]} columns but {len(indices)} item indices."
            )
        if len(set(indices)) != len(indices):
            raise ValueError("Working matrix item indices must be unique.")
        data.setflags(write=False)
        self._data = data
        self._indices = indices
        self._labels = tuple(positional_labels(len(indices)))
        self._positions = {label: pos for pos, label in enumerate(self._labels)}

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def indices(self) -> tuple[int, ...]:
        return self._indices

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    @property
    def n_items(self) -> int:
        return len(self._indices)

    @property
    def n_observations(self) -> int:
        return self._data.shape[0]

    def __repr__(self) -> str:
        return f"WorkingMatrix({self.n_observations} observations x {self.n_items} items)"

    def position(self, label: str) -> int:
        try:
            return self._positions[label]
        except KeyError:
            raise MappingError(f"Unknown item label {label!r} for a matrix of {self.n_items} items.") from None

    def original_index(self, label: str) -> int:
        """Arena index of the item behind ``label``."""
        return self._indices[self.position(label)]

    def original_indices(self, labels: Sequence[str]) -> list[int]:
        return [self.original_index(label) for label in labels]

    def label_for_index(self, original_index: int) -> str:
        try:
            return self._labels[self._indices.index(original_index)]
        except ValueError:
            raise MappingError(f"Item {original_index} is not a column of this matrix.") from None

    def column(self, label: str) -> np.ndarray:
        return self._data[:, self.position(label)]

    def select(self, labels: Sequence[str]) -> "WorkingMatrix":
        """Restricts to the given labels, keeping their current column order."""
        positions = sorted(self.position(label) for label in labels)
        return WorkingMatrix(
            self._data[:, positions],
            [self._indices[p] for p in positions],
        )


def build_working_matrix(embeddings: np.ndarray, arena: ItemArena) -> WorkingMatrix:
    """Transposes provider output (items x dims) into a dims x items matrix."""
    embeddings = np.asarray(embeddings, dtype=float)
    if embeddings.ndim != 2 or embeddings.shape[0] != len(arena):
        raise ValueError(
            f"Embeddings of shape {embeddings.shape} do not match {len(arena)} items."
        )
    return WorkingMatrix(embeddings.T.copy(), range(len(arena)))
