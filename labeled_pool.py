"""
Labeled pool bookkeeping: loading, partitioning and stratified seeding.

The pool holds every example (id, features, ``flagged`` label). It is split
once into a fixed test set and an unlabeled pool whose labels are "hidden"
until the oracle reveals them. The initial training set is drawn per class
from the full pool, independently of that split.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import polars as pl

from experiment_config import DEFAULT_ID_COLUMN, DEFAULT_LABEL_COLUMN
from experiment_errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)

__all__ = [
    "LabeledPool",
    "load_labeled_pool",
    "partition",
    "stratified_initial_set",
]


class LabeledPool:
    """All examples of an experiment, indexed by identifier.

    Parameters
    ----------
    frame : pl.DataFrame
        One row per example: an id column, a boolean (or 0/1) label column and
        numeric feature columns.
    id_column : str, default "id"
        Unique identifier column.
    label_column : str, default "flagged"
        Ground-truth label, also used as the stratification key.
    feature_columns : list[str], optional
        Feature columns. Defaults to every column except id and label.
    """

    def __init__(
        self,
        frame: pl.DataFrame,
        id_column: str = DEFAULT_ID_COLUMN,
        label_column: str = DEFAULT_LABEL_COLUMN,
        feature_columns: list[str] | None = None,
    ):
        for col in (id_column, label_column):
            if col not in frame.columns:
                raise ConfigurationError(f"pool is missing required column {col!r}", step="loading")

        if feature_columns is None:
            feature_columns = [c for c in frame.columns if c not in (id_column, label_column)]
        if not feature_columns:
            raise ConfigurationError("pool has no feature columns", step="loading")

        if frame[id_column].n_unique() != len(frame):
            raise ConfigurationError(f"identifier column {id_column!r} has duplicates", step="loading")
        if frame[label_column].null_count() > 0:
            raise ConfigurationError(f"label column {label_column!r} has missing values", step="loading")

        self.frame = frame
        self.id_column = id_column
        self.label_column = label_column
        self.feature_columns = list(feature_columns)

        self._ids = frame[id_column].to_numpy()
        self._labels = frame[label_column].cast(pl.Int8).to_numpy()
        self._features = frame.select(self.feature_columns).to_numpy().astype(np.float32)
        self._row_of = {key: row for row, key in enumerate(self._ids.tolist())}

        self._features.setflags(write=False)
        self._labels.setflags(write=False)

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"LabeledPool(n={len(self)}, positives={int(self._labels.sum())}, features={len(self.feature_columns)})"

    @property
    def ids(self) -> np.ndarray:
        return self._ids

    def rows(self, ids) -> np.ndarray:
        """Row positions of ``ids`` in pool order. Unknown ids raise KeyError."""
        return np.fromiter((self._row_of[key] for key in np.asarray(ids).tolist()), dtype=np.int64, count=len(ids))

    def features(self, ids) -> np.ndarray:
        return self._features[self.rows(ids)]

    def labels(self, ids) -> np.ndarray:
        return self._labels[self.rows(ids)]

    def class_ids(self) -> dict[int, np.ndarray]:
        """Identifiers per label value, classes in ascending order."""
        return {int(cls): self._ids[self._labels == cls] for cls in np.unique(self._labels)}

    def reveal_labels(self, ids) -> np.ndarray:
        """Oracle: look up the ground-truth labels of freshly selected examples.

        A real deployment would ask an annotator here; the experiment simulates
        the labeler with the labels it already holds.
        """
        labels = self.labels(ids)
        logger.debug(f"Oracle revealed {len(labels)} labels ({int(labels.sum())} flagged)")
        return labels

    def subset(self, ids) -> pl.DataFrame:
        """Rows of ``ids`` as a DataFrame, in the given order."""
        return self.frame[self.rows(ids).tolist()]


def load_labeled_pool(
    path: str | Path,
    id_column: str = DEFAULT_ID_COLUMN,
    label_column: str = DEFAULT_LABEL_COLUMN,
    feature_columns: list[str] | None = None,
) -> LabeledPool:
    """Load a pool from parquet or CSV."""
    path = Path(path)
    if path.suffix == ".parquet":
        frame = pl.read_parquet(path)
    elif path.suffix in (".csv", ".tsv"):
        frame = pl.read_csv(path, separator="\t" if path.suffix == ".tsv" else ",")
    else:
        raise ConfigurationError(f"unsupported pool format {path.suffix!r} (expected .parquet or .csv)", step="loading")

    pool = LabeledPool(frame, id_column=id_column, label_column=label_column, feature_columns=feature_columns)
    logger.info(f"Loaded {pool!r} from {path}")
    return pool


def partition(
    pool: LabeledPool,
    test_size: int,
    seed: int | np.random.Generator,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Split the pool into a fixed test set and the unlabeled pool.

    Parameters
    ----------
    pool : LabeledPool
        Full labeled pool.
    test_size : int
        Number of test examples, drawn uniformly without replacement.
    seed : int or np.random.Generator
        Seed or generator; identical seed and pool give an identical split.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (test_ids, unlabeled_ids). Disjoint; their union is the pool. The
        unlabeled pool keeps pool order.
    """
    if test_size >= len(pool):
        raise InsufficientDataError(
            f"test_set_size={test_size} leaves no unlabeled examples in a pool of {len(pool)}", step="partition"
        )

    rng = np.random.default_rng(seed)
    test_rows = rng.choice(len(pool), size=test_size, replace=False)
    in_test = np.zeros(len(pool), dtype=bool)
    in_test[test_rows] = True

    test_ids = pool.ids[test_rows]
    unlabeled_ids = pool.ids[~in_test]
    logger.info(f"Partition: test={len(test_ids)}, unlabeled={len(unlabeled_ids)}")
    return test_ids, unlabeled_ids


def stratified_initial_set(
    pool: LabeledPool,
    per_class_count: int,
    seed: int | np.random.Generator,
) -> np.ndarray:
    """
    Draw ``per_class_count`` examples of every class from the full pool.

    Classes are visited in ascending label order and their draws concatenated,
    so the result always contains both classes of a binary pool.

    Raises
    ------
    InsufficientDataError
        If the pool holds a single class or a class has fewer than
        ``per_class_count`` members.
    """
    rng = np.random.default_rng(seed)
    by_class = pool.class_ids()
    if len(by_class) < 2:
        raise InsufficientDataError(
            f"pool holds a single class {list(by_class)}; a binary classifier needs both", step="initial sampling"
        )

    parts = []
    for cls, members in by_class.items():
        if len(members) < per_class_count:
            raise InsufficientDataError(
                f"class {cls} has {len(members)} examples, fewer than initial_examples_per_class={per_class_count}",
                step="initial sampling",
            )
        parts.append(rng.choice(members, size=per_class_count, replace=False))

    initial_ids = np.concatenate(parts)
    logger.info(f"Initial training set: {per_class_count} per class, {len(initial_ids)} total")
    return initial_ids
