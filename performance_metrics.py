"""
Confusion-matrix based performance metrics and learning-curve tables.

Metrics are looked up by name in ``METRIC_FUNCTIONS`` so the reported set is a
configuration point. Every metric takes (labels, probabilities, predictions).
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
import polars as pl
from sklearn.exceptions import UndefinedMetricWarning
from sklearn.metrics import (
    accuracy_score,
    balanced_accuracy_score,
    brier_score_loss,
    confusion_matrix,
    f1_score,
    log_loss,
    precision_score,
    recall_score,
    roc_auc_score,
)

from classifiers import FittedModel, ModelTrainer
from experiment_config import DEFAULT_CLASSIFICATION_THRESHOLD, DEFAULT_METRICS
from experiment_errors import ConfigurationError
from labeled_pool import LabeledPool

logger = logging.getLogger(__name__)

__all__ = [
    "METRIC_FUNCTIONS",
    "LOWER_IS_BETTER",
    "PerformanceRecord",
    "compute_performance",
    "check_metric_names",
    "fit_and_evaluate",
    "performance_table",
]


def _auc(labels: np.ndarray, probs: np.ndarray, preds: np.ndarray) -> float:
    if len(np.unique(labels)) < 2:
        logger.warning("AUC undefined: evaluated labels contain a single class")
        return float("nan")
    return float(roc_auc_score(labels, probs))


def _specificity(labels: np.ndarray, probs: np.ndarray, preds: np.ndarray) -> float:
    negatives = labels == 0
    if not negatives.any():
        return 0.0
    return float((preds[negatives] == 0).mean())


def _log_loss(labels: np.ndarray, probs: np.ndarray, preds: np.ndarray) -> float:
    clipped = np.clip(probs.astype(np.float64), 1e-15, 1 - 1e-15)
    return float(log_loss(labels, clipped, labels=[0, 1]))


METRIC_FUNCTIONS: dict[str, Callable[[np.ndarray, np.ndarray, np.ndarray], float]] = {
    "accuracy": lambda y, p, yhat: float(accuracy_score(y, yhat)),
    "precision": lambda y, p, yhat: float(precision_score(y, yhat, zero_division=0)),
    "recall": lambda y, p, yhat: float(recall_score(y, yhat, zero_division=0)),
    "specificity": _specificity,
    "f1": lambda y, p, yhat: float(f1_score(y, yhat, zero_division=0)),
    "auc": _auc,
    "balanced_accuracy": lambda y, p, yhat: float(balanced_accuracy_score(y, yhat)),
    "brier_score": lambda y, p, yhat: float(brier_score_loss(y, p)),
    "log_loss": _log_loss,
}

# Metrics where a smaller value is the better outcome.
LOWER_IS_BETTER = frozenset({"brier_score", "log_loss"})


def check_metric_names(names) -> None:
    unknown = [name for name in names if name not in METRIC_FUNCTIONS]
    if unknown:
        raise ConfigurationError(
            f"unknown metrics {unknown}, expected names from {sorted(METRIC_FUNCTIONS)}", step="configuration"
        )


@dataclass(frozen=True)
class PerformanceRecord:
    """Held-out performance of one trained model.

    ``confusion`` is (tn, fp, fn, tp) for the configured decision threshold.
    """

    training_size: int
    confusion: tuple[int, int, int, int]
    metrics: dict[str, float] = field(default_factory=dict)

    def as_row(self, **tags) -> dict:
        tn, fp, fn, tp = self.confusion
        return {**tags, "training_size": self.training_size, "tn": tn, "fp": fp, "fn": fn, "tp": tp, **self.metrics}

    def format(self) -> str:
        parts = [f"n={self.training_size}"]
        parts.extend(f"{name}={value:.4f}" for name, value in self.metrics.items())
        return ", ".join(parts)


def compute_performance(
    labels: np.ndarray,
    probs: np.ndarray,
    training_size: int,
    metric_names=DEFAULT_METRICS,
    threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD,
) -> PerformanceRecord:
    """
    Confusion matrix and named metrics for held-out predictions.

    Parameters
    ----------
    labels : np.ndarray
        True binary labels.
    probs : np.ndarray
        Predicted P(flagged).
    training_size : int
        Size of the training set the predicting model was fitted on.
    metric_names : iterable of str
        Keys into METRIC_FUNCTIONS.
    threshold : float, default 0.5
        Decision threshold turning probabilities into predictions.
    """
    check_metric_names(metric_names)
    labels = np.asarray(labels, dtype=np.int8)
    preds = (np.asarray(probs) >= threshold).astype(np.int8)

    tn, fp, fn, tp = confusion_matrix(labels, preds, labels=[0, 1]).ravel()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=UndefinedMetricWarning)
        metrics = {name: METRIC_FUNCTIONS[name](labels, probs, preds) for name in metric_names}

    return PerformanceRecord(
        training_size=int(training_size),
        confusion=(int(tn), int(fp), int(fn), int(tp)),
        metrics=metrics,
    )


def fit_and_evaluate(
    trainer: ModelTrainer,
    pool: LabeledPool,
    training_ids: np.ndarray,
    test_ids: np.ndarray,
    metric_names=DEFAULT_METRICS,
    threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD,
) -> tuple[FittedModel, np.ndarray, PerformanceRecord]:
    """Train on ``training_ids`` and evaluate on the fixed test set.

    Returns (model, test probabilities, performance record).
    """
    model = trainer.fit(pool.features(training_ids), pool.labels(training_ids))
    test_probs = model.predict_probabilities(pool.features(test_ids))
    record = compute_performance(
        pool.labels(test_ids),
        test_probs,
        training_size=len(training_ids),
        metric_names=metric_names,
        threshold=threshold,
    )
    return model, test_probs, record


def performance_table(records: list[PerformanceRecord], **tag_columns: list) -> pl.DataFrame:
    """Render records as a DataFrame, one row per record.

    Each keyword argument is an extra column holding one value per record
    (e.g. ``iteration=[0, 1, 2]``).
    """
    for name, values in tag_columns.items():
        if len(values) != len(records):
            raise ValueError(f"tag column {name!r} has {len(values)} values for {len(records)} records")
    rows = [record.as_row(**{name: values[i] for name, values in tag_columns.items()}) for i, record in enumerate(records)]
    return pl.DataFrame(rows)
