"""
Reference points for the active-learning curve.

- Passive (random-sampling) baseline: the same grow-and-retrain loop with
  uniform selection, repeated for several independent groups to show the
  spread of chance-level learning curves.
- Full-data baseline: one model trained on the entire unlabeled pool, the
  ceiling the active curve is heading towards.
- Monte Carlo significance test: random training sets of the same size as the
  actively selected one, giving empirical p-values for the active metrics.

Groups and trials are independent. Each gets its own generator spawned from
the caller's, so results are identical whether they run sequentially or in
parallel (joblib).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
import polars as pl
from joblib import Parallel, delayed
from tqdm import tqdm

from classifiers import FittedModel, ModelTrainer
from experiment_config import DEFAULT_CLASSIFICATION_THRESHOLD, DEFAULT_METRICS
from experiment_errors import ConfigurationError, InsufficientDataError, experiment_step
from labeled_pool import LabeledPool
from performance_metrics import LOWER_IS_BETTER, PerformanceRecord, fit_and_evaluate, performance_table

logger = logging.getLogger(__name__)

__all__ = [
    "FullModelResult",
    "SignificanceResult",
    "run_random_baseline",
    "run_baseline_groups",
    "run_full_data_baseline",
    "monte_carlo_significance",
    "empirical_p_values",
]


@dataclass(frozen=True)
class FullModelResult:
    """Model trained on the whole unlabeled pool and its test-set performance."""

    model: FittedModel
    test_probabilities: np.ndarray
    record: PerformanceRecord


@dataclass(frozen=True)
class SignificanceResult:
    """Empirical p-values of the active metrics plus the per-trial metrics."""

    p_values: dict[str, float]
    trials: pl.DataFrame
    target_metrics: dict[str, float]
    batch_size: int


# =============================================================================
# Passive Baseline
# =============================================================================


def run_random_baseline(
    pool: LabeledPool,
    trainer: ModelTrainer,
    initial_ids: np.ndarray,
    unlabeled_ids: np.ndarray,
    test_ids: np.ndarray,
    target_sizes: list[int],
    rng: np.random.Generator,
    metric_names=DEFAULT_METRICS,
    threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD,
    group: int = 1,
) -> list[PerformanceRecord]:
    """
    Grow a training set by uniform random draws and record its learning curve.

    Parameters
    ----------
    pool : LabeledPool
        Full labeled pool.
    trainer : ModelTrainer
        Fits a fresh model at every step.
    initial_ids : np.ndarray
        Starting training set (the same stratified seed set as the active run).
    unlabeled_ids : np.ndarray
        Pool the random draws come from.
    test_ids : np.ndarray
        Fixed evaluation set.
    target_sizes : list[int]
        Non-decreasing training-set sizes to measure at, typically the active
        run's sizes. A size equal to the current one retrains without drawing.
    rng : np.random.Generator
        Source of the random draws.
    group : int
        Group number, used in error messages.

    Returns
    -------
    list[PerformanceRecord]
        One record per target size.
    """
    step = f"baseline run {group}"
    training_ids = np.asarray(initial_ids)
    records = []

    with experiment_step(step):
        for target in target_sizes:
            delta = int(target) - len(training_ids)
            if delta < 0:
                raise ConfigurationError(
                    f"target size {target} is below the current training size {len(training_ids)}; "
                    "target sizes must be non-decreasing and start at or above the initial set size"
                )
            if delta > 0:
                remaining = unlabeled_ids[np.isin(unlabeled_ids, training_ids, invert=True)]
                if delta > len(remaining):
                    raise InsufficientDataError(
                        f"cannot draw {delta} new examples, only {len(remaining)} remain in the unlabeled pool"
                    )
                drawn = rng.choice(remaining, size=delta, replace=False)
                training_ids = np.concatenate([training_ids, drawn])

            _, _, record = fit_and_evaluate(trainer, pool, training_ids, test_ids, metric_names, threshold)
            records.append(record)

    logger.debug(f"Baseline group {group}: final {records[-1].format() if records else 'no records'}")
    return records


def run_baseline_groups(
    pool: LabeledPool,
    trainer: ModelTrainer,
    initial_ids: np.ndarray,
    unlabeled_ids: np.ndarray,
    test_ids: np.ndarray,
    target_sizes: list[int],
    group_count: int,
    rng: np.random.Generator,
    metric_names=DEFAULT_METRICS,
    threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD,
    n_jobs: int = 1,
) -> pl.DataFrame:
    """Run ``group_count`` independent random baselines.

    Returns one table with ``group`` and ``step`` columns (step 0 is the
    initial training set).
    """
    if group_count < 1:
        raise ConfigurationError(f"group_count must be >= 1, got {group_count}", step="baseline")

    logger.info("=" * 60)
    logger.info(f"RANDOM BASELINE: {group_count} groups x {len(target_sizes)} sizes")
    logger.info("=" * 60)

    group_rngs = rng.spawn(group_count)
    results = Parallel(n_jobs=n_jobs)(
        delayed(run_random_baseline)(
            pool,
            trainer,
            initial_ids,
            unlabeled_ids,
            test_ids,
            target_sizes,
            group_rng,
            metric_names,
            threshold,
            group,
        )
        for group, group_rng in enumerate(tqdm(group_rngs, desc="Baseline groups", disable=group_count <= 1), start=1)
    )

    records, groups, steps = [], [], []
    for group, group_records in enumerate(results, start=1):
        records.extend(group_records)
        groups.extend([group] * len(group_records))
        steps.extend(range(len(group_records)))
    return performance_table(records, group=groups, step=steps)


def run_full_data_baseline(
    pool: LabeledPool,
    trainer: ModelTrainer,
    unlabeled_ids: np.ndarray,
    test_ids: np.ndarray,
    metric_names=DEFAULT_METRICS,
    threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD,
) -> FullModelResult:
    """Train on every unlabeled example and evaluate on the test set."""
    with experiment_step("full-data baseline"):
        model, test_probs, record = fit_and_evaluate(trainer, pool, unlabeled_ids, test_ids, metric_names, threshold)
    logger.info(f"Full-data model: {record.format()}")
    return FullModelResult(model=model, test_probabilities=test_probs, record=record)


# =============================================================================
# Monte Carlo Significance Test
# =============================================================================


def _run_trial(
    pool: LabeledPool,
    trainer: ModelTrainer,
    initial_ids: np.ndarray,
    draw_pool: np.ndarray,
    test_ids: np.ndarray,
    batch_size: int,
    rng: np.random.Generator,
    metric_names,
    threshold: float,
    trial: int,
) -> PerformanceRecord:
    with experiment_step(f"Monte Carlo trial {trial}"):
        sample = rng.choice(draw_pool, size=batch_size, replace=False)
        training_ids = np.concatenate([initial_ids, sample])
        _, _, record = fit_and_evaluate(trainer, pool, training_ids, test_ids, metric_names, threshold)
    return record


def empirical_p_values(trial_values: dict[str, np.ndarray], target_metrics: dict[str, float]) -> dict[str, float]:
    """Fraction of trials at least as good as the target, per metric.

    "At least as good" is ``>=`` except for LOWER_IS_BETTER metrics, which use
    ``<=``. A NaN target gives a NaN p-value; NaN trial values never count.
    """
    p_values = {}
    for name, values in trial_values.items():
        target = target_metrics[name]
        if target is None or math.isnan(target):
            logger.warning(f"Active value of {name} is undefined; p-value is NaN")
            p_values[name] = float("nan")
            continue
        values = np.asarray(values, dtype=np.float64)
        if name in LOWER_IS_BETTER:
            hits = np.count_nonzero(values <= target)
        else:
            hits = np.count_nonzero(values >= target)
        p_values[name] = hits / len(values)
    return p_values


def monte_carlo_significance(
    pool: LabeledPool,
    trainer: ModelTrainer,
    initial_ids: np.ndarray,
    candidate_ids: np.ndarray,
    test_ids: np.ndarray,
    batch_size: int,
    target_metrics: dict[str, float],
    trials: int,
    rng: np.random.Generator,
    threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD,
    n_jobs: int = 1,
) -> SignificanceResult:
    """
    Estimate how often random selection matches the active result.

    Each trial draws ``batch_size`` ids uniformly without replacement from
    ``candidate_ids`` (the pool the active run drew from, NOT excluding ids
    the active run selected, so every trial is an independent draw from the
    same starting pool), trains on initial + sample and evaluates on the test
    set. The initial ids themselves are never drawn, which keeps every random
    training set exactly ``len(initial_ids) + batch_size`` examples.

    Parameters
    ----------
    target_metrics : dict[str, float]
        Metrics of the actively trained model to test; the keys choose the
        metrics evaluated in each trial.
    trials : int
        Number of Monte Carlo draws (>= 1).

    Returns
    -------
    SignificanceResult
        p-values in [0, 1] (NaN only for an undefined target) and the per-trial
        metrics table.
    """
    if trials < 1:
        raise ConfigurationError(f"monte_carlo_samples must be >= 1, got {trials}", step="Monte Carlo test")
    if batch_size < 1:
        raise ConfigurationError(f"batch_size must be >= 1, got {batch_size}", step="Monte Carlo test")

    draw_pool = candidate_ids[np.isin(candidate_ids, initial_ids, invert=True)]
    if batch_size > len(draw_pool):
        raise InsufficientDataError(
            f"batch_size={batch_size} exceeds the {len(draw_pool)} examples available for random draws",
            step="Monte Carlo test",
        )

    metric_names = tuple(target_metrics)
    logger.info("=" * 60)
    logger.info(f"MONTE CARLO TEST: {trials} trials of {batch_size} random examples")
    logger.info("=" * 60)

    trial_rngs = rng.spawn(trials)
    records = Parallel(n_jobs=n_jobs)(
        delayed(_run_trial)(
            pool,
            trainer,
            np.asarray(initial_ids),
            draw_pool,
            test_ids,
            batch_size,
            trial_rng,
            metric_names,
            threshold,
            trial,
        )
        for trial, trial_rng in enumerate(tqdm(trial_rngs, desc="Monte Carlo trials", disable=trials <= 1), start=1)
    )

    trial_values = {name: np.array([record.metrics[name] for record in records]) for name in metric_names}
    p_values = empirical_p_values(trial_values, target_metrics)
    for name, p in p_values.items():
        logger.info(f"  {name}: active={target_metrics[name]:.4f}, random mean={np.nanmean(trial_values[name]):.4f}, p={p:.3f}")

    return SignificanceResult(
        p_values=p_values,
        trials=performance_table(records, trial=list(range(1, trials + 1))),
        target_metrics=dict(target_metrics),
        batch_size=batch_size,
    )
