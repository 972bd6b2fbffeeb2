"""
Uncertainty-Sampling Active Learning Experiment.

This module simulates an annotation budget on a fully labeled pool: labels of
the unlabeled pool stay hidden until the oracle reveals them for the cases the
current model is least certain about. It tracks how held-out performance
evolves with labeling effort and compares it against chance.

Key features:
- Fixed random test set, stratified initial training set
- Uncertainty-weighted case selection from a bounded random presample
- Explicit iteration state (training ids, already-selected ids) threaded
  through every round; no round mutates the previous one
- Passive random-sampling baseline over several independent groups
- Full-data baseline and Monte Carlo significance test of the final model

Selection:
    Each round scores a uniform presample of at most ``presample_size``
    candidates and draws ``N`` of them without replacement with probability
    proportional to

        w(p) = max(pdf_Normal(p; mu, sigma), tiny)

    where p is the model's P(flagged). Weighted sampling (rather than top-N)
    keeps exploring around the boundary instead of collapsing onto one score
    band. The draw uses Gumbel-top-k keys log(w) + G, G ~ Gumbel(0, 1), which
    is distributed exactly like sequential proportional sampling without
    replacement and breaks ties between equal weights uniformly.

Reproducibility:
    One generator seeded from ``config.seed`` is consumed in a fixed order:
    partition, initial set, then per round the presample and the weighted
    draw. Baseline groups and Monte Carlo trials use generators spawned from
    the same seed, so loading a cached phase never shifts the others.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

import numpy as np
import polars as pl
from scipy.stats import norm

from classifiers import FittedModel, ModelTrainer, make_trainer
from experiment_config import DEFAULT_UNCERTAINTY_MU, DEFAULT_UNCERTAINTY_SIGMA, ExperimentConfig
from experiment_errors import (
    ConfigurationError,
    DuplicateSelectionError,
    InsufficientDataError,
    InvalidBatchSizeError,
    experiment_step,
)
from labeled_pool import LabeledPool, partition, stratified_initial_set
from passive_baselines import (
    FullModelResult,
    SignificanceResult,
    monte_carlo_significance,
    run_baseline_groups,
    run_full_data_baseline,
)
from performance_metrics import PerformanceRecord, check_metric_names, fit_and_evaluate, performance_table
from result_cache import ResultCache

logger = logging.getLogger(__name__)

# =============================================================================
# Module Constants
# =============================================================================

# Floor for uncertainty weights: confident predictions become very unlikely
# picks but never impossible ones.
MIN_UNCERTAINTY_WEIGHT = np.finfo(np.float64).tiny

# Probability clip for the entropy scorer (log(0) guard)
ENTROPY_EPS = 1e-12

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


# =============================================================================
# Enums
# =============================================================================


class ExperimentState(str, Enum):
    """Lifecycle of the iteration controller.

    Inherits from str to maintain JSON serialization compatibility.
    """

    PENDING = "pending"  # Constructed, nothing trained yet
    INITIALIZED = "initialized"  # Initial model trained and pre-loop batch revealed
    ITERATING = "iterating"
    COMPLETE = "complete"


# =============================================================================
# Uncertainty Scorers
# =============================================================================


@dataclass(frozen=True)
class GaussianUncertainty:
    """Gaussian density centered on the decision point ``mu``.

    Highest at ``mu``, decreasing monotonically on both sides, floored at
    MIN_UNCERTAINTY_WEIGHT.
    """

    mu: float = DEFAULT_UNCERTAINTY_MU
    sigma: float = DEFAULT_UNCERTAINTY_SIGMA

    def __post_init__(self):
        if not self.sigma > 0:
            raise ConfigurationError(f"sigma must be > 0, got {self.sigma}", step="configuration")
        if not 0.0 <= self.mu <= 1.0:
            raise ConfigurationError(f"mu must lie in [0, 1], got {self.mu}", step="configuration")

    def __call__(self, probabilities) -> np.ndarray:
        density = norm.pdf(np.asarray(probabilities, dtype=np.float64), loc=self.mu, scale=self.sigma)
        return np.maximum(density, MIN_UNCERTAINTY_WEIGHT)


@dataclass(frozen=True)
class EntropyUncertainty:
    """Binary entropy of the prediction (in bits), floored like the Gaussian."""

    def __call__(self, probabilities) -> np.ndarray:
        p = np.clip(np.asarray(probabilities, dtype=np.float64), ENTROPY_EPS, 1.0 - ENTROPY_EPS)
        entropy = -(p * np.log2(p) + (1.0 - p) * np.log2(1.0 - p))
        return np.maximum(entropy, MIN_UNCERTAINTY_WEIGHT)


def make_uncertainty(config: ExperimentConfig) -> Callable[[np.ndarray], np.ndarray]:
    """Uncertainty scorer named by ``config.uncertainty``."""
    if config.uncertainty == "gaussian":
        return GaussianUncertainty(mu=config.mu, sigma=config.sigma)
    if config.uncertainty == "entropy":
        return EntropyUncertainty()
    raise ConfigurationError(f"unknown uncertainty policy {config.uncertainty!r}", step="configuration")


# =============================================================================
# Case Selection
# =============================================================================


def weighted_sample_without_replacement(
    weights: np.ndarray,
    size: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Positions of ``size`` items drawn without replacement proportionally to ``weights``.

    Uses Gumbel-top-k: perturb log-weights with Gumbel noise and keep the
    ``size`` largest keys, in draw order. Zero weights are only drawn once
    every positive weight is exhausted; equal keys (e.g. several zero
    weights, all at -inf) are ordered by a uniform random tiebreak.
    """
    weights = np.asarray(weights, dtype=np.float64)
    if size > len(weights):
        raise InvalidBatchSizeError(f"cannot draw {size} items from {len(weights)} candidates")
    if np.any(weights < 0) or not np.all(np.isfinite(weights)):
        raise ValueError("sampling weights must be finite and non-negative")

    with np.errstate(divide="ignore"):
        keys = np.log(weights) + rng.gumbel(size=len(weights))
    tiebreak = rng.random(len(weights))

    # lexsort: last key is primary
    order = np.lexsort((tiebreak, -keys))
    return order[:size]


def select_cases(
    model: FittedModel,
    pool: LabeledPool,
    available_ids: np.ndarray,
    batch_size: int,
    presample_size: int,
    rng: np.random.Generator,
    uncertainty: Callable[[np.ndarray], np.ndarray] | None = None,
) -> np.ndarray:
    """
    Pick the next batch of cases to label.

    Parameters
    ----------
    model : FittedModel
        Current model; scores the presample.
    pool : LabeledPool
        Source of candidate features.
    available_ids : np.ndarray
        Candidate identifiers (never-selected unlabeled cases).
    batch_size : int
        Number of cases N to return.
    presample_size : int
        Upper bound P on the number of candidates scored. Bounds the per-round
        scoring cost on large pools.
    rng : np.random.Generator
        Consumed by the presample, then by the weighted draw.
    uncertainty : callable, optional
        Maps P(flagged) to a sampling weight. Defaults to GaussianUncertainty().

    Returns
    -------
    np.ndarray
        ``batch_size`` distinct identifiers from ``available_ids``, in draw order.

    Raises
    ------
    InvalidBatchSizeError
        If ``batch_size`` exceeds ``min(len(available_ids), presample_size)``.
    """
    if uncertainty is None:
        uncertainty = GaussianUncertainty()

    available_ids = np.asarray(available_ids)
    k = min(len(available_ids), presample_size)
    if batch_size > k:
        raise InvalidBatchSizeError(
            f"batch of {batch_size} requested but only {k} candidates can be presampled "
            f"({len(available_ids)} available, presample_size={presample_size})"
        )

    presample = rng.choice(available_ids, size=k, replace=False)
    probs = model.predict_probabilities(pool.features(presample))
    weights = uncertainty(probs)

    chosen = weighted_sample_without_replacement(weights, batch_size, rng)
    logger.debug(
        f"Presample of {k}: mean P={float(np.mean(probs)):.3f}, "
        f"chosen P range [{float(probs[chosen].min()):.3f}, {float(probs[chosen].max()):.3f}]"
    )
    return presample[chosen]


# =============================================================================
# Iteration State and Results
# =============================================================================


@dataclass(frozen=True)
class IterationState:
    """Training set and already-selected ids between two rounds.

    ``training_ids`` is ordered (initial set first, then batches in selection
    order). ``already_selected`` excludes the initial set.
    """

    training_ids: np.ndarray
    already_selected: frozenset = frozenset()

    def extend(self, selected_ids: np.ndarray) -> IterationState:
        """New state with ``selected_ids`` appended; this state is left untouched."""
        new_ids = np.asarray(selected_ids).tolist()
        seen = set(np.asarray(self.training_ids).tolist())
        duplicates = [key for key in new_ids if key in seen]
        if duplicates or len(set(new_ids)) != len(new_ids):
            raise DuplicateSelectionError(
                f"ids selected again after entering the training set: {sorted(map(str, duplicates))[:10]}"
            )
        return IterationState(
            training_ids=np.concatenate([self.training_ids, np.asarray(selected_ids)]),
            already_selected=self.already_selected | frozenset(new_ids),
        )


@dataclass(frozen=True)
class IterationResult:
    """Everything produced by one train -> select -> reveal round.

    ``training_size`` is the size of the set the model was trained on (before
    the round's batch is appended).
    """

    iteration: int
    model: FittedModel
    test_probabilities: np.ndarray
    record: PerformanceRecord
    selected_ids: np.ndarray
    selected_labels: np.ndarray
    training_size: int

    @property
    def metrics(self) -> dict[str, float]:
        return self.record.metrics


# =============================================================================
# Iteration Controller
# =============================================================================


class ActiveLearningExperiment:
    """
    Iteration controller for uncertainty-sampling active learning.

    Owns the experiment state exclusively. Every round is computed by
    ``advance(state, iteration)``, which returns the next state instead of
    mutating the current one; the controller only swaps its reference.

    States: PENDING -> INITIALIZED -> ITERATING -> COMPLETE.

    Args:
        pool: Full labeled pool
        config: Experiment configuration
        trainer: Model trainer (fresh fit every round)
        test_ids: Fixed held-out ids
        unlabeled_ids: Ids whose labels are hidden until selected
        initial_ids: Stratified initial training set
        rng: Generator consumed by presample and weighted draws
        uncertainty: Optional scorer overriding the configured one

    Example:
        >>> experiment = ActiveLearningExperiment(pool, config, trainer, test_ids, unlabeled_ids, initial_ids, rng)
        >>> history = experiment.run()
        >>> experiment.performance_table()
    """

    def __init__(
        self,
        pool: LabeledPool,
        config: ExperimentConfig,
        trainer: ModelTrainer,
        test_ids: np.ndarray,
        unlabeled_ids: np.ndarray,
        initial_ids: np.ndarray,
        rng: np.random.Generator,
        uncertainty: Callable[[np.ndarray], np.ndarray] | None = None,
    ):
        self.pool = pool
        self.config = config
        self.trainer = trainer
        self.test_ids = np.asarray(test_ids)
        self.unlabeled_ids = np.asarray(unlabeled_ids)
        self.initial_ids = np.asarray(initial_ids)
        self.rng = rng
        self.uncertainty = uncertainty if uncertainty is not None else make_uncertainty(config)

        self._validate_inputs()

        self.phase = ExperimentState.PENDING
        self.state = IterationState(training_ids=self.initial_ids)
        self.initial_result: IterationResult | None = None
        self.history: list[IterationResult] = []

    def _validate_inputs(self) -> None:
        """Fail before any training if the run cannot complete."""
        self.config.validate()
        check_metric_names(self.config.metrics)

        if np.isin(self.test_ids, self.unlabeled_ids).any():
            raise ConfigurationError("test set and unlabeled pool overlap", step="partition")

        n = self.config.examples_to_label_per_iteration
        needed = n * (self.config.num_iterations + 1)
        offered = np.count_nonzero(np.isin(self.unlabeled_ids, self.initial_ids, invert=True))
        if needed > offered:
            raise InsufficientDataError(
                f"{self.config.num_iterations + 1} rounds of {n} need {needed} unlabeled examples, "
                f"only {offered} can be offered",
                step="configuration",
            )

    @property
    def training_ids(self) -> np.ndarray:
        return self.state.training_ids

    @property
    def already_selected(self) -> frozenset:
        return self.state.already_selected

    @property
    def latest_result(self) -> IterationResult | None:
        return self.history[-1] if self.history else self.initial_result

    def candidate_ids(self, state: IterationState) -> np.ndarray:
        """Unlabeled ids that were never offered to the training set.

        Excluding the whole training set removes the already-selected ids and
        any initial ids that also sit in the unlabeled pool.
        """
        return self.unlabeled_ids[np.isin(self.unlabeled_ids, state.training_ids, invert=True)]

    def advance(self, state: IterationState, iteration: int) -> tuple[IterationState, IterationResult]:
        """
        One round: train on ``state``, select a batch, reveal it, append it.

        Parameters
        ----------
        state : IterationState
            Training set and already-selected ids before the round.
        iteration : int
            Round number; 0 is the pre-loop round of the initial model.

        Returns
        -------
        tuple[IterationState, IterationResult]
            State after appending the revealed batch, and the round's result.
        """
        step = "initial round" if iteration == 0 else f"iteration {iteration}"
        n = self.config.examples_to_label_per_iteration

        with experiment_step(step):
            model, test_probs, record = fit_and_evaluate(
                self.trainer,
                self.pool,
                state.training_ids,
                self.test_ids,
                self.config.metrics,
                self.config.classification_threshold,
            )
            selected = select_cases(
                model,
                self.pool,
                self.candidate_ids(state),
                n,
                self.config.presample_size,
                self.rng,
                self.uncertainty,
            )
            labels = self.pool.reveal_labels(selected)
            next_state = state.extend(selected)

            if len(next_state.training_ids) != len(state.training_ids) + n:
                raise InvalidBatchSizeError(
                    f"training set grew by {len(next_state.training_ids) - len(state.training_ids)}, expected {n}"
                )
            if not state.already_selected <= next_state.already_selected:
                raise DuplicateSelectionError("already-selected set shrank")

        result = IterationResult(
            iteration=iteration,
            model=model,
            test_probabilities=test_probs,
            record=record,
            selected_ids=selected,
            selected_labels=labels,
            training_size=len(state.training_ids),
        )
        logger.info(f"{step}: {record.format()} | selected {n} ({int(labels.sum())} flagged)")
        return next_state, result

    def initialize(self) -> IterationResult:
        """Train the initial model and run the pre-loop selection round."""
        if self.phase is not ExperimentState.PENDING:
            raise RuntimeError(f"initialize() called in state {self.phase.value}")

        logger.info("=" * 60)
        logger.info(f"INITIAL ROUND ({len(self.initial_ids)} seed examples)")
        logger.info("=" * 60)

        self.state, self.initial_result = self.advance(self.state, 0)
        self.phase = ExperimentState.INITIALIZED
        return self.initial_result

    def run(self) -> list[IterationResult]:
        """
        Run the pre-loop round (if not done yet) and ``num_iterations`` rounds.

        Returns
        -------
        list[IterationResult]
            Exactly ``num_iterations`` results, in order.
        """
        if self.phase is ExperimentState.PENDING:
            self.initialize()
        if self.phase is not ExperimentState.INITIALIZED:
            raise RuntimeError(f"run() called in state {self.phase.value}")

        self.phase = ExperimentState.ITERATING
        for iteration in range(1, self.config.num_iterations + 1):
            logger.info("=" * 60)
            logger.info(f"ITERATION {iteration}/{self.config.num_iterations} (training set: {len(self.state.training_ids)})")
            logger.info("=" * 60)
            self.state, result = self.advance(self.state, iteration)
            self.history.append(result)

        self.phase = ExperimentState.COMPLETE
        logger.info(f"Active learning complete: final training set {len(self.state.training_ids)} examples")
        return self.history

    def performance_table(self) -> pl.DataFrame:
        """Initial record plus one row per iteration, with an ``iteration`` column."""
        results = ([self.initial_result] if self.initial_result is not None else []) + self.history
        return performance_table([r.record for r in results], iteration=[r.iteration for r in results])


# =============================================================================
# Experiment Orchestration
# =============================================================================


def _nan_to_none(values: dict[str, float]) -> dict[str, float | None]:
    return {name: None if value is None or math.isnan(value) else float(value) for name, value in values.items()}


@dataclass
class ExperimentResult:
    """Terminal outputs of a full experiment run."""

    config: ExperimentConfig
    test_ids: np.ndarray
    unlabeled_ids: np.ndarray
    initial_ids: np.ndarray
    initial_result: IterationResult
    history: list[IterationResult]
    final_training_ids: np.ndarray
    already_selected: frozenset
    active_performance: pl.DataFrame
    baseline_performance: pl.DataFrame
    full_model: FullModelResult
    significance: SignificanceResult | None = None

    def summary(self) -> dict:
        """JSON-friendly digest of the run. Undefined (NaN) values become None."""
        final = self.history[-1] if self.history else self.initial_result
        return {
            "config": self.config.to_dict(),
            "test_set_size": len(self.test_ids),
            "unlabeled_pool_size": len(self.unlabeled_ids),
            "initial_training_size": len(self.initial_ids),
            "final_training_size": len(self.final_training_ids),
            "num_iteration_results": len(self.history),
            "final_active_metrics": _nan_to_none(final.metrics),
            "full_model_metrics": _nan_to_none(self.full_model.record.metrics),
            "p_values": _nan_to_none(self.significance.p_values) if self.significance is not None else None,
            "monte_carlo_batch_size": self.significance.batch_size if self.significance is not None else None,
        }


def run_experiment(
    pool: LabeledPool,
    config: ExperimentConfig | None = None,
    trainer: ModelTrainer | None = None,
    cache: ResultCache | None = None,
    baseline_table: pl.DataFrame | None = None,
    full_model_result: FullModelResult | None = None,
) -> ExperimentResult:
    """
    Run active learning, both baselines and the significance test.

    Parameters
    ----------
    pool : LabeledPool
        Fully labeled pool (labels of the unlabeled part stay hidden until revealed).
    config : ExperimentConfig, optional
        Uses defaults if not provided.
    trainer : ModelTrainer, optional
        Defaults to ``make_trainer(config)``.
    cache : ResultCache, optional
        Persists the baseline table and full-data model between runs.
    baseline_table : pl.DataFrame, optional
        Precomputed random-baseline table; skips the baseline groups.
    full_model_result : FullModelResult, optional
        Precomputed full-data model; skips its training.

    Returns
    -------
    ExperimentResult
    """
    if config is None:
        config = ExperimentConfig()
    config.validate()
    check_metric_names(config.metrics)
    if trainer is None:
        trainer = make_trainer(config)

    rng = np.random.default_rng(config.seed)
    baseline_rng, monte_carlo_rng = rng.spawn(2)

    test_ids, unlabeled_ids = partition(pool, config.test_set_size, rng)
    initial_ids = stratified_initial_set(pool, config.initial_examples_per_class, rng)

    experiment = ActiveLearningExperiment(pool, config, trainer, test_ids, unlabeled_ids, initial_ids, rng)
    history = experiment.run()
    active_table = experiment.performance_table()
    target_sizes = active_table["training_size"].to_list()

    def compute_full() -> FullModelResult:
        return run_full_data_baseline(pool, trainer, unlabeled_ids, test_ids, config.metrics, config.classification_threshold)

    def compute_baseline() -> pl.DataFrame:
        return run_baseline_groups(
            pool,
            trainer,
            initial_ids,
            unlabeled_ids,
            test_ids,
            target_sizes,
            config.group_count,
            baseline_rng,
            config.metrics,
            config.classification_threshold,
            config.n_jobs,
        )

    if full_model_result is None:
        if cache is not None:
            key = cache.key_for(pool, config, "full_model", trainer=trainer)
            full_model_result = cache.load_or_compute(key, compute_full)
        else:
            full_model_result = compute_full()
    else:
        logger.info("Using precomputed full-data model")

    if baseline_table is None:
        if cache is not None:
            key = cache.key_for(pool, config, "baseline", trainer=trainer, target_sizes=target_sizes)
            baseline_table = cache.load_or_compute(key, compute_baseline)
        else:
            baseline_table = compute_baseline()
    else:
        logger.info("Using precomputed random-baseline table")

    final = experiment.latest_result
    batch_size = final.training_size - len(initial_ids)
    significance = None
    if batch_size > 0:
        significance = monte_carlo_significance(
            pool,
            trainer,
            initial_ids,
            unlabeled_ids,
            test_ids,
            batch_size,
            final.metrics,
            config.monte_carlo_samples,
            monte_carlo_rng,
            config.classification_threshold,
            config.n_jobs,
        )
    else:
        logger.warning("No actively selected examples behind the final model; skipping Monte Carlo test")

    return ExperimentResult(
        config=config,
        test_ids=test_ids,
        unlabeled_ids=unlabeled_ids,
        initial_ids=initial_ids,
        initial_result=experiment.initial_result,
        history=history,
        final_training_ids=experiment.training_ids,
        already_selected=experiment.already_selected,
        active_performance=active_table,
        baseline_performance=baseline_table,
        full_model=full_model_result,
        significance=significance,
    )


# =============================================================================
# Logging Setup Helper
# =============================================================================


def setup_logging(
    level: int = logging.INFO,
    log_file: Path | str | None = None,
) -> None:
    """
    Route experiment progress (phase banners, per-round metrics, p-values) to
    the console and optionally to a file.

    Replaces any handlers installed by an earlier call, so repeated runs in
    one process (e.g. several CLI invocations) log exactly once per record.

    Parameters
    ----------
    level : int
        ``logging.DEBUG`` adds oracle reveals and presample statistics.
    log_file : Path or str, optional
        Run log written next to the console output; its directory is created.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
