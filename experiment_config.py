"""
Configuration for active-learning experiments.

Settings are grouped into nested dataclasses the same way the experiment
groups its work: core sampling options live on ``ExperimentConfig``, classifier
hyperparameters live in per-backend groups. Module-level ``DEFAULT_*``
constants are the single source of truth for defaults.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from experiment_errors import ConfigurationError, InvalidBatchSizeError

# =============================================================================
# Module Constants
# =============================================================================

DEFAULT_SEED = 3
DEFAULT_INITIAL_EXAMPLES_PER_CLASS = 20
DEFAULT_EXAMPLES_TO_LABEL_PER_ITERATION = 10
DEFAULT_NUM_ITERATIONS = 5
DEFAULT_PRESAMPLE_SIZE = 100
DEFAULT_MONTE_CARLO_SAMPLES = 100
DEFAULT_TEST_SET_SIZE = 200
DEFAULT_GROUP_COUNT = 10

# Uncertainty density: centered on the decision boundary. A sigma of 0.1 gives
# near-boundary cases (|p - 0.5| < 0.1) roughly 60%+ of the peak weight while
# confident predictions (p < 0.2 or p > 0.8) fall below 2%.
DEFAULT_UNCERTAINTY_MU = 0.5
DEFAULT_UNCERTAINTY_SIGMA = 0.1

DEFAULT_CLASSIFICATION_THRESHOLD = 0.5
DEFAULT_METRICS = ("accuracy", "precision", "recall", "specificity", "f1", "auc")

DEFAULT_ID_COLUMN = "id"
DEFAULT_LABEL_COLUMN = "flagged"

SUPPORTED_CLASSIFIERS = ("catboost", "logistic", "random_forest")
SUPPORTED_UNCERTAINTY = ("gaussian", "entropy")


@dataclass
class CatBoostConfig:
    """CatBoost model hyperparameters."""

    iterations: int = 300
    depth: int = 6
    learning_rate: float = 0.1
    verbose: bool = False
    use_gpu: bool = False
    loss_function: str = "Logloss"
    l2_leaf_reg: float = 3.0
    thread_count: int = -1


@dataclass
class LogisticConfig:
    """Logistic regression hyperparameters (features are standardized first)."""

    C: float = 1.0
    max_iter: int = 1000


@dataclass
class ForestConfig:
    """Random forest hyperparameters."""

    n_estimators: int = 200
    max_depth: int | None = None
    min_samples_leaf: int = 1
    n_jobs: int = 1


@dataclass
class ExperimentConfig:
    """Configuration for one active-learning experiment.

    Core options:
    - seed: top-level reproducibility seed
    - initial_examples_per_class: stratified seed set size per label value
    - examples_to_label_per_iteration: batch size N revealed per round
    - num_iterations: active-learning rounds after the pre-loop round
    - presample_size: candidates scored per round (must be >= N)
    - monte_carlo_samples: random trials in the significance test
    - mu, sigma: center and spread of the uncertainty density
    - test_set_size: held-out examples, fixed for the whole run
    - group_count: independent runs of the random baseline

    The nested groups hold classifier hyperparameters; ``classifier`` picks
    which one is used.
    """

    seed: int = DEFAULT_SEED
    initial_examples_per_class: int = DEFAULT_INITIAL_EXAMPLES_PER_CLASS
    examples_to_label_per_iteration: int = DEFAULT_EXAMPLES_TO_LABEL_PER_ITERATION
    num_iterations: int = DEFAULT_NUM_ITERATIONS
    presample_size: int = DEFAULT_PRESAMPLE_SIZE
    monte_carlo_samples: int = DEFAULT_MONTE_CARLO_SAMPLES
    mu: float = DEFAULT_UNCERTAINTY_MU
    sigma: float = DEFAULT_UNCERTAINTY_SIGMA
    test_set_size: int = DEFAULT_TEST_SET_SIZE
    group_count: int = DEFAULT_GROUP_COUNT

    # Evaluation
    metrics: tuple[str, ...] = DEFAULT_METRICS
    classification_threshold: float = DEFAULT_CLASSIFICATION_THRESHOLD

    # Pluggable parts
    classifier: str = "catboost"
    uncertainty: str = "gaussian"

    # Parallel workers for baseline groups and Monte Carlo trials (joblib semantics)
    n_jobs: int = 1

    # Pool columns
    id_column: str = DEFAULT_ID_COLUMN
    label_column: str = DEFAULT_LABEL_COLUMN

    # Nested configuration groups
    catboost: CatBoostConfig = field(default_factory=CatBoostConfig)
    logistic: LogisticConfig = field(default_factory=LogisticConfig)
    forest: ForestConfig = field(default_factory=ForestConfig)

    def validate(self) -> None:
        """Check every option range. Raises ConfigurationError or InvalidBatchSizeError."""
        step = "configuration"
        positive_ints = {
            "initial_examples_per_class": self.initial_examples_per_class,
            "examples_to_label_per_iteration": self.examples_to_label_per_iteration,
            "monte_carlo_samples": self.monte_carlo_samples,
            "group_count": self.group_count,
            "test_set_size": self.test_set_size,
        }
        for name, value in positive_ints.items():
            if int(value) != value or value < 1:
                raise ConfigurationError(f"{name} must be an integer >= 1, got {value!r}", step=step)
        if self.num_iterations < 0:
            raise ConfigurationError(f"num_iterations must be >= 0, got {self.num_iterations}", step=step)
        if self.presample_size < self.examples_to_label_per_iteration:
            raise InvalidBatchSizeError(
                f"examples_to_label_per_iteration ({self.examples_to_label_per_iteration}) exceeds "
                f"presample_size ({self.presample_size}); a batch cannot be drawn from a smaller presample",
                step=step,
            )
        if not 0.0 <= self.mu <= 1.0:
            raise ConfigurationError(f"mu must lie in [0, 1], got {self.mu}", step=step)
        if not self.sigma > 0:
            raise ConfigurationError(f"sigma must be > 0, got {self.sigma}", step=step)
        if not 0.0 < self.classification_threshold < 1.0:
            raise ConfigurationError(
                f"classification_threshold must lie in (0, 1), got {self.classification_threshold}", step=step
            )
        if not self.metrics:
            raise ConfigurationError("at least one metric is required", step=step)
        if self.classifier not in SUPPORTED_CLASSIFIERS:
            raise ConfigurationError(
                f"unknown classifier {self.classifier!r}, expected one of {SUPPORTED_CLASSIFIERS}", step=step
            )
        if self.uncertainty not in SUPPORTED_UNCERTAINTY:
            raise ConfigurationError(
                f"unknown uncertainty policy {self.uncertainty!r}, expected one of {SUPPORTED_UNCERTAINTY}", step=step
            )
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero", step=step)

    def to_dict(self) -> dict:
        """Plain-dict snapshot suitable for JSON."""
        snapshot = asdict(self)
        snapshot["metrics"] = list(self.metrics)
        return snapshot

    @classmethod
    def from_dict(cls, data: dict) -> ExperimentConfig:
        """Build a config from a (possibly partial) dict, e.g. a parsed JSON file."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {sorted(unknown)}", step="configuration")

        kwargs = dict(data)
        kwargs["catboost"] = CatBoostConfig(**data.get("catboost", {}))
        kwargs["logistic"] = LogisticConfig(**data.get("logistic", {}))
        kwargs["forest"] = ForestConfig(**data.get("forest", {}))
        if "metrics" in kwargs:
            kwargs["metrics"] = tuple(kwargs["metrics"])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str | Path) -> ExperimentConfig:
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
