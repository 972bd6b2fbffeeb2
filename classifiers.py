"""
Pluggable binary classifiers behind a two-method capability set.

The experiment only ever calls ``trainer.fit(features, labels)`` and
``model.predict_probabilities(features)``. Both are structural protocols, so
any object with these methods can be substituted without touching the loop.
Every ``fit`` call retrains from scratch on the given training set.

Example:
    >>> from classifiers import make_trainer
    >>> from experiment_config import ExperimentConfig
    >>> trainer = make_trainer(ExperimentConfig(classifier="logistic"))
    >>> model = trainer.fit(X_train, y_train)
    >>> proba = model.predict_probabilities(X_test)
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import numpy as np
from catboost import CatBoostClassifier
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from experiment_config import CatBoostConfig, ExperimentConfig, ForestConfig, LogisticConfig
from experiment_errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "FittedModel",
    "ModelTrainer",
    "ProbabilisticModel",
    "CatBoostTrainer",
    "LogisticRegressionTrainer",
    "RandomForestTrainer",
    "make_trainer",
]


@runtime_checkable
class FittedModel(Protocol):
    """A trained binary classifier."""

    def predict_probabilities(self, features: np.ndarray) -> np.ndarray:
        """P(flagged) per row of ``features``."""
        ...


@runtime_checkable
class ModelTrainer(Protocol):
    """Fits a fresh FittedModel on a training set."""

    def fit(self, features: np.ndarray, labels: np.ndarray) -> FittedModel: ...


class ProbabilisticModel:
    """Adapts any estimator exposing ``predict_proba`` to the FittedModel protocol."""

    def __init__(self, estimator):
        self.estimator = estimator

    def __repr__(self) -> str:
        return f"ProbabilisticModel({type(self.estimator).__name__})"

    def predict_probabilities(self, features: np.ndarray) -> np.ndarray:
        if len(features) == 0:
            return np.empty(0, dtype=np.float32)
        return self.estimator.predict_proba(features)[:, 1].astype(np.float32)


def _check_both_classes(labels: np.ndarray) -> None:
    if len(np.unique(labels)) < 2:
        raise ValueError(f"training labels hold a single class ({np.unique(labels).tolist()}); cannot fit a binary classifier")


class CatBoostTrainer:
    """
    Gradient-boosted trees via CatBoost.

    Parameters
    ----------
    config : CatBoostConfig, optional
        Model hyperparameters.
    random_state : int
        Random seed for reproducibility.
    """

    def __init__(self, config: CatBoostConfig | None = None, random_state: int = 42):
        self.config = config if config is not None else CatBoostConfig()
        self.random_state = random_state

    def fit(self, features: np.ndarray, labels: np.ndarray) -> ProbabilisticModel:
        _check_both_classes(labels)
        model = CatBoostClassifier(
            iterations=self.config.iterations,
            depth=self.config.depth,
            learning_rate=self.config.learning_rate,
            random_seed=self.random_state,
            verbose=self.config.verbose,
            loss_function=self.config.loss_function,
            task_type="GPU" if self.config.use_gpu else "CPU",
            l2_leaf_reg=self.config.l2_leaf_reg,
            thread_count=self.config.thread_count,
            allow_writing_files=False,
        )
        model.fit(features, labels)
        return ProbabilisticModel(model)


class LogisticRegressionTrainer:
    """Standardized features followed by L2 logistic regression."""

    def __init__(self, config: LogisticConfig | None = None, random_state: int = 42):
        self.config = config if config is not None else LogisticConfig()
        self.random_state = random_state

    def fit(self, features: np.ndarray, labels: np.ndarray) -> ProbabilisticModel:
        _check_both_classes(labels)
        pipeline = make_pipeline(
            StandardScaler(),
            LogisticRegression(C=self.config.C, max_iter=self.config.max_iter, random_state=self.random_state),
        )
        pipeline.fit(features, labels)
        return ProbabilisticModel(pipeline)


class RandomForestTrainer:
    def __init__(self, config: ForestConfig | None = None, random_state: int = 42):
        self.config = config if config is not None else ForestConfig()
        self.random_state = random_state

    def fit(self, features: np.ndarray, labels: np.ndarray) -> ProbabilisticModel:
        _check_both_classes(labels)
        forest = RandomForestClassifier(
            n_estimators=self.config.n_estimators,
            max_depth=self.config.max_depth,
            min_samples_leaf=self.config.min_samples_leaf,
            n_jobs=self.config.n_jobs,
            random_state=self.random_state,
        )
        forest.fit(features, labels)
        return ProbabilisticModel(forest)


def make_trainer(config: ExperimentConfig) -> ModelTrainer:
    """Build the trainer named by ``config.classifier``, seeded from ``config.seed``."""
    if config.classifier == "catboost":
        trainer = CatBoostTrainer(config.catboost, random_state=config.seed)
    elif config.classifier == "logistic":
        trainer = LogisticRegressionTrainer(config.logistic, random_state=config.seed)
    elif config.classifier == "random_forest":
        trainer = RandomForestTrainer(config.forest, random_state=config.seed)
    else:
        raise ConfigurationError(f"unknown classifier {config.classifier!r}", step="configuration")
    logger.info(f"Using {type(trainer).__name__}")
    return trainer
