"""Shared pytest fixtures for active-learning experiment tests."""

import numpy as np
import polars as pl
import pytest


def make_pool_frame(n_positive: int, n_negative: int, n_features: int = 4, seed: int = 42) -> pl.DataFrame:
    """Two overlapping Gaussian clouds: flagged rows are shifted by +1.5 on every feature."""
    np.random.seed(seed)
    n_rows = n_positive + n_negative
    flagged = np.array([True] * n_positive + [False] * n_negative)
    np.random.shuffle(flagged)
    data = {"id": list(range(n_rows)), "flagged": flagged.tolist()}
    for j in range(n_features):
        data[f"feature_{j}"] = (np.random.randn(n_rows) + 1.5 * flagged).tolist()
    return pl.DataFrame(data)


@pytest.fixture
def pool_frame() -> pl.DataFrame:
    """1000 examples, 500 flagged / 500 not."""
    return make_pool_frame(500, 500)


@pytest.fixture
def small_pool_frame() -> pl.DataFrame:
    """200 examples, 100 flagged / 100 not."""
    return make_pool_frame(100, 100, seed=7)


@pytest.fixture
def labeled_pool(pool_frame):
    from labeled_pool import LabeledPool

    return LabeledPool(pool_frame)


@pytest.fixture
def small_pool(small_pool_frame):
    from labeled_pool import LabeledPool

    return LabeledPool(small_pool_frame)


@pytest.fixture
def fast_config():
    """Scenario settings with the fast logistic trainer and few baseline runs."""
    from experiment_config import ExperimentConfig

    return ExperimentConfig(
        seed=3,
        initial_examples_per_class=20,
        examples_to_label_per_iteration=10,
        num_iterations=5,
        presample_size=100,
        test_set_size=200,
        monte_carlo_samples=5,
        group_count=2,
        classifier="logistic",
    )


@pytest.fixture
def logistic_trainer():
    from classifiers import LogisticRegressionTrainer

    return LogisticRegressionTrainer(random_state=3)


class CountingTrainer:
    """Wraps a trainer and counts fit() calls."""

    def __init__(self, inner):
        self.inner = inner
        self.fit_calls = 0
        self.training_sizes = []

    def fit(self, features, labels):
        self.fit_calls += 1
        self.training_sizes.append(len(labels))
        return self.inner.fit(features, labels)


@pytest.fixture
def counting_trainer(logistic_trainer):
    return CountingTrainer(logistic_trainer)


@pytest.fixture
def temp_output_dir(tmp_path):
    """Provide a temporary output directory."""
    output_dir = tmp_path / "output"
    output_dir.mkdir()
    return output_dir
