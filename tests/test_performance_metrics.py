"""Tests for performance_metrics module."""

import math

import numpy as np
import pytest

pytest.importorskip("catboost", reason="catboost not installed")

from experiment_errors import ConfigurationError
from performance_metrics import (
    LOWER_IS_BETTER,
    METRIC_FUNCTIONS,
    PerformanceRecord,
    compute_performance,
    fit_and_evaluate,
    performance_table,
)


class TestComputePerformance:
    """Tests for compute_performance function."""

    @pytest.fixture
    def balanced_case(self):
        labels = np.array([0, 0, 1, 1])
        probs = np.array([0.1, 0.6, 0.4, 0.9])
        return labels, probs

    def test_confusion_matrix(self, balanced_case):
        record = compute_performance(*balanced_case, training_size=40)
        assert record.confusion == (1, 1, 1, 1)
        assert record.training_size == 40

    def test_threshold_metrics(self, balanced_case):
        record = compute_performance(*balanced_case, training_size=40)
        for name in ("accuracy", "precision", "recall", "specificity", "f1"):
            assert record.metrics[name] == pytest.approx(0.5)

    def test_auc(self, balanced_case):
        record = compute_performance(*balanced_case, training_size=40)
        assert record.metrics["auc"] == pytest.approx(0.75)

    def test_custom_threshold(self, balanced_case):
        record = compute_performance(*balanced_case, training_size=40, threshold=0.35)
        assert record.confusion == (1, 1, 0, 2)

    def test_metric_subset(self, balanced_case):
        record = compute_performance(*balanced_case, training_size=40, metric_names=("brier_score", "log_loss"))
        assert set(record.metrics) == {"brier_score", "log_loss"}
        assert record.metrics["brier_score"] == pytest.approx(np.mean((balanced_case[1] - balanced_case[0]) ** 2))

    def test_single_class_auc_is_nan(self, caplog):
        record = compute_performance(np.array([1, 1, 1]), np.array([0.2, 0.7, 0.9]), training_size=10)
        assert math.isnan(record.metrics["auc"])
        assert "AUC undefined" in caplog.text

    def test_unknown_metric(self, balanced_case):
        with pytest.raises(ConfigurationError, match="unknown metrics"):
            compute_performance(*balanced_case, training_size=40, metric_names=("accuracy", "kappa"))

    def test_lower_is_better_names_exist(self):
        assert LOWER_IS_BETTER <= set(METRIC_FUNCTIONS)


class TestPerformanceTable:
    """Tests for PerformanceRecord rows and performance_table."""

    def test_as_row(self):
        record = PerformanceRecord(training_size=50, confusion=(3, 1, 2, 4), metrics={"accuracy": 0.7})
        assert record.as_row(iteration=2) == {
            "iteration": 2,
            "training_size": 50,
            "tn": 3,
            "fp": 1,
            "fn": 2,
            "tp": 4,
            "accuracy": 0.7,
        }

    def test_table_with_tags(self):
        records = [PerformanceRecord(40 + 10 * i, (1, 0, 0, 1), {"accuracy": 1.0}) for i in range(3)]
        table = performance_table(records, iteration=[0, 1, 2])
        assert table.shape[0] == 3
        assert table["training_size"].to_list() == [40, 50, 60]
        assert table.columns[0] == "iteration"

    def test_tag_length_mismatch(self):
        records = [PerformanceRecord(40, (1, 0, 0, 1), {})]
        with pytest.raises(ValueError, match="tag column"):
            performance_table(records, iteration=[0, 1])

    def test_format(self):
        record = PerformanceRecord(40, (1, 0, 0, 1), {"accuracy": 0.5})
        assert record.format() == "n=40, accuracy=0.5000"


class TestFitAndEvaluate:
    """Tests for fit_and_evaluate."""

    def test_trains_and_scores(self, labeled_pool, logistic_trainer):
        training_ids = labeled_pool.ids[:100]
        test_ids = labeled_pool.ids[800:]
        model, probs, record = fit_and_evaluate(logistic_trainer, labeled_pool, training_ids, test_ids)

        assert probs.shape == (200,)
        assert record.training_size == 100
        assert sum(record.confusion) == 200
        # Clouds are shifted by 1.5 sigma on four features: far better than chance
        assert record.metrics["auc"] > 0.85
