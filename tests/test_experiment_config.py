"""Tests for experiment_config module."""

import json

import pytest

from experiment_config import (
    DEFAULT_METRICS,
    CatBoostConfig,
    ExperimentConfig,
)
from experiment_errors import ConfigurationError, InvalidBatchSizeError


class TestExperimentConfigDefaults:
    """Tests for default values."""

    def test_defaults_validate(self):
        ExperimentConfig().validate()

    def test_default_uncertainty_center(self):
        config = ExperimentConfig()
        assert config.mu == 0.5
        assert config.sigma > 0

    def test_nested_groups(self):
        config = ExperimentConfig()
        assert isinstance(config.catboost, CatBoostConfig)
        assert config.metrics == DEFAULT_METRICS


class TestExperimentConfigValidation:
    """Tests for validate()."""

    @pytest.mark.parametrize("sigma", [0.0, -0.1])
    def test_non_positive_sigma(self, sigma):
        with pytest.raises(ConfigurationError, match="sigma"):
            ExperimentConfig(sigma=sigma).validate()

    @pytest.mark.parametrize("mu", [-0.01, 1.5])
    def test_mu_out_of_range(self, mu):
        with pytest.raises(ConfigurationError, match="mu"):
            ExperimentConfig(mu=mu).validate()

    def test_batch_larger_than_presample(self):
        config = ExperimentConfig(examples_to_label_per_iteration=50, presample_size=20)
        with pytest.raises(InvalidBatchSizeError) as exc_info:
            config.validate()
        assert exc_info.value.step == "configuration"

    def test_negative_iterations(self):
        with pytest.raises(ConfigurationError, match="num_iterations"):
            ExperimentConfig(num_iterations=-1).validate()

    def test_zero_iterations_allowed(self):
        ExperimentConfig(num_iterations=0).validate()

    @pytest.mark.parametrize(
        "field_name",
        ["initial_examples_per_class", "examples_to_label_per_iteration", "monte_carlo_samples", "group_count"],
    )
    def test_counts_must_be_positive(self, field_name):
        config = ExperimentConfig(**{field_name: 0})
        with pytest.raises((ConfigurationError, InvalidBatchSizeError)):
            config.validate()

    def test_unknown_classifier(self):
        with pytest.raises(ConfigurationError, match="classifier"):
            ExperimentConfig(classifier="svm").validate()

    def test_unknown_uncertainty(self):
        with pytest.raises(ConfigurationError, match="uncertainty"):
            ExperimentConfig(uncertainty="margin").validate()

    def test_threshold_bounds(self):
        with pytest.raises(ConfigurationError, match="threshold"):
            ExperimentConfig(classification_threshold=1.0).validate()


class TestExperimentConfigSerialization:
    """Tests for to_dict / from_dict / from_json."""

    def test_round_trip(self):
        config = ExperimentConfig(seed=11, sigma=0.2, classifier="logistic", metrics=("accuracy", "auc"))
        restored = ExperimentConfig.from_dict(config.to_dict())
        assert restored == config

    def test_to_dict_is_json_serializable(self):
        json.dumps(ExperimentConfig().to_dict())

    def test_partial_dict(self):
        config = ExperimentConfig.from_dict({"num_iterations": 12, "catboost": {"depth": 4}})
        assert config.num_iterations == 12
        assert config.catboost.depth == 4
        assert config.catboost.iterations == CatBoostConfig().iterations

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigurationError, match="unknown configuration keys"):
            ExperimentConfig.from_dict({"num_iteration": 3})

    def test_from_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"seed": 5, "metrics": ["accuracy"]}))
        config = ExperimentConfig.from_json(path)
        assert config.seed == 5
        assert config.metrics == ("accuracy",)
