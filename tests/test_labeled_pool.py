"""Tests for labeled_pool module: pool bookkeeping, partition and stratified seeding."""

import numpy as np
import polars as pl
import pytest

from experiment_errors import ConfigurationError, InsufficientDataError
from labeled_pool import LabeledPool, load_labeled_pool, partition, stratified_initial_set


# ─────────────────────────────────────────────────────────────────────────────
# Test: LabeledPool
# ─────────────────────────────────────────────────────────────────────────────


class TestLabeledPool:
    """Tests for the LabeledPool container."""

    def test_basic_shape(self, labeled_pool):
        assert len(labeled_pool) == 1000
        assert labeled_pool.feature_columns == ["feature_0", "feature_1", "feature_2", "feature_3"]
        assert int(labeled_pool.labels(labeled_pool.ids).sum()) == 500

    def test_lookup_follows_requested_order(self, pool_frame, labeled_pool):
        ids = np.array([17, 3, 999])
        features = labeled_pool.features(ids)
        expected = pool_frame[[17, 3, 999]].select(labeled_pool.feature_columns).to_numpy().astype(np.float32)
        np.testing.assert_array_equal(features, expected)
        np.testing.assert_array_equal(labeled_pool.labels(ids), pool_frame["flagged"].cast(pl.Int8).to_numpy()[[17, 3, 999]])

    def test_string_ids(self):
        frame = pl.DataFrame({"id": ["a", "b", "c"], "flagged": [True, False, True], "x": [1.0, 2.0, 3.0]})
        pool = LabeledPool(frame)
        np.testing.assert_array_equal(pool.features(np.array(["c", "a"]))[:, 0], [3.0, 1.0])

    def test_unknown_id_raises(self, labeled_pool):
        with pytest.raises(KeyError):
            labeled_pool.labels(np.array([123456]))

    def test_missing_label_column(self):
        frame = pl.DataFrame({"id": [1, 2], "x": [0.0, 1.0]})
        with pytest.raises(ConfigurationError, match="flagged"):
            LabeledPool(frame)

    def test_duplicate_ids(self):
        frame = pl.DataFrame({"id": [1, 1], "flagged": [True, False], "x": [0.0, 1.0]})
        with pytest.raises(ConfigurationError, match="duplicates"):
            LabeledPool(frame)

    def test_no_features(self):
        frame = pl.DataFrame({"id": [1, 2], "flagged": [True, False]})
        with pytest.raises(ConfigurationError, match="feature"):
            LabeledPool(frame)

    def test_custom_columns(self):
        frame = pl.DataFrame({"key": [10, 20], "label": [1, 0], "x": [0.0, 1.0], "ignored": [5, 6]})
        pool = LabeledPool(frame, id_column="key", label_column="label", feature_columns=["x"])
        assert pool.feature_columns == ["x"]
        np.testing.assert_array_equal(pool.labels(np.array([20, 10])), [0, 1])

    def test_features_are_read_only(self, labeled_pool):
        with pytest.raises(ValueError):
            labeled_pool._features[0, 0] = 1.0

    def test_reveal_labels_is_ground_truth(self, labeled_pool):
        ids = labeled_pool.ids[:25]
        np.testing.assert_array_equal(labeled_pool.reveal_labels(ids), labeled_pool.labels(ids))

    def test_subset_order(self, labeled_pool):
        subset = labeled_pool.subset(np.array([5, 2]))
        assert subset["id"].to_list() == [5, 2]

    def test_class_ids(self, labeled_pool):
        by_class = labeled_pool.class_ids()
        assert list(by_class) == [0, 1]
        assert len(by_class[0]) == len(by_class[1]) == 500


class TestLoadLabeledPool:
    """Tests for load_labeled_pool."""

    def test_parquet(self, small_pool_frame, tmp_path):
        path = tmp_path / "pool.parquet"
        small_pool_frame.write_parquet(path)
        pool = load_labeled_pool(path)
        assert len(pool) == len(small_pool_frame)

    def test_csv(self, small_pool_frame, tmp_path):
        path = tmp_path / "pool.csv"
        small_pool_frame.write_csv(path)
        pool = load_labeled_pool(path)
        assert len(pool) == len(small_pool_frame)
        assert int(pool.labels(pool.ids).sum()) == 100

    def test_unsupported_format(self, tmp_path):
        with pytest.raises(ConfigurationError, match="unsupported"):
            load_labeled_pool(tmp_path / "pool.xlsx")


# ─────────────────────────────────────────────────────────────────────────────
# Test: partition
# ─────────────────────────────────────────────────────────────────────────────


class TestPartition:
    """Tests for partition function."""

    @pytest.mark.parametrize("seed", [0, 1, 3, 42, 2024])
    def test_disjoint_and_covering(self, labeled_pool, seed):
        test_ids, unlabeled_ids = partition(labeled_pool, 200, seed)

        assert len(test_ids) == 200
        assert len(unlabeled_ids) == 800
        assert set(test_ids.tolist()).isdisjoint(unlabeled_ids.tolist())
        assert set(test_ids.tolist()) | set(unlabeled_ids.tolist()) == set(labeled_pool.ids.tolist())

    def test_reproducible_with_seed(self, labeled_pool):
        test1, unlabeled1 = partition(labeled_pool, 200, 3)
        test2, unlabeled2 = partition(labeled_pool, 200, 3)

        np.testing.assert_array_equal(test1, test2)
        np.testing.assert_array_equal(unlabeled1, unlabeled2)

    def test_different_seeds_produce_different_splits(self, labeled_pool):
        test1, _ = partition(labeled_pool, 200, 3)
        test2, _ = partition(labeled_pool, 200, 4)

        # Very unlikely to be equal with different seeds
        assert not np.array_equal(np.sort(test1), np.sort(test2))

    def test_accepts_generator(self, labeled_pool):
        test1, _ = partition(labeled_pool, 200, np.random.default_rng(3))
        test2, _ = partition(labeled_pool, 200, 3)
        np.testing.assert_array_equal(test1, test2)

    def test_test_size_too_large(self, small_pool):
        with pytest.raises(InsufficientDataError) as exc_info:
            partition(small_pool, 200, 3)
        assert exc_info.value.step == "partition"


# ─────────────────────────────────────────────────────────────────────────────
# Test: stratified_initial_set
# ─────────────────────────────────────────────────────────────────────────────


class TestStratifiedInitialSet:
    """Tests for stratified_initial_set function."""

    def test_per_class_counts(self, labeled_pool):
        initial = stratified_initial_set(labeled_pool, 20, 3)
        labels = labeled_pool.labels(initial)

        assert len(initial) == 40
        assert len(set(initial.tolist())) == 40
        assert int(labels.sum()) == 20

    def test_classes_in_ascending_order(self, labeled_pool):
        initial = stratified_initial_set(labeled_pool, 20, 3)
        labels = labeled_pool.labels(initial)
        np.testing.assert_array_equal(labels, [0] * 20 + [1] * 20)

    def test_reproducible_with_seed(self, labeled_pool):
        np.testing.assert_array_equal(
            stratified_initial_set(labeled_pool, 20, 3),
            stratified_initial_set(labeled_pool, 20, 3),
        )

    def test_insufficient_class(self):
        frame = pl.DataFrame({"id": list(range(30)), "flagged": [True] * 5 + [False] * 25, "x": [0.0] * 30})
        with pytest.raises(InsufficientDataError) as exc_info:
            stratified_initial_set(LabeledPool(frame), 10, 3)
        assert exc_info.value.step == "initial sampling"
        assert "class 1" in str(exc_info.value)

    def test_single_class_pool(self):
        frame = pl.DataFrame({"id": list(range(30)), "flagged": [False] * 30, "x": [0.0] * 30})
        with pytest.raises(InsufficientDataError, match="single class"):
            stratified_initial_set(LabeledPool(frame), 5, 3)

    def test_whole_class_can_be_drawn(self):
        frame = pl.DataFrame({"id": list(range(20)), "flagged": [True] * 10 + [False] * 10, "x": [0.0] * 20})
        initial = stratified_initial_set(LabeledPool(frame), 10, 3)
        assert set(initial.tolist()) == set(range(20))
