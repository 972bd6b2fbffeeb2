"""
On-disk cache for expensive experiment artifacts (joblib).

The random-baseline table and the full-data model do not depend on the
active run's choices, only on the pool, the split and the classifier, so
repeated runs can reuse them. Keys are ``joblib.hash`` digests of the pool
contents and the configuration fields that shape each artifact.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

import joblib

from experiment_config import ExperimentConfig
from labeled_pool import LabeledPool

logger = logging.getLogger(__name__)

__all__ = ["ResultCache", "pool_fingerprint", "trainer_fingerprint"]

# Config fields shared by every cached artifact
_COMMON_KEY_FIELDS = (
    "seed",
    "test_set_size",
    "metrics",
    "classification_threshold",
    "classifier",
    "catboost",
    "logistic",
    "forest",
)

# Extra fields per artifact kind
_KIND_KEY_FIELDS = {
    "full_model": (),
    "baseline": ("initial_examples_per_class", "group_count"),
}


def pool_fingerprint(pool: LabeledPool) -> str:
    """Digest of ids, labels and features."""
    return joblib.hash((pool.ids, pool.labels(pool.ids), pool.features(pool.ids), pool.feature_columns))


def trainer_fingerprint(trainer) -> str:
    """Digest of a trainer's class, hyperparameters and seed.

    Fit counters or other runtime state do not enter the digest, so the same
    trainer keeps hitting its cached artifacts across runs.
    """
    cls = type(trainer)
    return joblib.hash(
        (
            f"{cls.__module__}.{cls.__qualname__}",
            getattr(trainer, "config", None),
            getattr(trainer, "random_state", None),
        )
    )


class ResultCache:
    """
    Directory of joblib-pickled artifacts.

    Parameters
    ----------
    cache_dir : Path or str, optional
        Cache directory, created on first save. None disables caching: nothing
        is loaded or saved and every artifact is computed.
    """

    def __init__(self, cache_dir: Path | str | None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None

    @property
    def enabled(self) -> bool:
        return self.cache_dir is not None

    def key_for(self, pool: LabeledPool, config: ExperimentConfig, kind: str, trainer=None, **extra) -> str:
        """Cache key of artifact ``kind`` ("full_model" or "baseline").

        ``trainer`` is the trainer that fits the artifact; artifacts of
        different trainers never share a key.
        """
        if kind not in _KIND_KEY_FIELDS:
            raise ValueError(f"unknown artifact kind {kind!r}, expected one of {sorted(_KIND_KEY_FIELDS)}")
        snapshot = config.to_dict()
        relevant = {name: snapshot[name] for name in _COMMON_KEY_FIELDS + _KIND_KEY_FIELDS[kind]}
        trainer_digest = trainer_fingerprint(trainer) if trainer is not None else None
        digest = joblib.hash((pool_fingerprint(pool), relevant, trainer_digest, sorted(extra.items())))
        return f"{kind}_{digest}"

    def path_for(self, key: str) -> Path:
        if self.cache_dir is None:
            raise RuntimeError("cache is disabled")
        return self.cache_dir / f"{key}.joblib"

    def load(self, key: str) -> Any | None:
        """Cached value for ``key`` or None when absent (or caching is disabled)."""
        if not self.enabled:
            return None
        path = self.path_for(key)
        if not path.exists():
            return None
        logger.info(f"Loading cached {key} from {path}")
        return joblib.load(path)

    def save(self, key: str, value: Any) -> Path | None:
        if not self.enabled:
            return None
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        joblib.dump(value, path)
        logger.info(f"Cached {key} to {path}")
        return path

    def load_or_compute(self, key: str, compute: Callable[[], Any]) -> Any:
        """Return the cached value, computing and saving it on a miss."""
        value = self.load(key)
        if value is None:
            value = compute()
            self.save(key, value)
        return value
