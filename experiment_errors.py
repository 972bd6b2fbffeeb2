"""
Error taxonomy for active-learning experiments.

Every error is unrecoverable at the point where it is raised: the run is
aborted and the caller reruns with a corrected configuration or another seed.
Each error carries the experiment step it was raised in (``partition``,
``initial sampling``, ``iteration 3``, ``baseline run 2``, ``Monte Carlo trial 17``)
so the message names both the step and the violated invariant.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)

__all__ = [
    "ExperimentError",
    "InsufficientDataError",
    "InvalidBatchSizeError",
    "DuplicateSelectionError",
    "ConfigurationError",
    "experiment_step",
]


class ExperimentError(Exception):
    """Base class for all experiment failures."""

    def __init__(self, message: str, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class InsufficientDataError(ExperimentError):
    """A stratum or pool holds fewer examples than a requested sample size."""


class InvalidBatchSizeError(ExperimentError):
    """Requested selection size exceeds the available candidates."""


class DuplicateSelectionError(ExperimentError):
    """An id re-entered the training set (already-selected bookkeeping is broken)."""


class ConfigurationError(ExperimentError, ValueError):
    """A configuration parameter is out of range."""


@contextmanager
def experiment_step(step: str) -> Iterator[None]:
    """Attribute failures inside the block to ``step``.

    Experiment errors without a step get this one stamped on. Any other
    exception (e.g. raised by the classifier) is logged with the step name and
    re-raised unchanged.
    """
    try:
        yield
    except ExperimentError as e:
        if e.step is None:
            e.step = step
        raise
    except Exception as e:
        logger.error(f"Step '{step}' failed: {type(e).__name__}: {e}")
        raise
