"""
Run an active-learning experiment on a labeled pool.

Loads a pool (parquet or CSV with an id column, a boolean ``flagged`` label and
numeric feature columns), runs active learning, the random and full-data
baselines and the Monte Carlo significance test, and writes the results.

Usage:
    python run_experiment.py --pool pool.parquet --output-dir ./results
    python run_experiment.py --pool pool.csv --config experiment.json --classifier logistic --n-jobs 4

Outputs (in --output-dir):
    active_performance.parquet    learning curve of the active run
    baseline_performance.parquet  random-baseline learning curves, one per group
    monte_carlo_trials.parquet    per-trial metrics of the significance test
    final_training_ids.csv        final training set, in selection order
    summary.json                  config, final metrics, full-data metrics, p-values
    final_model.joblib            last actively trained model

Environment variables:
    AL_CACHE_DIR: Default cache directory for baseline/full-model artifacts
"""

import argparse
import json
import logging
import os
from pathlib import Path

import joblib
import polars as pl

from active_learning_pipeline import run_experiment, setup_logging
from experiment_config import SUPPORTED_CLASSIFIERS, SUPPORTED_UNCERTAINTY, ExperimentConfig
from experiment_errors import ExperimentError
from labeled_pool import load_labeled_pool
from result_cache import ResultCache

logger = logging.getLogger(__name__)

# CLI flag -> ExperimentConfig field, applied only when the flag is given
CONFIG_OVERRIDES = (
    "seed",
    "initial_examples_per_class",
    "examples_to_label_per_iteration",
    "num_iterations",
    "presample_size",
    "monte_carlo_samples",
    "mu",
    "sigma",
    "test_set_size",
    "group_count",
    "classifier",
    "uncertainty",
    "n_jobs",
    "classification_threshold",
)


def get_default_cache_dir() -> Path | None:
    """Cache directory from AL_CACHE_DIR, or None (no caching)."""
    value = os.environ.get("AL_CACHE_DIR")
    return Path(value) if value else None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Uncertainty-sampling active learning experiment with random and full-data baselines",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--pool", type=Path, required=True, help="Labeled pool (.parquet or .csv)")
    parser.add_argument("--output-dir", type=Path, default=Path("experiment_output"), help="Directory for results")
    parser.add_argument("--config", type=Path, default=None, help="JSON file with ExperimentConfig fields")
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=get_default_cache_dir(),
        help="Cache for baseline table and full-data model (disabled if unset)",
    )
    parser.add_argument("--id-column", type=str, default=None, help="Identifier column (default: id)")
    parser.add_argument("--label-column", type=str, default=None, help="Label column (default: flagged)")

    # Experiment options (override the config file)
    parser.add_argument("--seed", type=int, default=None, help="Top-level reproducibility seed")
    parser.add_argument("--initial-examples-per-class", type=int, default=None)
    parser.add_argument("--examples-to-label-per-iteration", type=int, default=None, help="Batch size N")
    parser.add_argument("--num-iterations", type=int, default=None)
    parser.add_argument("--presample-size", type=int, default=None, help="Candidates scored per round")
    parser.add_argument("--monte-carlo-samples", type=int, default=None, help="Significance-test trials")
    parser.add_argument("--mu", type=float, default=None, help="Uncertainty center")
    parser.add_argument("--sigma", type=float, default=None, help="Uncertainty spread")
    parser.add_argument("--test-set-size", type=int, default=None)
    parser.add_argument("--group-count", type=int, default=None, help="Random-baseline groups")
    parser.add_argument("--classifier", choices=SUPPORTED_CLASSIFIERS, default=None)
    parser.add_argument("--uncertainty", choices=SUPPORTED_UNCERTAINTY, default=None)
    parser.add_argument("--classification-threshold", type=float, default=None)
    parser.add_argument("--metrics", type=str, nargs="+", default=None, help="Metric names to report")
    parser.add_argument("--n-jobs", type=int, default=None, help="Parallel workers for baselines and trials")

    parser.add_argument("--log-file", type=Path, default=None, help="Also log to this file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ExperimentConfig:
    """Config file (if any) with command-line overrides applied."""
    data = {}
    if args.config is not None:
        with open(args.config, "r", encoding="utf-8") as f:
            data = json.load(f)
    for name in CONFIG_OVERRIDES:
        value = getattr(args, name)
        if value is not None:
            data[name] = value
    if args.metrics is not None:
        data["metrics"] = args.metrics
    if args.id_column is not None:
        data["id_column"] = args.id_column
    if args.label_column is not None:
        data["label_column"] = args.label_column
    return ExperimentConfig.from_dict(data)


def write_results(result, output_dir: Path) -> None:
    """Write tables, summary and final model to ``output_dir``."""
    output_dir.mkdir(parents=True, exist_ok=True)

    result.active_performance.write_parquet(output_dir / "active_performance.parquet")
    result.baseline_performance.write_parquet(output_dir / "baseline_performance.parquet")
    if result.significance is not None:
        result.significance.trials.write_parquet(output_dir / "monte_carlo_trials.parquet")

    pl.DataFrame({"id": result.final_training_ids.tolist()}).write_csv(output_dir / "final_training_ids.csv")

    with open(output_dir / "summary.json", "w", encoding="utf-8") as f:
        json.dump(result.summary(), f, indent=2, default=str)

    final = result.history[-1] if result.history else result.initial_result
    joblib.dump(final.model, output_dir / "final_model.joblib")
    logger.info(f"Saved results to: {output_dir}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, log_file=args.log_file)

    try:
        config = build_config(args)
        pool = load_labeled_pool(args.pool, id_column=config.id_column, label_column=config.label_column)
        result = run_experiment(pool, config, cache=ResultCache(args.cache_dir))
    except ExperimentError as e:
        logger.error(f"Experiment aborted: {e}")
        return 1

    logger.info(f"Active run: {len(result.history)} iterations, final training set {len(result.final_training_ids)}")
    if result.significance is not None:
        for name, p in result.significance.p_values.items():
            logger.info(f"  p({name}) = {p:.3f}")

    write_results(result, args.output_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
