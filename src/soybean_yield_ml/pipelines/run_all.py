"""Run the tuning and interpretation stages in order and write a manifest."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence
from pathlib import Path

from soybean_yield_ml.pipelines import interpretability_report as ir
from soybean_yield_ml.pipelines import model_tune as mt
from soybean_yield_ml.pipelines.paths import project_root, resolve_data_path

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    root = project_root()
    parser = argparse.ArgumentParser(description="Run all soybean yield pipeline stages")
    parser.add_argument("--data-path", type=Path, default=None)
    parser.add_argument("--outputs-root", type=Path, default=root / "outputs")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--test-size", type=float, default=0.2)
    parser.add_argument("--n-jobs", type=int, default=-1)
    parser.add_argument(
        "--tune-arg",
        action="append",
        default=[],
        help="Extra model_tune option, e.g. --tune-arg=--n-estimators-grid=100,300. Repeatable.",
    )
    parser.add_argument(
        "--report-arg",
        action="append",
        default=[],
        help="Extra interpretability_report option, e.g. --report-arg=--n-repetitions=5. Repeatable.",
    )
    return parser.parse_args(argv)


def run(
    data_path: Path,
    outputs_root: Path,
    *,
    seed: int,
    test_size: float,
    n_jobs: int,
    tune_argv: Sequence[str] = (),
    report_argv: Sequence[str] = (),
) -> dict[str, object]:
    """Tune, then interpret the saved model. ``tune_argv``/``report_argv`` are appended to each stage's CLI."""
    targets = {
        "model_tune": outputs_root / "model_tune",
        "interpretability": outputs_root / "interpretability",
    }

    tune_args = mt.parse_args(
        [
            "--data-path",
            str(data_path),
            "--out-dir",
            str(targets["model_tune"]),
            "--seed",
            str(seed),
            "--test-size",
            str(test_size),
            *tune_argv,
        ]
    )
    tune_result = mt.run(tune_args)

    report_args = ir.parse_args(
        [
            "--model-path",
            str(tune_result["model_path"]),
            "--out-dir",
            str(targets["interpretability"]),
            "--seed",
            str(seed),
            "--n-jobs",
            str(n_jobs),
            *report_argv,
        ]
    )
    summary = ir.run(report_args)

    manifest = {
        "data_path": str(data_path),
        "seed": seed,
        "test_size": test_size,
        "outputs": {name: str(path) for name, path in targets.items()},
        "model_path": str(tune_result["model_path"]),
        "metrics": tune_result["metrics"],
        "top_features": summary["top_features"],
    }
    outputs_root.mkdir(parents=True, exist_ok=True)
    with (outputs_root / "run_all_manifest.json").open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    return manifest


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    args = parse_args()
    data_path = resolve_data_path(args.data_path)
    LOGGER.info("Running all stages on %s", data_path)
    run(
        data_path,
        args.outputs_root,
        seed=args.seed,
        test_size=args.test_size,
        n_jobs=args.n_jobs,
        tune_argv=args.tune_arg,
        report_argv=args.report_arg,
    )


if __name__ == "__main__":
    main()
