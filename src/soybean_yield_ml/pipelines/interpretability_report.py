"""
Interpretation report for the tuned soybean yield random forest.

Run:
  python src/soybean_yield_ml/pipelines/interpretability_report.py

Outputs (under ./outputs/interpretability):
  - permutation_importance.csv / permutation_importance.png
  - ale_<feature>.csv / ale_<feature>.png
  - ale_overview.png
  - interaction_overall.csv / interaction_overall.png
  - interaction_<feature>.csv / interaction_<feature>.png
  - interpretability_summary.json
  - interpretability_report.md
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pandas as pd

from soybean_yield_ml.pipelines import common as cm
from soybean_yield_ml.pipelines import feature_effects as fe
from soybean_yield_ml.pipelines import feature_importance as fi
from soybean_yield_ml.pipelines import interaction as ia
from soybean_yield_ml.pipelines.model_tune import load_model_bundle
from soybean_yield_ml.pipelines.paths import project_root, resolve_model_path
from soybean_yield_ml.pipelines.predictor import Predictor

OUT_DIR = project_root() / "outputs" / "interpretability"
LOGGER = logging.getLogger(__name__)


def slugify(name: str) -> str:
    slug = re.sub(r"[^0-9A-Za-z]+", "_", str(name)).strip("_").lower()
    return slug or "feature"


def parse_level_orders(raw: Sequence[str] | None) -> dict[str, list[str]]:
    """Parse ``feature=level1,level2`` options into a mapping."""
    out: dict[str, list[str]] = {}
    for item in raw or []:
        if "=" not in item:
            raise ValueError(f"Level order must look like 'feature=a,b,c', got {item!r}")
        feature, levels = item.split("=", maxsplit=1)
        out[feature.strip()] = cm.parse_csv_list(levels)
    return out


def parse_limits(raw: str | None) -> tuple[float, float] | None:
    if raw is None or not str(raw).strip():
        return None
    values = cm.parse_float_list(raw)
    if len(values) != 2 or values[0] >= values[1]:
        raise ValueError(f"Axis limits must be 'low,high' with low < high, got {raw!r}")
    return values[0], values[1]


def pick_effect_features(
    importance_df: pd.DataFrame,
    *,
    top_k: int,
    explicit: Sequence[str] = (),
    available: Sequence[str] = (),
) -> list[str]:
    unknown = [f for f in explicit if f not in available]
    if unknown:
        raise ValueError(f"Unknown feature(s) requested: {unknown}")
    ranked = importance_df["feature"].astype(str).head(int(top_k)).tolist()
    return cm.dedupe_keep_order([*explicit, *ranked])


def markdown_table(df: pd.DataFrame, columns: Sequence[str], float_fmt: str = "{:.4f}") -> list[str]:
    lines = ["| " + " | ".join(columns) + " |", "|" + "---|" * len(columns)]
    for _, row in df[list(columns)].iterrows():
        cells = [float_fmt.format(v) if isinstance(v, float) else str(v) for v in row.tolist()]
        lines.append("| " + " | ".join(cells) + " |")
    return lines


def write_report(
    out_path: Path,
    *,
    bundle: dict[str, Any],
    model_path: Path,
    importance_df: pd.DataFrame,
    effect_files: dict[str, str],
    overall_df: pd.DataFrame,
    pairwise_feature: str | None,
    pairwise_df: pd.DataFrame,
    loss: str,
) -> None:
    metrics = bundle.get("metrics", {})
    lines = [
        "# Soybean Yield Random Forest: Interpretation Report",
        "",
        "## Model",
        f"- Params: `{json.dumps(bundle.get('params', {}), sort_keys=True)}`",
        f"- Seed: `{bundle.get('seed')}`",
    ]
    for key in ("rmse", "mae", "r2", "oob_rmse", "oob_r2"):
        if key in metrics:
            lines.append(f"- {key.upper()}: {float(metrics[key]):.4f}")
    pred_plot = Path(model_path).parent / "predicted_vs_observed.png"
    if pred_plot.exists():
        link = Path(os.path.relpath(pred_plot.resolve(), out_path.parent.resolve())).as_posix()
        lines.extend(["", f"![Held-out predictions]({link})"])
    lines.extend(
        [
            "",
            "## Permutation feature importance",
            f"Loss: `{loss}`; importance is the median {importance_df.attrs.get('compare', 'ratio')} "
            "of permuted against original error "
            f"(original error {importance_df.attrs.get('original_error', float('nan')):.4f}).",
            "",
            "![Permutation importance](permutation_importance.png)",
            "",
        ]
    )
    lines.extend(
        markdown_table(importance_df.head(10), ["rank", "feature", "importance", "importance_05", "importance_95"])
    )
    lines.extend(["", "## Accumulated local effects", ""])
    if "overview" in effect_files:
        lines.extend([f"![ALE overview]({effect_files['overview']})", ""])
    for feature, png in effect_files.items():
        if feature == "overview":
            continue
        lines.extend([f"### {feature}", "", f"![ALE {feature}]({png})", ""])
    lines.extend(["## Feature interactions", "", "![Overall interaction](interaction_overall.png)", ""])
    lines.extend(markdown_table(overall_df.head(10), ["feature", "interaction"]))
    if pairwise_feature is not None and not pairwise_df.empty:
        lines.extend(
            [
                "",
                f"### Two-way interactions with {pairwise_feature}",
                "",
                f"![Two-way interactions](interaction_{slugify(pairwise_feature)}.png)",
                "",
            ]
        )
        lines.extend(markdown_table(pairwise_df.head(10), ["with_feature", "interaction"]))
    lines.extend(
        [
            "",
            "## Caveats",
            "- Effects are associations learned by the model on observational data, not causal effects.",
            "- ALE curves are only supported where data exist; read the rug marks before the curve ends.",
        ]
    )
    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def run(args: argparse.Namespace) -> dict[str, Any]:
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    model_path = resolve_model_path(args.model_path)

    LOGGER.info("Loading model bundle from %s", model_path)
    bundle = load_model_bundle(model_path)
    predictor = Predictor.from_bundle(bundle, use=args.use)
    seed = int(args.seed)

    LOGGER.info("Computing permutation importance")
    importance_df = fi.permutation_importance(
        predictor,
        loss=args.loss,
        compare=args.compare,
        n_repetitions=int(args.n_repetitions),
        seed=seed,
        n_jobs=int(args.n_jobs),
    )
    importance_df.to_csv(out_dir / "permutation_importance.csv", index=False)
    fi.plot_feature_importance(importance_df, out_dir / "permutation_importance.png")

    level_orders = parse_level_orders(args.level_order)
    ylim = parse_limits(args.ale_ylim)
    effect_features = pick_effect_features(
        importance_df,
        top_k=int(args.top_k_effects),
        explicit=cm.parse_csv_list(args.effect_features) if args.effect_features else [],
        available=predictor.feature_names,
    )
    effects: dict[str, pd.DataFrame] = {}
    effect_files: dict[str, str] = {}
    for feature in effect_features:
        LOGGER.info("Computing ALE for %s", feature)
        effect = fe.feature_effect(
            predictor,
            feature,
            method="ale",
            grid_size=int(args.grid_size),
            level_order=level_orders.get(feature),
        )
        if feature in level_orders and "level" in effect.columns:
            effect = fe.relevel(effect, level_orders[feature])
        slug = slugify(feature)
        effect.to_csv(out_dir / f"ale_{slug}.csv", index=False)
        fe.plot_feature_effect(
            effect,
            feature=feature,
            out_path=out_dir / f"ale_{slug}.png",
            rug_values=predictor.data[feature] if predictor.is_numeric(feature) else None,
            ylim=ylim,
        )
        effects[feature] = effect
        effect_files[feature] = f"ale_{slug}.png"
    if len(effects) > 1:
        fe.plot_effect_grid(effects, out_dir / "ale_overview.png")
        effect_files["overview"] = "ale_overview.png"

    LOGGER.info("Computing overall interaction strength")
    overall_df = ia.interaction_strength(predictor, grid_size=int(args.interaction_grid_size), seed=seed)
    overall_df.to_csv(out_dir / "interaction_overall.csv", index=False)
    ia.plot_interaction(overall_df, out_dir / "interaction_overall.png", title="Overall interaction strength")

    pairwise_feature = args.interaction_feature
    if pairwise_feature is None and not overall_df.empty:
        pairwise_feature = str(overall_df.iloc[0]["feature"])
    pairwise_df = pd.DataFrame(columns=["feature", "with_feature", "interaction"])
    if pairwise_feature is not None and predictor.data.shape[1] > 1:
        LOGGER.info("Computing two-way interactions with %s", pairwise_feature)
        pairwise_df = ia.interaction_strength(
            predictor,
            feature=pairwise_feature,
            grid_size=int(args.interaction_grid_size),
            seed=seed,
        )
        slug = slugify(pairwise_feature)
        pairwise_df.to_csv(out_dir / f"interaction_{slug}.csv", index=False)
        ia.plot_interaction(
            pairwise_df,
            out_dir / f"interaction_{slug}.png",
            title=f"Two-way interaction strength with {pairwise_feature}",
        )

    summary = {
        "model_path": str(model_path),
        "rows_explained": predictor.n_rows,
        "data_used": args.use,
        "loss": args.loss,
        "original_error": importance_df.attrs.get("original_error"),
        "top_features": importance_df["feature"].head(10).tolist(),
        "effect_features": effect_features,
        "strongest_interaction": pairwise_feature,
    }
    with (out_dir / "interpretability_summary.json").open("w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)

    write_report(
        out_dir / "interpretability_report.md",
        bundle=bundle,
        model_path=model_path,
        importance_df=importance_df,
        effect_files=effect_files,
        overall_df=overall_df,
        pairwise_feature=pairwise_feature,
        pairwise_df=pairwise_df,
        loss=args.loss,
    )
    LOGGER.info("Saved interpretation artifacts to %s", out_dir)
    return summary


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Interpret the tuned soybean yield random forest.")
    parser.add_argument("--model-path", type=Path, default=None)
    parser.add_argument("--out-dir", type=Path, default=OUT_DIR)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--use", choices=["train", "test"], default="test")
    parser.add_argument("--loss", choices=sorted(fi.LOSSES), default="mae")
    parser.add_argument("--compare", choices=list(fi.COMPARISONS), default="ratio")
    parser.add_argument("--n-repetitions", type=int, default=10)
    parser.add_argument("--n-jobs", type=int, default=-1, help="Workers for permutation repetitions.")
    parser.add_argument("--top-k-effects", type=int, default=4)
    parser.add_argument("--effect-features", type=str, default="", help="Comma-separated extra ALE features.")
    parser.add_argument("--grid-size", type=int, default=20)
    parser.add_argument("--ale-ylim", type=str, default=None, help="Shared ALE y limits as 'low,high'.")
    parser.add_argument(
        "--level-order",
        action="append",
        default=None,
        help="Categorical level order for ALE plots, e.g. 'tillage=none,reduced,conventional'.",
    )
    parser.add_argument("--interaction-grid-size", type=int, default=30)
    parser.add_argument("--interaction-feature", type=str, default=None)
    return parser.parse_args(argv)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    run(parse_args())


if __name__ == "__main__":
    main()
