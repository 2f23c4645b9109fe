"""Feature-interaction strength (Friedman's H-statistic)."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from soybean_yield_ml.pipelines.predictor import Predictor  # noqa: E402

LOGGER = logging.getLogger(__name__)


def sample_rows(predictor: Predictor, grid_size: int, seed: int) -> pd.DataFrame:
    if int(grid_size) < 2:
        raise ValueError(f"grid_size must be >= 2, got {grid_size}")
    n = min(int(grid_size), predictor.n_rows)
    return predictor.data.sample(n=n, random_state=seed).reset_index(drop=True)


def partial_dependence_at_sample(predictor: Predictor, sample: pd.DataFrame, fixed: Sequence[str]) -> np.ndarray:
    """Monte-Carlo partial dependence of ``fixed`` evaluated at each sample row.

    Row ``i`` of the result averages the prediction over all sample rows after
    overwriting the ``fixed`` columns with row ``i``'s values.
    """
    n = len(sample)
    idx = np.arange(n)
    grid = sample.iloc[np.tile(idx, n)].reset_index(drop=True)
    for col in fixed:
        grid[col] = sample[col].to_numpy()[np.repeat(idx, n)]
    return predictor.predict(grid).reshape(n, n).mean(axis=1)


def h_statistic(joint: np.ndarray, *parts: np.ndarray) -> float:
    joint_c = joint - joint.mean()
    residual = joint_c.copy()
    for part in parts:
        residual -= part - part.mean()
    denom = float(np.sum(joint_c**2))
    if denom <= 0.0:
        return 0.0
    h2 = float(np.sum(residual**2)) / denom
    return float(np.sqrt(min(max(h2, 0.0), 1.0)))


def overall_interaction(predictor: Predictor, sample: pd.DataFrame, feature: str) -> float:
    prediction = predictor.predict(sample)
    pd_feature = partial_dependence_at_sample(predictor, sample, [feature])
    others = [c for c in predictor.feature_names if c != feature]
    pd_rest = partial_dependence_at_sample(predictor, sample, others)
    return h_statistic(prediction, pd_feature, pd_rest)


def pairwise_interaction(predictor: Predictor, sample: pd.DataFrame, feature: str, other: str) -> float:
    pd_joint = partial_dependence_at_sample(predictor, sample, [feature, other])
    pd_feature = partial_dependence_at_sample(predictor, sample, [feature])
    pd_other = partial_dependence_at_sample(predictor, sample, [other])
    return h_statistic(pd_joint, pd_feature, pd_other)


def interaction_strength(
    predictor: Predictor,
    *,
    feature: str | None = None,
    grid_size: int = 30,
    seed: int = 42,
) -> pd.DataFrame:
    """H-statistic per feature, or between ``feature`` and every other feature.

    0 means the effect is purely additive; 1 means all of the variance in
    the relevant prediction surface comes from the interaction.
    """
    sample = sample_rows(predictor, grid_size, seed)
    if feature is None:
        rows = []
        for feat in predictor.feature_names:
            rows.append({"feature": feat, "interaction": overall_interaction(predictor, sample, feat)})
            LOGGER.info("Overall interaction %s = %.4f", feat, rows[-1]["interaction"])
        out = pd.DataFrame(rows, columns=["feature", "interaction"])
    else:
        predictor.check_feature(feature)
        rows = []
        for other in [c for c in predictor.feature_names if c != feature]:
            rows.append(
                {
                    "feature": feature,
                    "with_feature": other,
                    "interaction": pairwise_interaction(predictor, sample, feature, other),
                }
            )
        out = pd.DataFrame(rows, columns=["feature", "with_feature", "interaction"])
    return out.sort_values("interaction", ascending=False).reset_index(drop=True)


def plot_interaction(interaction_df: pd.DataFrame, out_path: Path, *, title: str, top_n: int = 20) -> None:
    if interaction_df.empty:
        return
    top = interaction_df.head(int(top_n)).iloc[::-1]
    labels = top["with_feature"] if "with_feature" in top.columns else top["feature"]
    plt.figure(figsize=(10, 6))
    plt.barh(labels.astype(str), top["interaction"], color="#7570b3")
    plt.xlim(0.0, max(1e-6, float(top["interaction"].max()) * 1.1))
    plt.xlabel("Interaction strength (H-statistic)")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_path, dpi=180)
    plt.close()
