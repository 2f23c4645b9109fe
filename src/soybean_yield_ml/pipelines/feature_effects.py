"""Accumulated local effects (and partial dependence) for the fitted model."""

from __future__ import annotations

import math
from collections.abc import Sequence
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from soybean_yield_ml.pipelines.predictor import Predictor  # noqa: E402

NUMERIC_COLUMNS = ["x", "ale", "support_count"]
CATEGORICAL_COLUMNS = ["level", "ale", "support_count", "order"]
PDP_COLUMNS = ["x", "pdp"]
METHODS = ("ale", "pdp")


def quantile_edges(values: pd.Series, grid_size: int) -> np.ndarray:
    arr = pd.to_numeric(values, errors="coerce").dropna().to_numpy(dtype=float)
    if len(arr) == 0:
        return np.array([], dtype=float)
    qs = np.linspace(0.0, 1.0, int(grid_size) + 1)
    return np.unique(np.quantile(arr, qs, method="inverted_cdf"))


def ale_numeric(predictor: Predictor, feature: str, *, grid_size: int = 20) -> pd.DataFrame:
    """First-order ALE of a numeric feature.

    Interval k covers ``(edge[k-1], edge[k]]``; the smallest value falls into
    the first interval. The curve starts at 0 at the lowest edge and is then
    centered so its count-weighted mean over intervals is 0.
    """
    predictor.check_feature(feature)
    if int(grid_size) < 1:
        raise ValueError(f"grid_size must be >= 1, got {grid_size}")
    values = pd.to_numeric(predictor.data[feature], errors="coerce")
    edges = quantile_edges(values, grid_size)
    if len(edges) < 2:
        return pd.DataFrame(columns=NUMERIC_COLUMNS)

    valid = values.notna().to_numpy()
    x_ref = predictor.data.loc[valid].reset_index(drop=True)
    interval = np.clip(np.searchsorted(edges, values[valid].to_numpy(dtype=float), side="left"), 1, len(edges) - 1)

    x_low = x_ref.copy()
    x_high = x_ref.copy()
    x_low[feature] = edges[interval - 1]
    x_high[feature] = edges[interval]
    deltas = predictor.predict(x_high) - predictor.predict(x_low)

    n_intervals = len(edges) - 1
    counts = np.bincount(interval - 1, minlength=n_intervals).astype(float)
    sums = np.bincount(interval - 1, weights=deltas, minlength=n_intervals)
    mean_delta = np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)

    ale = np.concatenate([[0.0], np.cumsum(mean_delta)])
    mid = (ale[:-1] + ale[1:]) / 2.0
    ale_centered = ale - float(np.sum(mid * counts) / np.sum(counts))
    return pd.DataFrame(
        {
            "x": edges,
            "ale": ale_centered,
            "support_count": np.concatenate([[0], counts.astype(int)]),
        }
    )


def _ks_distance(a: np.ndarray, b: np.ndarray) -> float:
    if len(a) == 0 or len(b) == 0:
        return 0.0
    grid = np.union1d(a, b)
    cdf_a = np.searchsorted(np.sort(a), grid, side="right") / len(a)
    cdf_b = np.searchsorted(np.sort(b), grid, side="right") / len(b)
    return float(np.max(np.abs(cdf_a - cdf_b)))


def level_distance_matrix(data: pd.DataFrame, feature: str, levels: Sequence[str]) -> np.ndarray:
    """Dissimilarity between the levels of ``feature`` summed over the other columns."""
    col = data[feature].astype(str)
    k = len(levels)
    dist = np.zeros((k, k), dtype=float)
    for other in [c for c in data.columns if c != feature]:
        series = data[other]
        numeric = pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)
        if numeric:
            groups = {lvl: pd.to_numeric(series[col == lvl], errors="coerce").dropna().to_numpy() for lvl in levels}
        else:
            cats = series.astype(str)
            groups = {lvl: cats[col == lvl].value_counts(normalize=True) for lvl in levels}
        for i in range(k):
            for j in range(i + 1, k):
                if numeric:
                    d = _ks_distance(groups[levels[i]], groups[levels[j]])
                else:
                    freq_i, freq_j = groups[levels[i]].align(groups[levels[j]], fill_value=0.0)
                    d = float(np.sum(np.abs(freq_i - freq_j)))
                dist[i, j] += d
                dist[j, i] += d
    return dist


def classical_mds_1d(dist: np.ndarray) -> np.ndarray:
    """One-dimensional classical (Torgerson) scaling of a distance matrix."""
    n = dist.shape[0]
    if n < 2:
        return np.zeros(n)
    centering = np.eye(n) - np.ones((n, n)) / n
    b = -0.5 * centering @ (dist**2) @ centering
    eigvals, eigvecs = np.linalg.eigh(b)
    coord = eigvecs[:, -1] * math.sqrt(max(float(eigvals[-1]), 0.0))
    if coord[0] > coord[-1]:
        coord = -coord
    return coord


def order_levels(data: pd.DataFrame, feature: str) -> list[str]:
    levels = sorted(data[feature].astype(str).unique().tolist())
    if len(levels) <= 2:
        return levels
    coord = classical_mds_1d(level_distance_matrix(data, feature, levels))
    return [levels[i] for i in np.argsort(coord, kind="stable")]


def ale_categorical(
    predictor: Predictor,
    feature: str,
    *,
    level_order: Sequence[str] | None = None,
) -> pd.DataFrame:
    predictor.check_feature(feature)
    col = predictor.data[feature].astype(str)
    present = col.unique().tolist()
    if level_order is None:
        levels = order_levels(predictor.data, feature)
    else:
        levels = [str(lvl) for lvl in level_order if str(lvl) in present]
        levels += sorted(lvl for lvl in present if lvl not in levels)
    if len(levels) < 2:
        return pd.DataFrame(columns=CATEGORICAL_COLUMNS)

    ale = [0.0]
    for lower, upper in zip(levels[:-1], levels[1:], strict=True):
        deltas: list[np.ndarray] = []
        for lvl in (lower, upper):
            rows = predictor.data.loc[(col == lvl).to_numpy()]
            if rows.empty:
                continue
            x_up = rows.copy()
            x_down = rows.copy()
            x_up[feature] = upper
            x_down[feature] = lower
            deltas.append(predictor.predict(x_up) - predictor.predict(x_down))
        step = float(np.mean(np.concatenate(deltas))) if deltas else 0.0
        ale.append(ale[-1] + step)

    counts = np.array([int((col == lvl).sum()) for lvl in levels], dtype=float)
    ale_arr = np.asarray(ale, dtype=float)
    ale_centered = ale_arr - float(np.sum(ale_arr * counts) / np.sum(counts))
    return pd.DataFrame(
        {
            "level": levels,
            "ale": ale_centered,
            "support_count": counts.astype(int),
            "order": np.arange(1, len(levels) + 1),
        }
    )


def partial_dependence(predictor: Predictor, feature: str, *, grid_size: int = 20) -> pd.DataFrame:
    predictor.check_feature(feature)
    if predictor.is_numeric(feature):
        qs = np.linspace(0.05, 0.95, int(grid_size))
        values = pd.to_numeric(predictor.data[feature], errors="coerce").dropna().to_numpy(dtype=float)
        grid: list[object] = np.unique(np.quantile(values, qs)).tolist() if len(values) else []
    else:
        grid = sorted(predictor.data[feature].astype(str).unique().tolist())
    means: list[float] = []
    for val in grid:
        x_mod = predictor.data.copy()
        x_mod[feature] = val
        means.append(float(np.mean(predictor.predict(x_mod))))
    if not means:
        return pd.DataFrame(columns=PDP_COLUMNS)
    arr = np.asarray(means, dtype=float)
    return pd.DataFrame({"x": grid, "pdp": arr - float(np.mean(arr))})


def feature_effect(
    predictor: Predictor,
    feature: str,
    *,
    method: str = "ale",
    grid_size: int = 20,
    level_order: Sequence[str] | None = None,
) -> pd.DataFrame:
    if method not in METHODS:
        raise ValueError(f"Unsupported method '{method}'. Available: {list(METHODS)}")
    predictor.check_feature(feature)
    if method == "pdp":
        return partial_dependence(predictor, feature, grid_size=grid_size)
    if predictor.is_numeric(feature):
        return ale_numeric(predictor, feature, grid_size=grid_size)
    return ale_categorical(predictor, feature, level_order=level_order)


def relevel(effect_df: pd.DataFrame, order: Sequence[str]) -> pd.DataFrame:
    """Reorder a categorical effect table for plotting; unknown levels go last."""
    if "level" not in effect_df.columns:
        raise ValueError("relevel expects a categorical effect table with a 'level' column.")
    wanted = [str(v) for v in order]
    rank = {lvl: i for i, lvl in enumerate(wanted)}
    out = effect_df.copy()
    out["_rank"] = out["level"].astype(str).map(rank).fillna(len(wanted))
    out = out.sort_values(["_rank", "order"], kind="stable").drop(columns=["_rank"]).reset_index(drop=True)
    return out


def plot_feature_effect(
    effect_df: pd.DataFrame,
    *,
    feature: str,
    out_path: Path,
    rug_values: pd.Series | None = None,
    xlim: tuple[float, float] | None = None,
    ylim: tuple[float, float] | None = None,
    x_label: str | None = None,
    y_label: str = "ALE of predicted yield",
) -> None:
    if effect_df.empty:
        return
    plt.figure(figsize=(8, 5))
    value_col = "ale" if "ale" in effect_df.columns else "pdp"
    if "level" in effect_df.columns:
        plt.bar(effect_df["level"].astype(str), effect_df[value_col], color="#4e79a7")
        plt.xticks(rotation=45, ha="right")
    else:
        plt.plot(effect_df["x"], effect_df[value_col], color="#1b9e77")
        if rug_values is not None:
            rug = pd.to_numeric(rug_values, errors="coerce").dropna()
            bottom = float(effect_df[value_col].min()) if ylim is None else float(ylim[0])
            plt.plot(rug, np.full(len(rug), bottom), "|", color="#666666", alpha=0.5)
    plt.axhline(0.0, color="#666666", linewidth=1)
    if xlim is not None:
        plt.xlim(*xlim)
    if ylim is not None:
        plt.ylim(*ylim)
    plt.xlabel(x_label or feature)
    plt.ylabel(y_label)
    plt.title(f"Accumulated local effect: {feature}" if value_col == "ale" else f"Partial dependence: {feature}")
    plt.tight_layout()
    plt.savefig(out_path, dpi=180)
    plt.close()


def plot_effect_grid(
    effects: dict[str, pd.DataFrame],
    out_path: Path,
    *,
    ncols: int = 3,
    y_label: str = "ALE of predicted yield",
) -> None:
    items = [(name, df) for name, df in effects.items() if not df.empty]
    if not items:
        return
    ncols = max(1, min(int(ncols), len(items)))
    nrows = int(math.ceil(len(items) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3.2 * nrows), sharey=True, squeeze=False)
    for ax, (name, df) in zip(axes.ravel(), items, strict=False):
        if "level" in df.columns:
            ax.bar(df["level"].astype(str), df["ale"], color="#4e79a7")
            ax.tick_params(axis="x", labelrotation=45)
        else:
            ax.plot(df["x"], df["ale"], color="#1b9e77")
        ax.axhline(0.0, color="#666666", linewidth=1)
        ax.set_title(name, fontsize=9)
    for ax in axes.ravel()[len(items) :]:
        ax.set_visible(False)
    for ax in axes[:, 0]:
        ax.set_ylabel(y_label)
    fig.tight_layout()
    fig.savefig(out_path, dpi=180)
    plt.close(fig)
