"""Permutation feature importance with repetitions spread over a worker pool."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
from joblib import Parallel, delayed  # noqa: E402

from soybean_yield_ml.pipelines.predictor import Predictor  # noqa: E402

LOGGER = logging.getLogger(__name__)


def _mae(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    return float(np.mean(np.abs(y_true - y_pred)))


def _mse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    return float(np.mean((y_true - y_pred) ** 2))


def _rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    return float(np.sqrt(_mse(y_true, y_pred)))


LOSSES: dict[str, Callable[[np.ndarray, np.ndarray], float]] = {
    "mae": _mae,
    "mse": _mse,
    "rmse": _rmse,
}
COMPARISONS = ("ratio", "difference")


def get_loss(name: str) -> Callable[[np.ndarray, np.ndarray], float]:
    key = str(name).lower()
    if key not in LOSSES:
        raise ValueError(f"Unsupported loss '{name}'. Available: {sorted(LOSSES)}")
    return LOSSES[key]


def _permuted_errors(
    predictor: Predictor,
    feature: str,
    loss: str,
    seed: int,
    feature_idx: int,
    n_repetitions: int,
) -> list[float]:
    loss_fn = get_loss(loss)
    y_true = predictor.y.to_numpy(dtype=float)
    values = predictor.data[feature].to_numpy(copy=True)
    x_perm = predictor.data.copy()
    errors: list[float] = []
    for rep in range(n_repetitions):
        rng = np.random.default_rng([seed, feature_idx, rep])
        x_perm[feature] = rng.permutation(values)
        errors.append(loss_fn(y_true, predictor.predict(x_perm)))
    return errors


def permutation_importance(
    predictor: Predictor,
    *,
    loss: str = "mae",
    compare: str = "ratio",
    n_repetitions: int = 5,
    features: list[str] | None = None,
    seed: int = 42,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Score each feature by how much shuffling it degrades the model.

    Each feature is one task that runs all of its repetitions, so the model
    is shipped to a worker once per feature. Tasks are fanned out over
    ``n_jobs`` joblib workers and the pool is closed once all of them have
    finished. Every repetition seeds its own generator from
    ``(seed, feature index, repetition)`` so the result does not depend on
    ``n_jobs``.
    """
    if predictor.y is None:
        raise ValueError("Permutation importance needs a Predictor with y.")
    if int(n_repetitions) < 1:
        raise ValueError(f"n_repetitions must be >= 1, got {n_repetitions}")
    if compare not in COMPARISONS:
        raise ValueError(f"Unsupported compare '{compare}'. Available: {list(COMPARISONS)}")
    loss_fn = get_loss(loss)

    y_true = predictor.y.to_numpy(dtype=float)
    original_error = loss_fn(y_true, predictor.predict())
    if compare == "ratio" and original_error <= 0.0:
        raise ValueError("Original model error is zero; use compare='difference'.")

    feats = features if features is not None else predictor.feature_names
    for feat in feats:
        predictor.check_feature(feat)

    LOGGER.info(
        "Permutation importance: %d features x %d repetitions on %s worker(s)",
        len(feats),
        n_repetitions,
        n_jobs,
    )
    with Parallel(n_jobs=n_jobs) as parallel:
        errors = parallel(
            delayed(_permuted_errors)(predictor, feat, loss, int(seed), i, int(n_repetitions))
            for i, feat in enumerate(feats)
        )

    rows: list[dict[str, float | str]] = []
    for feat, errs in zip(feats, errors, strict=True):
        arr = np.asarray(errs, dtype=float)
        scores = arr / original_error if compare == "ratio" else arr - original_error
        rows.append(
            {
                "feature": feat,
                "importance": float(np.median(scores)),
                "importance_05": float(np.quantile(scores, 0.05)),
                "importance_95": float(np.quantile(scores, 0.95)),
                "importance_mean": float(np.mean(scores)),
                "importance_std": float(np.std(scores)),
                "permutation_error": float(np.mean(arr)),
            }
        )

    out = pd.DataFrame(rows).sort_values("importance", ascending=False).reset_index(drop=True)
    out["rank"] = np.arange(1, len(out) + 1)
    out.attrs["original_error"] = float(original_error)
    out.attrs["loss"] = str(loss).lower()
    out.attrs["compare"] = compare
    return out


def plot_feature_importance(
    importance_df: pd.DataFrame,
    out_path: Path,
    *,
    top_n: int = 15,
    title: str = "Permutation feature importance",
) -> None:
    if importance_df.empty:
        return
    top = importance_df.head(int(top_n)).iloc[::-1]
    compare = importance_df.attrs.get("compare", "ratio")
    loss = str(importance_df.attrs.get("loss", "mae")).upper()

    plt.figure(figsize=(10, 6))
    plt.hlines(top["feature"], top["importance_05"], top["importance_95"], color="#888888", linewidth=2)
    plt.scatter(top["importance"], top["feature"], color="#1b9e77", zorder=3)
    plt.axvline(1.0 if compare == "ratio" else 0.0, color="#666666", linewidth=1, linestyle="--")
    if compare == "ratio":
        plt.xlabel(f"Feature importance ({loss} ratio: permuted / original)")
    else:
        plt.xlabel(f"Feature importance ({loss} increase after permutation)")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_path, dpi=180)
    plt.close()
