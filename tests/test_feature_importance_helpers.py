from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from sklearn.compose import ColumnTransformer
from sklearn.linear_model import LinearRegression
from sklearn.pipeline import Pipeline

from soybean_yield_ml.pipelines import feature_importance as fi
from soybean_yield_ml.pipelines.predictor import Predictor


def _linear_predictor() -> Predictor:
    rng = np.random.default_rng(0)
    x = pd.DataFrame(
        {
            "soil_om": rng.uniform(1.0, 5.0, 60),
            "seeding_rate": rng.uniform(100.0, 160.0, 60),
            "noise_col": rng.normal(size=60),
        }
    )
    y = 400.0 * x["soil_om"] + 5.0 * x["seeding_rate"] + rng.normal(scale=50.0, size=60)
    model = Pipeline(
        [
            ("select", ColumnTransformer([("keep", "passthrough", ["soil_om", "seeding_rate"])])),
            ("model", LinearRegression()),
        ]
    ).fit(x, y)
    return Predictor(model, x, y)


def test_get_loss_rejects_unknown_name() -> None:
    assert fi.get_loss("MAE")(np.array([1.0]), np.array([3.0])) == 2.0
    with pytest.raises(ValueError, match="Unsupported loss"):
        fi.get_loss("huber")


def test_permutation_importance_ranks_used_features_first() -> None:
    out = fi.permutation_importance(_linear_predictor(), n_repetitions=4, seed=1)

    assert out["feature"].tolist()[0] == "soil_om"
    assert out["rank"].tolist() == [1, 2, 3]
    unused = out.set_index("feature").loc["noise_col"]
    assert unused["importance"] == pytest.approx(1.0)
    assert (out["importance_05"] <= out["importance_95"]).all()
    assert out.attrs["original_error"] > 0.0


def test_permutation_importance_difference_mode() -> None:
    out = fi.permutation_importance(_linear_predictor(), compare="difference", loss="rmse", n_repetitions=3)
    assert out.set_index("feature").loc["noise_col", "importance"] == pytest.approx(0.0)
    assert out.set_index("feature").loc["soil_om", "importance"] > 0.0


def test_permutation_importance_does_not_depend_on_worker_count() -> None:
    predictor = _linear_predictor()
    serial = fi.permutation_importance(predictor, n_repetitions=3, seed=7, n_jobs=1)
    parallel = fi.permutation_importance(predictor, n_repetitions=3, seed=7, n_jobs=2)
    pd.testing.assert_frame_equal(serial, parallel)


def test_permutation_importance_runs_one_task_per_feature(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, int]] = []
    original = fi._permuted_errors

    def _recording(predictor, feature, loss, seed, feature_idx, n_repetitions):
        calls.append((feature, n_repetitions))
        return original(predictor, feature, loss, seed, feature_idx, n_repetitions)

    monkeypatch.setattr(fi, "_permuted_errors", _recording)
    out = fi.permutation_importance(_linear_predictor(), n_repetitions=4, seed=3, n_jobs=1)

    assert sorted(calls) == [("noise_col", 4), ("seeding_rate", 4), ("soil_om", 4)]
    assert len(out) == 3


def test_permuted_errors_seeds_each_repetition_separately() -> None:
    predictor = _linear_predictor()
    errors = fi._permuted_errors(predictor, "soil_om", "mae", 5, 0, 3)

    assert len(errors) == 3
    assert len(set(errors)) == 3
    first = np.random.default_rng([5, 0, 0]).permutation(predictor.data["soil_om"].to_numpy())
    x_perm = predictor.data.assign(soil_om=first)
    assert errors[0] == pytest.approx(fi.get_loss("mae")(predictor.y.to_numpy(), predictor.predict(x_perm)))


def test_permutation_importance_validation() -> None:
    predictor = _linear_predictor()
    with pytest.raises(ValueError):
        fi.permutation_importance(predictor, n_repetitions=0)
    with pytest.raises(ValueError):
        fi.permutation_importance(predictor, compare="log")
    with pytest.raises(ValueError):
        fi.permutation_importance(Predictor(predictor.model, predictor.data))

    x = pd.DataFrame({"a": [1.0, 2.0, 3.0]})
    exact = Predictor(None, x, y=x["a"] * 3.0, predict_fn=lambda _m, df: df["a"] * 3.0)
    with pytest.raises(ValueError, match="zero"):
        fi.permutation_importance(exact)


def test_plot_feature_importance_writes_png(tmp_path: Path) -> None:
    out = fi.permutation_importance(_linear_predictor(), n_repetitions=2)
    path = tmp_path / "imp.png"
    fi.plot_feature_importance(out, path)
    assert path.exists()
