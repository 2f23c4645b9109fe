from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from soybean_yield_ml.pipelines import feature_effects as fe
from soybean_yield_ml.pipelines.predictor import Predictor

TILLAGE_EFFECT = {"none": 0.0, "reduced": 5.0, "conventional": 10.0}


def _additive(_model: object, frame: pd.DataFrame) -> np.ndarray:
    return 2.0 * frame["soil_om"].to_numpy(dtype=float) + frame["tillage"].map(TILLAGE_EFFECT).to_numpy(dtype=float)


def _predictor() -> Predictor:
    rng = np.random.default_rng(3)
    tillage = np.array(["none", "reduced", "conventional"])[np.arange(90) % 3]
    shift = pd.Series(tillage).map({"none": 0.0, "reduced": 1.0, "conventional": 2.0}).to_numpy()
    x = pd.DataFrame(
        {
            "soil_om": rng.uniform(1.0, 5.0, 90),
            "clay_pct": shift * 5.0 + rng.uniform(0.0, 10.0, 90),
            "tillage": tillage,
        }
    )
    return Predictor(None, x, predict_fn=_additive)


def test_ale_numeric_recovers_linear_slope_and_is_centered() -> None:
    out = fe.ale_numeric(_predictor(), "soil_om", grid_size=10)

    assert out.columns.tolist() == fe.NUMERIC_COLUMNS
    assert np.allclose(np.diff(out["ale"]), 2.0 * np.diff(out["x"]))
    counts = out["support_count"].to_numpy()[1:]
    mid = (out["ale"].to_numpy()[:-1] + out["ale"].to_numpy()[1:]) / 2.0
    assert counts.sum() == 90
    assert float(np.sum(mid * counts)) == pytest.approx(0.0, abs=1e-9)


def test_ale_numeric_constant_feature_returns_empty_frame() -> None:
    predictor = Predictor(None, pd.DataFrame({"a": [1.0] * 5}), predict_fn=lambda _m, df: df["a"])
    out = fe.ale_numeric(predictor, "a")
    assert out.empty
    assert out.columns.tolist() == fe.NUMERIC_COLUMNS


def test_ale_categorical_with_explicit_order() -> None:
    out = fe.ale_categorical(_predictor(), "tillage", level_order=["none", "reduced", "conventional"])

    assert out["level"].tolist() == ["none", "reduced", "conventional"]
    assert np.allclose(np.diff(out["ale"]), [5.0, 5.0])
    assert float(np.sum(out["ale"] * out["support_count"])) == pytest.approx(0.0, abs=1e-9)


def test_order_levels_places_similar_levels_next_to_each_other() -> None:
    order = fe.order_levels(_predictor().data, "tillage")
    assert order[1] == "reduced"
    assert set(order) == set(TILLAGE_EFFECT)


def test_classical_mds_1d_recovers_points_on_a_line() -> None:
    pts = np.array([0.0, 3.0, 1.0, 7.0])
    dist = np.abs(pts[:, None] - pts[None, :])
    coord = fe.classical_mds_1d(dist)
    assert np.argsort(coord).tolist() == [0, 2, 1, 3]
    assert coord[0] <= coord[-1]
    assert np.allclose(fe.classical_mds_1d(dist[::-1, ::-1]), -coord[::-1])


def test_order_levels_ignores_row_order() -> None:
    data = _predictor().data
    shuffled = data.sample(frac=1.0, random_state=11).reset_index(drop=True)
    assert fe.order_levels(shuffled, "tillage") == fe.order_levels(data, "tillage")


def test_feature_effect_dispatch_and_validation() -> None:
    predictor = _predictor()
    assert "level" in fe.feature_effect(predictor, "tillage").columns
    assert "x" in fe.feature_effect(predictor, "soil_om").columns
    pdp = fe.feature_effect(predictor, "soil_om", method="pdp", grid_size=5)
    assert np.allclose(np.diff(pdp["pdp"]), 2.0 * np.diff(pdp["x"]))
    with pytest.raises(ValueError, match="Unsupported method"):
        fe.feature_effect(predictor, "soil_om", method="shap")
    with pytest.raises(ValueError, match="Unknown feature"):
        fe.feature_effect(predictor, "missing")


def test_relevel_moves_unknown_levels_last() -> None:
    df = pd.DataFrame(
        {"level": ["a", "b", "c"], "ale": [1.0, 2.0, 3.0], "support_count": [1, 1, 1], "order": [1, 2, 3]}
    )
    out = fe.relevel(df, ["c", "a"])
    assert out["level"].tolist() == ["c", "a", "b"]
    with pytest.raises(ValueError):
        fe.relevel(df.drop(columns=["level"]), ["a"])


def test_plots_write_files(tmp_path: Path) -> None:
    predictor = _predictor()
    num = fe.ale_numeric(predictor, "soil_om", grid_size=5)
    cat = fe.ale_categorical(predictor, "tillage")
    fe.plot_feature_effect(
        num,
        feature="soil_om",
        out_path=tmp_path / "num.png",
        rug_values=predictor.data["soil_om"],
        xlim=(1.0, 5.0),
        ylim=(-5.0, 5.0),
        x_label="Soil organic matter (%)",
    )
    fe.plot_feature_effect(cat, feature="tillage", out_path=tmp_path / "cat.png")
    fe.plot_effect_grid({"soil_om": num, "tillage": cat}, tmp_path / "grid.png", ncols=2)
    assert (tmp_path / "num.png").exists()
    assert (tmp_path / "cat.png").exists()
    assert (tmp_path / "grid.png").exists()
