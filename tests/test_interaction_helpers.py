from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from soybean_yield_ml.pipelines import interaction as ia
from soybean_yield_ml.pipelines.predictor import Predictor


def _frame() -> pd.DataFrame:
    rng = np.random.default_rng(11)
    return pd.DataFrame(
        {
            "soil_om": rng.uniform(1.0, 5.0, 40),
            "soil_ph": rng.uniform(5.5, 7.5, 40),
            "row_spacing": rng.uniform(15.0, 30.0, 40),
        }
    )


def _additive(_model: object, frame: pd.DataFrame) -> np.ndarray:
    return (frame["soil_om"] * 3.0 + frame["soil_ph"] - frame["row_spacing"]).to_numpy()


def _product(_model: object, frame: pd.DataFrame) -> np.ndarray:
    om = frame["soil_om"] - 3.0
    ph = frame["soil_ph"] - 6.5
    return (om * ph + 0.1 * frame["row_spacing"]).to_numpy()


def test_additive_model_has_no_interaction() -> None:
    predictor = Predictor(None, _frame(), predict_fn=_additive)
    out = ia.interaction_strength(predictor, grid_size=15)
    assert out.columns.tolist() == ["feature", "interaction"]
    assert set(out["feature"]) == {"soil_om", "soil_ph", "row_spacing"}
    assert (out["interaction"] < 1e-6).all()


def test_product_model_detects_pairwise_interaction() -> None:
    predictor = Predictor(None, _frame(), predict_fn=_product)
    overall = ia.interaction_strength(predictor, grid_size=20, seed=1)
    top_two = set(overall["feature"].head(2))
    assert top_two == {"soil_om", "soil_ph"}
    assert overall.set_index("feature").loc["soil_om", "interaction"] > 0.3

    pairwise = ia.interaction_strength(predictor, feature="soil_om", grid_size=20, seed=1)
    assert pairwise.columns.tolist() == ["feature", "with_feature", "interaction"]
    assert pairwise.iloc[0]["with_feature"] == "soil_ph"
    assert pairwise.set_index("with_feature").loc["row_spacing", "interaction"] < 1e-6


def test_h_statistic_handles_flat_surface_and_clips() -> None:
    flat = np.ones(5)
    assert ia.h_statistic(flat, flat) == 0.0
    joint = np.array([1.0, -1.0, 1.0, -1.0])
    assert 0.0 <= ia.h_statistic(joint, -3.0 * joint) <= 1.0


def test_validation_errors() -> None:
    predictor = Predictor(None, _frame(), predict_fn=_additive)
    with pytest.raises(ValueError):
        ia.sample_rows(predictor, grid_size=1, seed=0)
    with pytest.raises(ValueError, match="Unknown feature"):
        ia.interaction_strength(predictor, feature="yield")


def test_plot_interaction_writes_png(tmp_path: Path) -> None:
    df = pd.DataFrame({"feature": ["a", "b"], "interaction": [0.4, 0.1]})
    ia.plot_interaction(df, tmp_path / "h.png", title="Overall interaction strength")
    assert (tmp_path / "h.png").exists()
