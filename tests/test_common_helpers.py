from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from soybean_yield_ml.pipelines import common as cm


def test_clean_columns_normalizes_whitespace() -> None:
    assert cm.clean_columns(["  soil  ph ", "yield", "om\t%"]) == ["soil ph", "yield", "om %"]


def test_dedupe_and_list_parsers() -> None:
    assert cm.dedupe_keep_order(["b", "a", "b"]) == ["b", "a"]
    assert cm.parse_int_list("1, 2,3") == [1, 2, 3]
    assert cm.parse_float_list("0.2,0.5") == [0.2, 0.5]
    assert cm.parse_csv_list("a, b ,a") == ["a", "b"]
    with pytest.raises(ValueError):
        cm.parse_int_list(" , ")


def test_load_dataset_drops_duplicates_and_missing_target(tmp_path: Path) -> None:
    path = tmp_path / "soy.csv"
    pd.DataFrame(
        {
            " yield ": [3000, 3000, None, "bad", 3500],
            "location": ["A", "A", "B", "C", "D"],
        }
    ).to_csv(path, index=False)

    df = cm.load_dataset(path)

    assert df.columns.tolist() == ["yield", "location"]
    assert df["location"].tolist() == ["A", "D"]
    assert df["yield"].tolist() == [3000.0, 3500.0]


def test_load_dataset_reads_pickled_frame(tmp_path: Path) -> None:
    path = tmp_path / "soy.pkl"
    pd.DataFrame({"yield": [1.0, 2.0], "x": [3, 4]}).to_pickle(path)
    assert cm.load_dataset(path).shape == (2, 2)


def test_load_dataset_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        cm.load_dataset(tmp_path / "missing.csv")

    path = tmp_path / "no_target.csv"
    pd.DataFrame({"x": [1, 2]}).to_csv(path, index=False)
    with pytest.raises(ValueError, match="Target column"):
        cm.load_dataset(path)


def test_add_date_features_replaces_raw_date() -> None:
    df = pd.DataFrame({"planting_date": ["2021-05-01", "not a date"], "yield": [1.0, 2.0]})
    out = cm.add_date_features(df)

    assert "planting_date" not in out.columns
    assert out.loc[0, "planting_doy"] == 121.0
    assert out.loc[0, "planting_year"] == 2021.0
    assert np.isnan(out.loc[1, "planting_doy"])


def test_prepare_model_frame_drops_identifiers_and_fills_missing() -> None:
    df = pd.DataFrame(
        {
            "record_id": [1, 2, 3],
            "yield": [3000.0, 3200.0, 3100.0],
            "soil_om": [2.0, np.nan, 4.0],
            "irrigated": [True, False, True],
            "tillage": ["none", None, "reduced"],
        }
    )
    x, y = cm.prepare_model_frame(df)

    assert "record_id" not in x.columns
    assert "yield" not in x.columns
    assert y.tolist() == [3000.0, 3200.0, 3100.0]
    assert x["soil_om"].tolist() == [2.0, 3.0, 4.0]
    assert x["irrigated"].tolist() == [1, 0, 1]
    assert x["tillage"].tolist() == ["none", "MISSING", "reduced"]


def test_split_train_test_is_deterministic() -> None:
    x = pd.DataFrame({"a": np.arange(20, dtype=float)})
    y = pd.Series(np.arange(20, dtype=float))
    first = cm.split_train_test(x, y, test_size=0.25, seed=3)
    second = cm.split_train_test(x, y, test_size=0.25, seed=3)

    assert len(first.x_test) == 5
    assert first.x_test["a"].tolist() == second.x_test["a"].tolist()
    assert first.features == ["a"]
    with pytest.raises(ValueError):
        cm.split_train_test(x, y, test_size=1.5, seed=3)


def test_regression_metrics_perfect_prediction() -> None:
    y = pd.Series([1.0, 2.0, 3.0])
    out = cm.regression_metrics(y, y.to_numpy())
    assert out == {"mae": 0.0, "rmse": 0.0, "r2": 1.0}
