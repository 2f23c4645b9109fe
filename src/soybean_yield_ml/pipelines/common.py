"""Shared data contracts for the soybean yield pipelines."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import OneHotEncoder

TARGET_COL = "yield"
LOCATION_COL = "location"
DATE_COL = "planting_date"
IDENTIFIER_COLS = {"record_id", "plot_id", "site_id"}
PICKLE_SUFFIXES = {".pkl", ".pickle"}


@dataclass
class SplitBundle:
    x_train: pd.DataFrame
    x_test: pd.DataFrame
    y_train: pd.Series
    y_test: pd.Series

    @property
    def features(self) -> list[str]:
        return self.x_train.columns.tolist()


def clean_columns(cols: Sequence[object]) -> list[str]:
    return [" ".join(str(col).strip().split()) for col in cols]


def dedupe_keep_order(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            out.append(item)
            seen.add(item)
    return out


def parse_int_list(raw: str) -> list[int]:
    values = [int(v.strip()) for v in str(raw).split(",") if v.strip()]
    if not values:
        raise ValueError("Expected at least one comma-separated integer.")
    return values


def parse_float_list(raw: str) -> list[float]:
    values = [float(v.strip()) for v in str(raw).split(",") if v.strip()]
    if not values:
        raise ValueError("Expected at least one comma-separated number.")
    return values


def parse_csv_list(raw: str) -> list[str]:
    values = [v.strip() for v in str(raw).split(",") if v.strip()]
    if not values:
        raise ValueError("Expected at least one comma-separated value.")
    return dedupe_keep_order(values)


def load_dataset(data_path: Path, *, target_col: str = TARGET_COL) -> pd.DataFrame:
    """Load the saved observation table.

    CSV files are read with pandas; ``.pkl``/``.pickle`` files are expected to
    hold a pickled DataFrame. Duplicate rows and rows without a numeric target
    are dropped.
    """
    if not data_path.exists():
        raise FileNotFoundError(f"Missing dataset: {data_path}")

    if data_path.suffix.lower() in PICKLE_SUFFIXES:
        df = pd.read_pickle(data_path)
        if not isinstance(df, pd.DataFrame):
            raise ValueError(f"Pickled object in {data_path} is not a DataFrame.")
    else:
        df = pd.read_csv(data_path)
    df.columns = clean_columns(list(df.columns))

    if target_col not in df.columns:
        raise ValueError(f"Target column not found: {target_col}")

    df[target_col] = pd.to_numeric(df[target_col], errors="coerce")
    df = df[df[target_col].notna()].copy()
    return df.drop_duplicates().reset_index(drop=True)


def add_date_features(df: pd.DataFrame, *, date_col: str = DATE_COL) -> pd.DataFrame:
    if date_col not in df.columns:
        return df.copy()

    out = df.copy()
    dates = pd.to_datetime(out[date_col], errors="coerce")
    out["planting_doy"] = dates.dt.dayofyear.astype("float")
    out["planting_year"] = dates.dt.year.astype("float")
    return out.drop(columns=[date_col])


def prepare_model_frame(
    df: pd.DataFrame,
    *,
    target_col: str = TARGET_COL,
    drop_cols: Iterable[str] = IDENTIFIER_COLS,
) -> tuple[pd.DataFrame, pd.Series]:
    if target_col not in df.columns:
        raise ValueError(f"Target column not found: {target_col}")

    frame = add_date_features(df)
    y = pd.to_numeric(frame[target_col], errors="coerce")
    valid = y.notna()
    x = frame.loc[valid].drop(columns=[target_col]).reset_index(drop=True)
    y = y.loc[valid].reset_index(drop=True).astype(float)

    x = x.drop(columns=[c for c in drop_cols if c in x.columns])
    if x.empty or x.shape[1] == 0:
        raise ValueError("No feature columns left after dropping identifiers.")

    for col in x.select_dtypes(include=["bool"]).columns.tolist():
        x[col] = x[col].astype(int)

    numeric_cols = x.select_dtypes(include=[np.number]).columns.tolist()
    if numeric_cols:
        med = x[numeric_cols].median(numeric_only=True)
        for col in numeric_cols:
            x[col] = pd.to_numeric(x[col], errors="coerce").fillna(float(med.get(col, 0.0)))
            if x[col].isna().all():
                x[col] = 0.0

    for col in [c for c in x.columns if c not in numeric_cols]:
        x[col] = x[col].astype("string").fillna("MISSING").astype(str)

    return x, y


def split_train_test(x: pd.DataFrame, y: pd.Series, *, test_size: float, seed: int) -> SplitBundle:
    if not 0.0 < float(test_size) < 1.0:
        raise ValueError(f"test_size must be in (0, 1), got {test_size}")
    x_train, x_test, y_train, y_test = train_test_split(x, y, test_size=test_size, random_state=seed)
    return SplitBundle(
        x_train=x_train.reset_index(drop=True),
        x_test=x_test.reset_index(drop=True),
        y_train=y_train.reset_index(drop=True),
        y_test=y_test.reset_index(drop=True),
    )


def build_preprocessor(x: pd.DataFrame) -> ColumnTransformer:
    categorical_cols = x.select_dtypes(exclude=[np.number]).columns.tolist()
    numeric_cols = x.select_dtypes(include=[np.number]).columns.tolist()

    return ColumnTransformer(
        transformers=[
            ("cat", OneHotEncoder(handle_unknown="ignore"), categorical_cols),
            ("num", "passthrough", numeric_cols),
        ],
        remainder="drop",
    )


def regression_metrics(y_true: pd.Series | np.ndarray, y_pred: np.ndarray) -> dict[str, float]:
    return {
        "mae": float(mean_absolute_error(y_true, y_pred)),
        "rmse": float(np.sqrt(mean_squared_error(y_true, y_pred))),
        "r2": float(r2_score(y_true, y_pred)),
    }
