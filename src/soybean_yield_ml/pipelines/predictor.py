"""Generic prediction adapter shared by the interpretation methods."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import pandas as pd


class Predictor:
    """Bind a fitted model to its reference data.

    ``predict`` always returns a 1-D float array, whatever the wrapped model
    returns, so the importance, effect and interaction code can treat every
    model the same way. ``predict_fn(model, frame)`` overrides the default
    ``model.predict(frame)`` call.
    """

    def __init__(
        self,
        model: Any,
        data: pd.DataFrame,
        y: pd.Series | np.ndarray | None = None,
        *,
        predict_fn: Callable[[Any, pd.DataFrame], Any] | None = None,
        batch_size: int = 1000,
    ) -> None:
        if predict_fn is None and not callable(getattr(model, "predict", None)):
            raise TypeError(f"{type(model).__name__} has no predict() and no predict_fn was given.")
        if not isinstance(data, pd.DataFrame):
            raise TypeError("data must be a pandas DataFrame.")
        if data.empty:
            raise ValueError("data must contain at least one row.")
        if int(batch_size) < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.model = model
        self.data = data.reset_index(drop=True)
        self.predict_fn = predict_fn
        self.batch_size = int(batch_size)
        self.y: pd.Series | None = None
        if y is not None:
            y_series = pd.Series(np.asarray(y, dtype=float), name="y")
            if len(y_series) != len(self.data):
                raise ValueError(f"y has {len(y_series)} rows but data has {len(self.data)}.")
            self.y = y_series

    @classmethod
    def from_bundle(cls, bundle: dict[str, Any], use: str = "test") -> Predictor:
        if use not in {"train", "test"}:
            raise ValueError(f"use must be 'train' or 'test', got {use!r}")
        x = bundle[f"x_{use}"][list(bundle["features"])]
        return cls(bundle["pipeline"], x, bundle[f"y_{use}"])

    @property
    def feature_names(self) -> list[str]:
        return self.data.columns.tolist()

    @property
    def n_rows(self) -> int:
        return int(len(self.data))

    def is_numeric(self, feature: str) -> bool:
        self.check_feature(feature)
        col = self.data[feature]
        return bool(pd.api.types.is_numeric_dtype(col) and not pd.api.types.is_bool_dtype(col))

    def check_feature(self, feature: str) -> None:
        if feature not in self.data.columns:
            raise ValueError(f"Unknown feature '{feature}'. Available: {self.feature_names}")

    def predict(self, newdata: pd.DataFrame | None = None) -> np.ndarray:
        frame = self.data if newdata is None else newdata
        missing = [c for c in self.feature_names if c not in frame.columns]
        if missing:
            raise ValueError(f"newdata is missing feature column(s): {missing}")
        frame = frame[self.feature_names]

        parts: list[np.ndarray] = []
        for start in range(0, len(frame), self.batch_size):
            batch = frame.iloc[start : start + self.batch_size]
            if self.predict_fn is not None:
                raw = self.predict_fn(self.model, batch)
            else:
                raw = self.model.predict(batch)
            arr = np.asarray(raw, dtype=float)
            if arr.ndim == 2 and arr.shape[1] == 1:
                arr = arr[:, 0]
            if arr.ndim != 1 or len(arr) != len(batch):
                raise ValueError(f"Prediction shape {arr.shape} does not match {len(batch)} rows.")
            parts.append(arr)
        if not parts:
            return np.array([], dtype=float)
        return np.concatenate(parts)
