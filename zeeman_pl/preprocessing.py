from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np
from scipy.signal import savgol_filter

from .config import (
    DEFAULT_LOESS_SPAN,
    DEFAULT_MOVMEAN_WINDOW,
    DEFAULT_SGOLAY_FRAME,
    DEFAULT_SGOLAY_ORDER,
)
from .errors import ConfigurationError, RowRangeError


# ----------------------------- Row window & baseline -----------------------------


def truncate_rows(matrix: np.ndarray, start_row: int, end_row: int) -> np.ndarray:
    data = np.asarray(matrix, dtype=float)
    n_rows = data.shape[0]
    if start_row < 0 or start_row > n_rows:
        raise RowRangeError(
            f"start_row={start_row} is outside the {n_rows} available data rows.",
            stage="preprocess",
        )
    if end_row < 0 or end_row > n_rows:
        raise RowRangeError(
            f"end_row={end_row} is outside the {n_rows} available data rows.",
            stage="preprocess",
        )
    if end_row <= start_row:
        raise RowRangeError(
            f"Row window [{start_row}, {end_row}) is empty.",
            stage="preprocess",
        )
    return data[start_row:end_row].copy()


def subtract_baseline(matrix: np.ndarray, baseline: float) -> np.ndarray:
    out = np.array(matrix, dtype=float, copy=True)
    out[:, 1:] -= float(baseline)
    return out


def preprocess(
    matrix: np.ndarray,
    start_row: int,
    end_row: int,
    baseline: float,
) -> np.ndarray:
    return subtract_baseline(truncate_rows(matrix, start_row, end_row), baseline)


# ----------------------------- Smoothing -----------------------------------------


class SmoothMethod(str, Enum):
    LOESS = "loess"
    LOWESS = "lowess"
    MOVMEAN = "movmean"
    SGOLAY = "sgolay"


@dataclass(frozen=True)
class SmoothingSpec:
    method: SmoothMethod
    span: float = DEFAULT_LOESS_SPAN
    window: int = DEFAULT_MOVMEAN_WINDOW
    order: int = DEFAULT_SGOLAY_ORDER
    frame: int = DEFAULT_SGOLAY_FRAME

    def __post_init__(self) -> None:
        if self.method in (SmoothMethod.LOESS, SmoothMethod.LOWESS):
            if not (0.0 < self.span <= 1.0):
                raise ConfigurationError(
                    f"{self.method.value} span must be in (0, 1], got {self.span!r}.",
                    stage="smooth",
                )
        elif self.method is SmoothMethod.MOVMEAN:
            if self.window < 1:
                raise ConfigurationError(
                    f"movmean window must be a positive sample count, got {self.window!r}.",
                    stage="smooth",
                )
        elif self.method is SmoothMethod.SGOLAY:
            if self.order < 0:
                raise ConfigurationError(
                    f"sgolay order must be non-negative, got {self.order!r}.",
                    stage="smooth",
                )
            if self.frame % 2 == 0 or self.frame <= self.order:
                raise ConfigurationError(
                    "sgolay frame length must be odd and greater than the polynomial "
                    f"order, got (order={self.order}, frame={self.frame}).",
                    stage="smooth",
                )

    @classmethod
    def from_config(cls, smooth_type: str, smooth_param: Any = None) -> SmoothingSpec:
        try:
            method = SmoothMethod(str(smooth_type).strip().lower())
        except ValueError as exc:
            choices = ", ".join(m.value for m in SmoothMethod)
            raise ConfigurationError(
                f"Unknown smoothing method {smooth_type!r}; expected one of: {choices}.",
                stage="smooth",
            ) from exc

        if smooth_param is None:
            return cls(method=method)
        try:
            if method in (SmoothMethod.LOESS, SmoothMethod.LOWESS):
                return cls(method=method, span=float(smooth_param))
            if method is SmoothMethod.MOVMEAN:
                window = float(smooth_param)
                if not window.is_integer():
                    raise ConfigurationError(
                        f"movmean window must be an integer, got {smooth_param!r}.",
                        stage="smooth",
                    )
                return cls(method=method, window=int(window))
            order, frame = smooth_param
            return cls(method=method, order=int(order), frame=int(frame))
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError(
                f"Invalid smoothing parameter {smooth_param!r} for {method.value}.",
                stage="smooth",
            ) from exc

    @property
    def parameter_label(self) -> str:
        if self.method in (SmoothMethod.LOESS, SmoothMethod.LOWESS):
            return f"span = {self.span:g}"
        if self.method is SmoothMethod.MOVMEAN:
            return f"window = {self.window:d}"
        return f"order = {self.order:d}, frame = {self.frame:d}"


def _local_regression(y: np.ndarray, span: float, degree: int) -> np.ndarray:
    n_points = y.size
    n_window = int(math.ceil(span * n_points))
    # Tricube weights vanish at the window edge, keep enough support for the fit.
    n_window = min(n_points, max(n_window, degree + 3))
    if n_window <= degree + 1:
        return y.copy()

    positions = np.arange(n_points, dtype=float)
    out = np.empty_like(y)
    half = (n_window - 1) // 2
    for i in range(n_points):
        start = min(max(i - half, 0), n_points - n_window)
        idx = slice(start, start + n_window)
        dx = positions[idx] - positions[i]
        y_win = y[idx]
        finite = np.isfinite(y_win)
        dmax = float(np.max(np.abs(dx)))
        weights = (1.0 - (np.abs(dx) / dmax) ** 3) ** 3
        weights = np.where(finite, weights, 0.0)
        if np.count_nonzero(weights > 0) <= degree:
            out[i] = y[i]
            continue
        coeffs = np.polyfit(
            dx[finite],
            y_win[finite],
            deg=degree,
            w=np.sqrt(weights[finite]),
        )
        out[i] = coeffs[-1]
    return out


def _moving_mean(y: np.ndarray, window: int) -> np.ndarray:
    if window == 1:
        return y.copy()
    n_points = y.size
    before = window // 2
    after = window - before - 1
    finite = np.isfinite(y)
    csum = np.concatenate(([0.0], np.cumsum(np.where(finite, y, 0.0))))
    ccount = np.concatenate(([0], np.cumsum(finite.astype(int))))
    idx = np.arange(n_points)
    lo = np.clip(idx - before, 0, n_points)
    hi = np.clip(idx + after + 1, 0, n_points)
    counts = ccount[hi] - ccount[lo]
    with np.errstate(invalid="ignore", divide="ignore"):
        out = (csum[hi] - csum[lo]) / counts
    return np.where(counts > 0, out, np.nan)


def smooth_vector(y: np.ndarray, smoothing: SmoothingSpec) -> np.ndarray:
    values = np.asarray(y, dtype=float).ravel()
    if values.size == 0:
        return values.copy()

    if smoothing.method is SmoothMethod.LOESS:
        return _local_regression(values, smoothing.span, degree=2)
    if smoothing.method is SmoothMethod.LOWESS:
        return _local_regression(values, smoothing.span, degree=1)
    if smoothing.method is SmoothMethod.MOVMEAN:
        return _moving_mean(values, smoothing.window)
    if smoothing.method is SmoothMethod.SGOLAY:
        if smoothing.frame > values.size:
            raise ConfigurationError(
                f"sgolay frame length {smoothing.frame} exceeds the {values.size} samples "
                "in the row window.",
                stage="smooth",
            )
        return savgol_filter(
            values,
            window_length=smoothing.frame,
            polyorder=smoothing.order,
            mode="interp",
        )
    raise ConfigurationError(f"Unhandled smoothing method {smoothing.method!r}.", stage="smooth")


def smooth_matrix(matrix: np.ndarray, smoothing: SmoothingSpec) -> np.ndarray:
    data = np.asarray(matrix, dtype=float)
    if data.ndim == 1:
        return smooth_vector(data, smoothing)
    out = np.empty_like(data)
    for i in range(data.shape[1]):
        out[:, i] = smooth_vector(data[:, i], smoothing)
    return out
